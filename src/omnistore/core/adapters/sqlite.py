"""SQLite plugin. ``Credential.database`` is the path to the file."""

from __future__ import annotations

from typing import ClassVar

from omnistore.core.dialect import SQLiteDialect
from omnistore.core.models import EngineType
from omnistore.core.settings import OmnistoreSettings

from .plugin import Plugin
from .sql import SQLAdapter, make_plugin


class SQLiteAdapter(SQLAdapter):
    engine_types: ClassVar[tuple[EngineType, ...]] = (EngineType.SQLITE,)

    def __init__(self, settings: OmnistoreSettings | None = None):
        super().__init__(settings, SQLiteDialect())

    def list_databases(self, credential, *, cancel=None) -> list[str]:
        # one file, one schema
        return super().list_databases(credential, cancel=cancel) or ["main"]


def create_plugin(settings: OmnistoreSettings | None = None) -> Plugin:
    return make_plugin(SQLiteAdapter(settings), EngineType.SQLITE)


__all__ = ["SQLiteAdapter", "create_plugin"]
