"""PostgreSQL plugin."""

from __future__ import annotations

from typing import ClassVar

from omnistore.core.dialect import PostgreSQLDialect
from omnistore.core.models import EngineType
from omnistore.core.settings import OmnistoreSettings

from .plugin import Plugin
from .sql import SQLAdapter, make_plugin


class PostgreSQLAdapter(SQLAdapter):
    engine_types: ClassVar[tuple[EngineType, ...]] = (EngineType.POSTGRESQL,)

    def __init__(self, settings: OmnistoreSettings | None = None):
        super().__init__(settings, PostgreSQLDialect())


def create_plugin(settings: OmnistoreSettings | None = None) -> Plugin:
    return make_plugin(PostgreSQLAdapter(settings), EngineType.POSTGRESQL)


__all__ = ["PostgreSQLAdapter", "create_plugin"]
