"""MySQL and MariaDB plugins.

Both go through mysql-connector-python; MariaDB is registered under its own
engine type so callers can tell them apart.
"""

from __future__ import annotations

from typing import ClassVar

from omnistore.core.dialect import MariaDBDialect, MySQLDialect
from omnistore.core.models import EngineType
from omnistore.core.settings import OmnistoreSettings

from .plugin import Plugin
from .sql import SQLAdapter, make_plugin


class MySQLAdapter(SQLAdapter):
    engine_types: ClassVar[tuple[EngineType, ...]] = (EngineType.MYSQL, EngineType.MARIADB)

    def __init__(self, settings: OmnistoreSettings | None = None, engine_type: EngineType = EngineType.MYSQL):
        dialect = MariaDBDialect() if engine_type is EngineType.MARIADB else MySQLDialect()
        super().__init__(settings, dialect)


def create_plugin(
    settings: OmnistoreSettings | None = None,
    engine_type: EngineType = EngineType.MYSQL,
) -> Plugin:
    return make_plugin(MySQLAdapter(settings, engine_type), engine_type)


__all__ = ["MySQLAdapter", "create_plugin"]
