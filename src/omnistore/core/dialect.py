"""Relational dialects: what differs between PostgreSQL, MySQL and SQLite.

SQL generation itself goes through SQLAlchemy expressions with bound
parameters, so a dialect here only answers the questions SQLAlchemy does
not: how to build a connection URL from a Credential, which schemas are
system schemas, how to get a cheap row-count estimate, and how to abort a
statement that is running on another thread.

Manifesto:
    The relational adapter is written once. Everything engine-specific
    lives in one small class per engine, so adding an engine means
    answering five questions rather than re-implementing eight operations.

Architecture::

    SQLAdapter (adapters/sql.py)
        │ uses
        ▼
    ┌──────────────┐ ┌──────────────┐ ┌──────────────┐
    │ PostgreSQL   │ │ MySQL        │ │ SQLite       │
    │ psycopg2     │ │ mysql-conn.  │ │ pysqlite     │
    │ pg_class est.│ │ TABLE_ROWS   │ │ count(*)     │
    │ conn.cancel()│ │ KILL QUERY   │ │ interrupt()  │
    └──────────────┘ └──────┬───────┘ └──────────────┘
                            │
                       MariaDB (same driver, own identifier)

Examples:
    >>> d = get_dialect("postgresql")
    >>> d.is_system_schema("pg_catalog")
    True
    >>> d.url(Credential("postgresql", host="db", database="app")).render_as_string()
    'postgresql+psycopg2://db:5432/app'

Tags:
    dialect, sql, sqlalchemy, portability, omnistore

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import os
from typing import Any, Protocol, runtime_checkable

import sqlalchemy as sa
from sqlalchemy.engine import URL
from sqlalchemy.pool import NullPool, QueuePool, StaticPool

from omnistore.core.errors import ConfigError, EngineConnectionError
from omnistore.core.models import Credential, EngineType
from omnistore.core.settings import OmnistoreSettings


@runtime_checkable
class Dialect(Protocol):
    """Relational dialect contract."""

    @property
    def name(self) -> str:
        ...

    def url(self, credential: Credential) -> URL:
        ...

    def engine_kwargs(self, credential: Credential, settings: OmnistoreSettings) -> dict[str, Any]:
        """Keyword arguments for ``sqlalchemy.create_engine``."""
        ...

    def validate(self, credential: Credential) -> None:
        """Reject credentials that cannot work before opening a connection."""
        ...

    def on_connect(self, dbapi_connection: Any) -> None:
        """Per-connection session setup."""
        ...

    def default_schema(self, credential: Credential) -> str | None:
        ...

    def is_system_schema(self, name: str) -> bool:
        ...

    def estimate_row_counts(
        self, conn: sa.Connection, schema: str | None, tables: list[str]
    ) -> dict[str, int | None]:
        ...

    def attribute_type(self, type_: Any, sa_dialect: Any) -> str:
        ...

    def interrupt(self, engine: sa.Engine, dbapi_connection: Any) -> None:
        """Abort the statement running on ``dbapi_connection``."""
        ...


# =========================================================================
# Shared behaviour
# =========================================================================


class _BaseDialect:
    name = "sql"
    drivername = ""
    default_port: int | None = None
    system_schemas: frozenset[str] = frozenset()

    def url(self, credential: Credential) -> URL:
        return URL.create(
            self.drivername,
            username=credential.username or None,
            password=credential.password or None,
            host=credential.host or "localhost",
            port=credential.port or self.default_port,
            database=credential.database or None,
            query={k: str(v) for k, v in credential.advanced.items()},
        )

    def connect_args(self, credential: Credential, settings: OmnistoreSettings) -> dict[str, Any]:
        return {}

    def engine_kwargs(self, credential: Credential, settings: OmnistoreSettings) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"connect_args": self.connect_args(credential, settings)}
        if settings.pool_mode == "pooled":
            kwargs.update(
                pool_size=settings.pool_size,
                max_overflow=settings.pool_max_overflow,
                pool_timeout=settings.pool_timeout,
                pool_recycle=settings.pool_recycle,
                pool_pre_ping=True,
            )
        else:
            kwargs["poolclass"] = NullPool
        return kwargs

    def validate(self, credential: Credential) -> None:
        if not credential.host:
            raise ConfigError(f"{self.name} credential needs a host")

    def on_connect(self, dbapi_connection: Any) -> None:
        pass

    def default_schema(self, credential: Credential) -> str | None:
        return credential.schema or None

    def is_system_schema(self, name: str) -> bool:
        return name.lower() in self.system_schemas

    def estimate_row_counts(
        self, conn: sa.Connection, schema: str | None, tables: list[str]
    ) -> dict[str, int | None]:
        return {}

    def attribute_type(self, type_: Any, sa_dialect: Any) -> str:
        try:
            return str(type_.compile(dialect=sa_dialect))
        except sa.exc.CompileError:
            return type(type_).__name__.upper()

    def interrupt(self, engine: sa.Engine, dbapi_connection: Any) -> None:
        pass


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class PostgreSQLDialect(_BaseDialect):
    """PostgreSQL via psycopg2; cancel through the libpq cancel request."""

    name = "postgresql"
    drivername = "postgresql+psycopg2"
    default_port = 5432
    system_schemas = frozenset({"information_schema", "pg_catalog", "pg_toast"})

    def url(self, credential: Credential) -> URL:
        return super().url(credential).set(database=credential.database or "postgres")

    def connect_args(self, credential: Credential, settings: OmnistoreSettings) -> dict[str, Any]:
        return {
            "connect_timeout": max(1, int(settings.connect_timeout)),
            "application_name": "omnistore",
            # server-side backstop for the per-call deadline
            "options": f"-c statement_timeout={int(settings.query_timeout * 1000)}",
        }

    def default_schema(self, credential: Credential) -> str | None:
        return credential.schema or "public"

    def is_system_schema(self, name: str) -> bool:
        lowered = name.lower()
        return lowered in self.system_schemas or lowered.startswith(("pg_temp_", "pg_toast_temp_"))

    def estimate_row_counts(
        self, conn: sa.Connection, schema: str | None, tables: list[str]
    ) -> dict[str, int | None]:
        rows = conn.execute(
            sa.text(
                "SELECT c.relname, c.reltuples::bigint FROM pg_class c "
                "JOIN pg_namespace n ON n.oid = c.relnamespace "
                "WHERE n.nspname = :schema AND c.relkind IN ('r', 'p', 'm')"
            ),
            {"schema": schema or "public"},
        )
        # reltuples is -1 until the table has been analyzed
        return {name: (int(n) if n is not None and n >= 0 else None) for name, n in rows}

    def interrupt(self, engine: sa.Engine, dbapi_connection: Any) -> None:
        dbapi_connection.cancel()


class MySQLDialect(_BaseDialect):
    """MySQL via mysql-connector-python; cancel with ``KILL QUERY``."""

    name = "mysql"
    drivername = "mysql+mysqlconnector"
    default_port = 3306
    system_schemas = frozenset({"information_schema", "mysql", "performance_schema", "sys"})

    def connect_args(self, credential: Credential, settings: OmnistoreSettings) -> dict[str, Any]:
        return {"connection_timeout": max(1, int(settings.connect_timeout))}

    def default_schema(self, credential: Credential) -> str | None:
        return credential.schema or credential.database or None

    def estimate_row_counts(
        self, conn: sa.Connection, schema: str | None, tables: list[str]
    ) -> dict[str, int | None]:
        rows = conn.execute(
            sa.text(
                "SELECT TABLE_NAME, TABLE_ROWS FROM information_schema.TABLES "
                "WHERE TABLE_SCHEMA = COALESCE(:schema, DATABASE())"
            ),
            {"schema": schema},
        )
        return {name: (int(n) if n is not None else None) for name, n in rows}

    def interrupt(self, engine: sa.Engine, dbapi_connection: Any) -> None:
        thread_id = int(dbapi_connection.connection_id)
        # outside the pool: an exhausted pool would hold the abort back
        side = sa.create_engine(engine.url, poolclass=NullPool)
        try:
            with side.connect() as killer:
                killer.exec_driver_sql(f"KILL QUERY {thread_id}")
        finally:
            side.dispose()


class MariaDBDialect(MySQLDialect):
    """MariaDB speaks the MySQL protocol; only the identifier differs."""

    name = "mariadb"


class SQLiteDialect(_BaseDialect):
    """SQLite via the stdlib driver; ``database`` is the file path."""

    name = "sqlite"
    drivername = "sqlite+pysqlite"

    def url(self, credential: Credential) -> URL:
        return URL.create(self.drivername, database=credential.database or ":memory:")

    def connect_args(self, credential: Credential, settings: OmnistoreSettings) -> dict[str, Any]:
        return {"check_same_thread": False, "timeout": settings.connect_timeout}

    def engine_kwargs(self, credential: Credential, settings: OmnistoreSettings) -> dict[str, Any]:
        if _is_memory(credential):
            return {"connect_args": self.connect_args(credential, settings), "poolclass": StaticPool}
        kwargs = super().engine_kwargs(credential, settings)
        if settings.pool_mode == "pooled":
            kwargs["poolclass"] = QueuePool
        return kwargs

    def validate(self, credential: Credential) -> None:
        if not _is_memory(credential) and not os.path.isfile(credential.database):
            raise EngineConnectionError(f"SQLite database file not found: {credential.database}")

    def on_connect(self, dbapi_connection: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    def estimate_row_counts(
        self, conn: sa.Connection, schema: str | None, tables: list[str]
    ) -> dict[str, int | None]:
        # no statistics table; exact counts are cheap enough for local files
        return {
            name: conn.execute(
                sa.select(sa.func.count()).select_from(sa.table(name, schema=schema))
            ).scalar_one()
            for name in tables
        }

    def interrupt(self, engine: sa.Engine, dbapi_connection: Any) -> None:
        dbapi_connection.interrupt()


def _is_memory(credential: Credential) -> bool:
    return credential.database in ("", ":memory:")


_DIALECTS: dict[str, type[_BaseDialect]] = {
    EngineType.POSTGRESQL.value: PostgreSQLDialect,
    EngineType.MYSQL.value: MySQLDialect,
    EngineType.MARIADB.value: MariaDBDialect,
    EngineType.SQLITE.value: SQLiteDialect,
}


def get_dialect(name: EngineType | str) -> Dialect:
    """Get a dialect by engine name.

    Raises:
        ConfigError: If the engine has no relational dialect
    """
    key = EngineType.parse(name)
    key = key.value if isinstance(key, EngineType) else key
    try:
        return _DIALECTS[key]()
    except KeyError:
        raise ConfigError(f"No SQL dialect for engine: {key}") from None


__all__ = [
    "Dialect",
    "PostgreSQLDialect",
    "MySQLDialect",
    "MariaDBDialect",
    "SQLiteDialect",
    "get_dialect",
]
