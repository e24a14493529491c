"""Relational adapter shared by PostgreSQL, MySQL, MariaDB and SQLite.

Manifesto:
    Relational engines already agree on almost everything; SQLAlchemy
    covers the rest of the syntax. This adapter reflects the target table,
    builds statements as SQLAlchemy expressions (values always travel as
    bound parameters, never spliced into SQL text) and leaves the few real
    differences to a ``Dialect``.

Features:
    - Introspection through ``sqlalchemy.inspect``: schemas, tables, views,
      columns with engine-native type names, foreign keys
    - Conditions compiled to bound SQLAlchemy expressions
    - Stable pagination: the primary key orders every page, after any requested sort keys
    - Single-row mutation guard: update and delete touch at most one row;
      conditions not pinned by a primary key or unique constraint must
      match exactly one row and are rolled back if the write touches more
    - Pool policy from settings: ``per_call`` (NullPool, nothing retained)
      or ``pooled`` (LRU of engines keyed by credential fingerprint)

Guardrails:
    ❌ DON'T: Format values into SQL text
    ✅ DO: Compare reflected columns with Python values

    ❌ DON'T: Keep a connection after the operation returns
    ✅ DO: Use ``_connection()``; it releases on every exit path

Tags:
    omnistore, relational, sqlalchemy, adapter

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, ClassVar

import sqlalchemy as sa
from sqlalchemy import event

from omnistore.core.conditions import (
    And,
    Condition,
    Not,
    Operator,
    Or,
    Predicate,
    SortKey,
    equality_map,
)
from omnistore.core.dialect import Dialect, get_dialect
from omnistore.core.errors import (
    AmbiguousTargetError,
    ConnectionTimeoutError,
    EngineConnectionError,
    MutationError,
    NoRowsMatchedError,
    OmnistoreError,
    OperationCancelledError,
    QueryError,
    UnknownAttributeError,
    UnknownStorageUnitError,
    UnsupportedFilterError,
)
from omnistore.core.logging import get_logger
from omnistore.core.models import (
    Attribute,
    Credential,
    EngineType,
    GraphEdge,
    MutationResult,
    QueryResult,
    Row,
    StorageUnit,
)
from omnistore.core.settings import OmnistoreSettings
from omnistore.execution.cancellation import CancellationToken

from .base import Adapter
from .plugin import Capability, Plugin

logger = get_logger(__name__)

SQL_CAPABILITIES = frozenset({
    Capability.RAW_EXECUTE,
    Capability.MUTATIONS,
    Capability.TRANSACTIONS,
    Capability.ORDERING,
    Capability.FILTERS,
    Capability.FIXED_SCHEMA,
    Capability.GRAPH,
})


# ── Condition compilation ────────────────────────────────────────────────


def _column(table: sa.Table, name: str) -> sa.ColumnElement[Any]:
    try:
        return table.c[name]
    except KeyError:
        raise UnknownAttributeError(name, table.name) from None


def compile_condition(table: sa.Table, condition: Condition | None) -> sa.ColumnElement[bool] | None:
    """Translate a Condition into a SQLAlchemy boolean expression.

    Raises:
        UnknownAttributeError: the condition names a column the table lacks
        UnsupportedFilterError: full-text ``MATCH`` (no portable SQL form)
    """
    if condition is None:
        return None
    if isinstance(condition, And):
        return sa.and_(*(compile_condition(table, c) for c in condition.conditions))
    if isinstance(condition, Or):
        return sa.or_(*(compile_condition(table, c) for c in condition.conditions))
    if isinstance(condition, Not):
        return sa.not_(compile_condition(table, condition.condition))
    if not isinstance(condition, Predicate):
        raise UnsupportedFilterError(f"Unsupported condition node: {type(condition).__name__}")

    col = _column(table, condition.attribute)
    value = condition.native_value
    match condition.operator:
        case Operator.EQ:
            return col.is_(None) if value is None else col == value
        case Operator.NE:
            return col.is_not(None) if value is None else col != value
        case Operator.LT:
            return col < value
        case Operator.LTE:
            return col <= value
        case Operator.GT:
            return col > value
        case Operator.GTE:
            return col >= value
        case Operator.IN:
            return col.in_(value)
        case Operator.NOT_IN:
            return col.not_in(value)
        case Operator.LIKE:
            return col.like(value, escape="\\")
        case Operator.IS_NULL:
            return col.is_(None)
        case Operator.IS_NOT_NULL:
            return col.is_not(None)
        case _:
            raise UnsupportedFilterError(
                f"Operator {condition.operator.value} is not supported by relational engines"
            )


def order_clause(table: sa.Table, order_by: Sequence[SortKey]) -> list[sa.ColumnElement[Any]]:
    """ORDER BY terms for ``order_by``, completed by the primary key.

    Primary-key columns the caller did not sort on are appended so rows
    that tie on the requested keys still have one fixed order across
    offset pages. A keyless table sorted on non-unique keys has none.
    """
    ordering = [
        _column(table, key.attribute).desc() if key.descending else _column(table, key.attribute).asc()
        for key in order_by
    ]
    sorted_on = {key.attribute for key in order_by}
    ordering.extend(c for c in table.primary_key.columns if c.name not in sorted_on)
    return ordering


# ── Adapter ──────────────────────────────────────────────────────────────


class SQLAdapter(Adapter):
    """
    Relational adapter over SQLAlchemy Core.

    One instance serves every credential for its engine type. In ``pooled``
    mode it keeps at most ``pool_max_engines`` SQLAlchemy engines, evicting
    the least recently used; in ``per_call`` mode each operation builds and
    disposes its own engine.
    """

    engine_types: ClassVar[tuple[EngineType, ...]] = ()

    def __init__(self, settings: OmnistoreSettings | None = None, dialect: Dialect | None = None):
        super().__init__(settings)
        self.dialect = dialect or get_dialect(self.engine_types[0])
        self._engines: OrderedDict[str, sa.Engine] = OrderedDict()
        self._engines_lock = threading.Lock()

    # ── Engines & connections ────────────────────────────────────────────

    def _create_engine(self, credential: Credential) -> sa.Engine:
        self.dialect.validate(credential)
        try:
            engine = sa.create_engine(
                self.dialect.url(credential),
                **self.dialect.engine_kwargs(credential, self.settings),
            )
        except (sa.exc.ArgumentError, ImportError) as e:
            raise EngineConnectionError(
                f"Cannot create a {self.dialect.name} engine", cause=e
            ) from e

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection: Any, _rec: Any) -> None:
            self.dialect.on_connect(dbapi_connection)

        return engine

    def _engine_for(self, credential: Credential) -> sa.Engine:
        if self.settings.pool_mode != "pooled":
            return self._create_engine(credential)
        key = credential.fingerprint()
        with self._engines_lock:
            engine = self._engines.get(key)
            if engine is not None:
                self._engines.move_to_end(key)
                return engine
            engine = self._create_engine(credential)
            self._engines[key] = engine
            while len(self._engines) > self.settings.pool_max_engines:
                _, evicted = self._engines.popitem(last=False)
                evicted.dispose()
                logger.debug("pool_evicted", dialect=self.dialect.name)
            return engine

    @contextmanager
    def _connection(self, credential: Credential, token: CancellationToken) -> Iterator[sa.Connection]:
        """Open a connection, route cancellation to the dialect's interrupt,
        and release the connection on every exit path."""
        token.raise_if_cancelled("connect")
        engine = self._engine_for(credential)
        try:
            try:
                conn = engine.connect()
            except sa.exc.TimeoutError as e:
                raise ConnectionTimeoutError(
                    f"Timed out waiting for a {self.dialect.name} connection", cause=e
                ) from e
            except sa.exc.SQLAlchemyError as e:
                raise EngineConnectionError(
                    f"Could not connect to {self.dialect.name}", cause=_orig(e)
                ) from e

            dbapi_connection = conn.connection.dbapi_connection

            def abort() -> None:
                self.dialect.interrupt(engine, dbapi_connection)

            with self._checkout(token, abort):
                try:
                    yield conn
                finally:
                    conn.close()
        finally:
            if self.settings.pool_mode != "pooled":
                engine.dispose()

    @contextmanager
    def _guard(
        self,
        token: CancellationToken,
        error_cls: type[OmnistoreError],
        message: str,
    ) -> Iterator[None]:
        """Translate SQLAlchemy errors raised inside the block."""
        try:
            yield
        except OmnistoreError:
            raise
        except sa.exc.SQLAlchemyError as e:
            if token.is_cancelled():
                if token.timed_out:
                    raise ConnectionTimeoutError(f"{message}: deadline exceeded", cause=_orig(e)) from e
                raise OperationCancelledError(f"{message}: cancelled", cause=_orig(e)) from e
            if isinstance(e, sa.exc.TimeoutError):
                raise ConnectionTimeoutError(message, cause=e) from e
            if isinstance(e, sa.exc.DBAPIError) and e.connection_invalidated:
                raise EngineConnectionError(message, cause=_orig(e)) from e
            raise error_cls(message, cause=_orig(e)) from e

    def _reflect(self, conn: sa.Connection, credential: Credential, unit: str) -> sa.Table:
        schema = self.dialect.default_schema(credential)
        try:
            return sa.Table(unit, sa.MetaData(), schema=schema, autoload_with=conn)
        except sa.exc.NoSuchTableError:
            raise UnknownStorageUnitError(unit) from None

    def _count(self, conn: sa.Connection, table: sa.Table, where: Any) -> int:
        stmt = sa.select(sa.func.count()).select_from(table)
        if where is not None:
            stmt = stmt.where(where)
        return int(conn.execute(stmt).scalar_one())

    def _attribute(self, conn: sa.Connection, column: sa.Column[Any]) -> Attribute:
        return Attribute(column.name, self.dialect.attribute_type(column.type, conn.dialect))

    # ── Read operations ──────────────────────────────────────────────────

    def check_connection(self, credential: Credential, *, cancel: CancellationToken | None = None) -> bool:
        token = self._token(cancel)
        with self._connection(credential, token) as conn:
            with self._guard(token, EngineConnectionError, f"{self.dialect.name} ping failed"):
                conn.execute(sa.text("SELECT 1"))
        return True

    def list_databases(self, credential: Credential, *, cancel: CancellationToken | None = None) -> list[str]:
        token = self._token(cancel)
        with self._connection(credential, token) as conn:
            with self._guard(token, QueryError, "Could not list schemas"):
                names = sa.inspect(conn).get_schema_names()
        return [n for n in names if not self.dialect.is_system_schema(n)]

    def list_storage_units(
        self, credential: Credential, *, cancel: CancellationToken | None = None
    ) -> list[StorageUnit]:
        token = self._token(cancel)
        schema = self.dialect.default_schema(credential)
        units: list[StorageUnit] = []
        with self._connection(credential, token) as conn:
            with self._guard(token, QueryError, "Could not list tables"):
                inspector = sa.inspect(conn)
                tables = inspector.get_table_names(schema=schema)
                views = inspector.get_view_names(schema=schema)
                counts = (
                    self.dialect.estimate_row_counts(conn, schema, tables)
                    if self.settings.count_rows else {}
                )
                for kind, names in (("table", tables), ("view", views)):
                    for name in names:
                        token.raise_if_cancelled("list_storage_units")
                        attributes = [
                            Attribute(c["name"], self.dialect.attribute_type(c["type"], conn.dialect))
                            for c in inspector.get_columns(name, schema=schema)
                        ]
                        units.append(StorageUnit(name, tuple(attributes), counts.get(name), kind=kind))
        logger.debug("storage_units_listed", count=len(units), schema=schema)
        return units

    def browse_rows(
        self,
        credential: Credential,
        unit: str,
        *,
        condition: Condition | None = None,
        order_by: Sequence[SortKey] = (),
        offset: int = 0,
        limit: int = 100,
        cancel: CancellationToken | None = None,
    ) -> QueryResult:
        self._check_page(offset, limit)
        token = self._token(cancel)
        with self._connection(credential, token) as conn:
            with self._guard(token, QueryError, f"Could not read {unit}"):
                table = self._reflect(conn, credential, unit)
                where = compile_condition(table, condition)
                stmt = sa.select(table)
                if where is not None:
                    stmt = stmt.where(where)

                ordering = order_clause(table, order_by)
                if ordering:
                    stmt = stmt.order_by(*ordering)

                result = conn.execute(stmt.offset(offset).limit(limit))
                keys = list(result.keys())
                rows = tuple(Row.from_pairs(zip(keys, record)) for record in result)
                total = self._count(conn, table, where) if self.settings.count_rows else None
                columns = tuple(self._attribute(conn, c) for c in table.columns)

        return QueryResult(
            columns=columns,
            rows=rows,
            total_count=total,
            offset=offset,
            limit=limit,
            ordered=bool(ordering),
        )

    def raw_execute(
        self, credential: Credential, text: str, *, cancel: CancellationToken | None = None
    ) -> QueryResult | MutationResult:
        if not text.strip():
            raise QueryError("Empty statement")
        token = self._token(cancel)
        with self._connection(credential, token) as conn:
            with self._guard(token, QueryError, "Statement failed"):
                result = conn.exec_driver_sql(text, execution_options={"no_parameters": True})
                if result.returns_rows:
                    keys = list(result.keys())
                    rows = tuple(Row.from_pairs(zip(keys, record)) for record in result)
                    conn.commit()
                    return QueryResult(
                        columns=tuple(Attribute(k, "") for k in keys),
                        rows=rows,
                        total_count=len(rows),
                    )
                affected = result.rowcount
                conn.commit()
        return MutationResult(max(affected, 0))

    def get_graph(self, credential: Credential, *, cancel: CancellationToken | None = None) -> list[GraphEdge]:
        token = self._token(cancel)
        schema = self.dialect.default_schema(credential)
        edges: list[GraphEdge] = []
        with self._connection(credential, token) as conn:
            with self._guard(token, QueryError, "Could not read foreign keys"):
                inspector = sa.inspect(conn)
                for table in inspector.get_table_names(schema=schema):
                    for fk in inspector.get_foreign_keys(table, schema=schema):
                        edges.append(GraphEdge(
                            source=table,
                            target=fk["referred_table"],
                            relation="foreign_key",
                            columns=tuple(zip(fk["constrained_columns"], fk["referred_columns"])),
                        ))
        return edges

    # ── Mutations ────────────────────────────────────────────────────────

    def _table_values(self, table: sa.Table, values: Row | Mapping[str, Any]) -> dict[str, Any]:
        native = self._native_values(values)
        for name in native:
            if name not in table.c:
                raise UnknownAttributeError(name, table.name)
        return native

    def _unique_keys(self, conn: sa.Connection, table: sa.Table) -> list[set[str]]:
        keys = []
        primary = {c.name for c in table.primary_key.columns}
        if primary:
            keys.append(primary)
        inspector = sa.inspect(conn)
        for uc in inspector.get_unique_constraints(table.name, schema=table.schema):
            keys.append(set(uc["column_names"]))
        for index in inspector.get_indexes(table.name, schema=table.schema):
            if index.get("unique") and all(index["column_names"]):
                keys.append(set(index["column_names"]))
        return keys

    def _ensure_single_target(
        self,
        conn: sa.Connection,
        table: sa.Table,
        condition: Condition,
        matched: int,
    ) -> None:
        """Raise AmbiguousTargetError unless ``condition`` selects one row.

        A condition pinned to a primary key or unique constraint always
        qualifies. Any other condition (including full-row equality on a
        key-less table) qualifies only while it matches exactly one row;
        the caller still rolls back if the write touches more.
        """
        pinned = equality_map(condition) or {}
        if any(key <= pinned.keys() for key in self._unique_keys(conn, table)):
            return
        if matched == 1:
            logger.debug("unpinned_single_match", table=table.name)
            return
        raise AmbiguousTargetError(
            f"Condition on {table.name} is not pinned to a primary key or unique constraint "
            f"({matched} row(s) currently match)"
        )

    def add_row(
        self,
        credential: Credential,
        unit: str,
        row: Row | Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        token = self._token(cancel)
        with self._connection(credential, token) as conn:
            with self._guard(token, MutationError, f"Insert into {unit} failed"):
                table = self._reflect(conn, credential, unit)
                values = self._table_values(table, row)
                result = conn.execute(sa.insert(table).values(values))
                conn.commit()
        return MutationResult(result.rowcount if result.rowcount and result.rowcount > 0 else 1)

    def update_row(
        self,
        credential: Credential,
        unit: str,
        condition: Condition,
        values: Row | Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        token = self._token(cancel)
        with self._connection(credential, token) as conn:
            with self._guard(token, MutationError, f"Update of {unit} failed"):
                table = self._reflect(conn, credential, unit)
                where = compile_condition(table, condition)
                if where is None:
                    raise AmbiguousTargetError(f"Update of {unit} needs a condition")
                new_values = self._table_values(table, values)
                matched = self._count(conn, table, where)
                if matched == 0:
                    raise NoRowsMatchedError(f"No rows in {unit} match the condition")
                self._ensure_single_target(conn, table, condition, matched)
                result = conn.execute(sa.update(table).where(where).values(new_values))
                if result.rowcount > 1:
                    conn.rollback()
                    raise AmbiguousTargetError(f"Update of {unit} would touch {result.rowcount} rows")
                conn.commit()
        return MutationResult(1)

    def delete_row(
        self,
        credential: Credential,
        unit: str,
        condition: Condition,
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        token = self._token(cancel)
        with self._connection(credential, token) as conn:
            with self._guard(token, MutationError, f"Delete from {unit} failed"):
                table = self._reflect(conn, credential, unit)
                where = compile_condition(table, condition)
                if where is None:
                    raise AmbiguousTargetError(f"Delete from {unit} needs a condition")
                matched = self._count(conn, table, where)
                if matched == 0:
                    conn.rollback()
                    return MutationResult(0)
                self._ensure_single_target(conn, table, condition, matched)
                result = conn.execute(sa.delete(table).where(where))
                if result.rowcount > 1:
                    conn.rollback()
                    raise AmbiguousTargetError(f"Delete from {unit} would touch {result.rowcount} rows")
                conn.commit()
        return MutationResult(result.rowcount)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def close(self) -> None:
        with self._engines_lock:
            while self._engines:
                _, engine = self._engines.popitem()
                engine.dispose()

    def pool_stats(self) -> dict[str, Any]:
        stats = super().pool_stats()
        with self._engines_lock:
            stats["engines"] = len(self._engines)
            stats["pool_checked_out"] = sum(
                e.pool.checkedout() for e in self._engines.values() if hasattr(e.pool, "checkedout")
            )
        return stats


def _orig(error: sa.exc.SQLAlchemyError) -> BaseException:
    """The driver exception behind a SQLAlchemy wrapper, for ``engine_message``."""
    return getattr(error, "orig", None) or error


def make_plugin(
    adapter: SQLAdapter,
    engine_type: EngineType,
) -> Plugin:
    return Plugin(
        engine_type=engine_type,
        adapter=adapter,
        capabilities=SQL_CAPABILITIES,
        storage_unit_label="Tables",
    )


__all__ = ["SQLAdapter", "compile_condition", "order_clause", "make_plugin", "SQL_CAPABILITIES"]
