"""Engine: the plugin registry and operation dispatcher.

Manifesto:
    Callers should never hard-code adapter classes. The Engine maps an
    ``EngineType`` to exactly one ``Plugin`` and routes each operation to
    that plugin's adapter, enforcing what every adapter would otherwise
    have to repeat: capability checks, the per-call deadline, cancellation,
    read-only retry, error normalization and structured logging.

Features:
    - ``register_plugin()`` rejects a second plugin for the same engine
    - ``dispatch()`` is total over registered engines and exclusive: one
      credential, one plugin
    - Read-only operations retry on ``ConnectionTimeoutError`` when the
      adapter declares idempotent reads; mutations never retry
    - Mutations on plugins without ``TRANSACTIONS`` carry an
      eventual-consistency warning
    - ``create_default_engine()`` registers every built-in engine

Examples:
    >>> engine = create_default_engine()
    >>> cred = Credential("sqlite", database="app.db")
    >>> engine.list_storage_units(cred)
    [StorageUnit(name='users', ...)]

Tags:
    omnistore, registry, dispatch, plugins

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import Any

from omnistore.core.conditions import Condition, SortKey
from omnistore.core.errors import (
    AdapterError,
    CapabilityNotSupportedError,
    DuplicatePluginError,
    OmnistoreError,
    UnsupportedEngineError,
)
from omnistore.core.logging import LogContext, get_logger
from omnistore.core.models import (
    Credential,
    EngineType,
    GraphEdge,
    MutationResult,
    QueryResult,
    ResultWarning,
    Row,
    StorageUnit,
    WarningKind,
)
from omnistore.core.settings import OmnistoreSettings
from omnistore.execution.cancellation import CancellationToken
from omnistore.execution.retry import RetryContext, RetryStrategy, read_retry_strategy
from omnistore.execution.timeout import operation_deadline

from .plugin import Capability, Plugin

logger = get_logger(__name__)


class Operation(str, Enum):
    CHECK_CONNECTION = "check_connection"
    LIST_DATABASES = "list_databases"
    LIST_STORAGE_UNITS = "list_storage_units"
    BROWSE_ROWS = "browse_rows"
    RAW_EXECUTE = "raw_execute"
    ADD_ROW = "add_row"
    UPDATE_ROW = "update_row"
    DELETE_ROW = "delete_row"
    GET_GRAPH = "get_graph"

    @property
    def read_only(self) -> bool:
        return self in _READ_ONLY


_READ_ONLY = frozenset({
    Operation.CHECK_CONNECTION,
    Operation.LIST_DATABASES,
    Operation.LIST_STORAGE_UNITS,
    Operation.BROWSE_ROWS,
    Operation.GET_GRAPH,
})

_REQUIRED_CAPABILITY: dict[Operation, Capability] = {
    Operation.RAW_EXECUTE: Capability.RAW_EXECUTE,
    Operation.ADD_ROW: Capability.MUTATIONS,
    Operation.UPDATE_ROW: Capability.MUTATIONS,
    Operation.DELETE_ROW: Capability.MUTATIONS,
    Operation.GET_GRAPH: Capability.GRAPH,
}

EVENTUAL_CONSISTENCY_WARNING = ResultWarning(
    WarningKind.EVENTUAL_CONSISTENCY,
    "Write accepted; it may not be visible to reads until the engine refreshes",
)


class Engine:
    """
    Registry of plugins and dispatcher of operations.

    Thread-safe: registration takes a lock, dispatch only reads the plugin
    map. Engines are independent; build as many as needed.
    """

    def __init__(
        self,
        settings: OmnistoreSettings | None = None,
        *,
        read_retry: RetryStrategy | None = None,
    ):
        self.settings = settings or OmnistoreSettings()
        self._plugins: dict[EngineType | str, Plugin] = {}
        self._lock = threading.Lock()
        self._read_retry = read_retry or read_retry_strategy(
            self.settings.read_retry_attempts, self.settings.read_retry_delay
        )

    # ── Registration ─────────────────────────────────────────────────────

    def register_plugin(self, plugin: Plugin) -> None:
        with self._lock:
            if plugin.engine_type in self._plugins:
                raise DuplicatePluginError(
                    f"A plugin for {plugin.engine_type.value} is already registered"
                )
            self._plugins[plugin.engine_type] = plugin
        logger.debug("plugin_registered", **plugin.describe())

    def unregister_plugin(self, engine_type: EngineType | str) -> Plugin:
        key = EngineType.parse(engine_type)
        with self._lock:
            try:
                return self._plugins.pop(key)
            except KeyError:
                raise UnsupportedEngineError(str(getattr(key, "value", key))) from None

    def plugin_for(self, engine_type: EngineType | str) -> Plugin:
        key = EngineType.parse(engine_type)
        plugin = self._plugins.get(key)
        if plugin is None:
            raise UnsupportedEngineError(str(getattr(key, "value", key)))
        return plugin

    def list_engines(self) -> list[str]:
        return sorted(str(getattr(k, "value", k)) for k in self._plugins)

    def describe(self) -> list[dict[str, object]]:
        return [self._plugins[k].describe() for k in sorted(self._plugins, key=str)]

    def close(self) -> None:
        """Close every adapter's pools."""
        seen: set[int] = set()
        for plugin in list(self._plugins.values()):
            if id(plugin.adapter) not in seen:
                seen.add(id(plugin.adapter))
                plugin.adapter.close()

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ── Dispatch ─────────────────────────────────────────────────────────

    def dispatch(
        self,
        operation: Operation | str,
        credential: Credential,
        *args: Any,
        cancel: CancellationToken | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        """Route ``operation`` to the credential's plugin.

        Raises:
            UnsupportedEngineError: no plugin for ``credential.engine_type``
            CapabilityNotSupportedError: plugin lacks the needed capability
            OmnistoreError: anything the adapter raised, with context added
        """
        op = Operation(operation)
        plugin = self.plugin_for(credential.engine_type)
        required = _REQUIRED_CAPABILITY.get(op)
        if required is not None and not plugin.supports(required):
            raise CapabilityNotSupportedError(plugin.engine_type.value, required.value).with_context(
                engine=plugin.engine_type.value, operation=op.value
            )

        method: Callable[..., Any] = getattr(plugin.adapter, op.value)
        unit = args[0] if args and isinstance(args[0], str) and op not in (Operation.RAW_EXECUTE,) else None
        deadline = timeout or self.settings.query_timeout

        def call() -> Any:
            with operation_deadline(deadline, cancel, op.value) as ctx:
                return method(credential, *args, cancel=ctx.token, **kwargs)

        started = time.monotonic()
        with LogContext(engine=plugin.engine_type.value, operation=op.value, storage_unit=unit):
            logger.debug("dispatch_started", credential=credential.redacted())
            try:
                if op.read_only and plugin.adapter.idempotent_reads:
                    retry = RetryContext(self._read_retry, on_retry=_log_retry)
                    result = retry.run(call)
                else:
                    result = call()
            except OmnistoreError as e:
                e.with_context(
                    engine=plugin.engine_type.value,
                    operation=op.value,
                    storage_unit=unit,
                    host=credential.host or None,
                    database=credential.database or None,
                )
                logger.warning("dispatch_failed", **e.to_dict())
                raise
            except Exception as e:
                error = AdapterError(
                    f"{plugin.engine_type.value} adapter failed during {op.value}",
                    cause=e,
                ).with_context(engine=plugin.engine_type.value, operation=op.value, storage_unit=unit)
                logger.error("dispatch_failed", **error.to_dict())
                raise error from e

            if isinstance(result, MutationResult) and not plugin.supports(Capability.TRANSACTIONS):
                result = _with_eventual_consistency(result)
            logger.info(
                "dispatch_completed",
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            return result

    # ── Typed entry points ───────────────────────────────────────────────

    def check_connection(self, credential: Credential, **kw: Any) -> bool:
        return self.dispatch(Operation.CHECK_CONNECTION, credential, **kw)

    def list_databases(self, credential: Credential, **kw: Any) -> list[str]:
        return self.dispatch(Operation.LIST_DATABASES, credential, **kw)

    def list_storage_units(self, credential: Credential, **kw: Any) -> list[StorageUnit]:
        return self.dispatch(Operation.LIST_STORAGE_UNITS, credential, **kw)

    def browse_rows(
        self,
        credential: Credential,
        unit: str,
        *,
        condition: Condition | None = None,
        order_by: Sequence[SortKey] = (),
        offset: int = 0,
        limit: int = 100,
        **kw: Any,
    ) -> QueryResult:
        return self.dispatch(
            Operation.BROWSE_ROWS, credential, unit,
            condition=condition, order_by=tuple(order_by), offset=offset, limit=limit, **kw,
        )

    def raw_execute(self, credential: Credential, text: str, **kw: Any) -> QueryResult | MutationResult:
        return self.dispatch(Operation.RAW_EXECUTE, credential, text, **kw)

    def add_row(self, credential: Credential, unit: str, row: Row | Mapping[str, Any], **kw: Any) -> MutationResult:
        return self.dispatch(Operation.ADD_ROW, credential, unit, row, **kw)

    def update_row(
        self,
        credential: Credential,
        unit: str,
        condition: Condition,
        values: Row | Mapping[str, Any],
        **kw: Any,
    ) -> MutationResult:
        return self.dispatch(Operation.UPDATE_ROW, credential, unit, condition, values, **kw)

    def delete_row(self, credential: Credential, unit: str, condition: Condition, **kw: Any) -> MutationResult:
        return self.dispatch(Operation.DELETE_ROW, credential, unit, condition, **kw)

    def get_graph(self, credential: Credential, **kw: Any) -> list[GraphEdge]:
        return self.dispatch(Operation.GET_GRAPH, credential, **kw)


def _log_retry(attempt: int, error: BaseException, delay: float) -> None:
    logger.warning("read_retry", attempt=attempt, delay=round(delay, 3), error=str(error))


def _with_eventual_consistency(result: MutationResult) -> MutationResult:
    if result.has_warning(WarningKind.EVENTUAL_CONSISTENCY):
        return result
    return MutationResult(result.affected, result.warnings + (EVENTUAL_CONSISTENCY_WARNING,))


def create_default_engine(settings: OmnistoreSettings | None = None) -> Engine:
    """Engine with every built-in plugin registered."""
    from .elasticsearch import create_plugin as elasticsearch_plugin
    from .mongodb import create_plugin as mongodb_plugin
    from .mysql import create_plugin as mysql_plugin
    from .postgresql import create_plugin as postgresql_plugin
    from .redis import create_plugin as redis_plugin
    from .sqlite import create_plugin as sqlite_plugin

    engine = Engine(settings)
    for plugin in (
        postgresql_plugin(engine.settings),
        mysql_plugin(engine.settings),
        mysql_plugin(engine.settings, EngineType.MARIADB),
        sqlite_plugin(engine.settings),
        mongodb_plugin(engine.settings),
        redis_plugin(engine.settings),
        elasticsearch_plugin(engine.settings),
    ):
        engine.register_plugin(plugin)
    return engine


__all__ = [
    "Engine",
    "Operation",
    "EVENTUAL_CONSISTENCY_WARNING",
    "create_default_engine",
]
