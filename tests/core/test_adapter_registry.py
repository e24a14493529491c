"""Tests for the Engine: plugin registration and operation dispatch."""

from __future__ import annotations

import threading

import pytest

from omnistore.core.adapters.base import Adapter
from omnistore.core.adapters.plugin import Capability, Plugin
from omnistore.core.adapters.registry import (
    EVENTUAL_CONSISTENCY_WARNING,
    Engine,
    Operation,
    create_default_engine,
)
from omnistore.core.conditions import eq
from omnistore.core.errors import (
    AdapterError,
    CapabilityNotSupportedError,
    ConnectionTimeoutError,
    DuplicatePluginError,
    MutationError,
    OperationCancelledError,
    QueryError,
    UnsupportedEngineError,
)
from omnistore.core.models import Credential, EngineType, MutationResult, QueryResult, WarningKind
from omnistore.core.settings import OmnistoreSettings
from omnistore.execution.cancellation import CancellationToken
from omnistore.execution.retry import ExponentialBackoff, RetryContext


class StubAdapter(Adapter):
    """Adapter whose reads and writes fail from a script, then succeed."""

    def __init__(self, settings=None, *, failures=(), block=False):
        super().__init__(settings)
        self.failures = list(failures)
        self.block = block
        self.calls: list[str] = []
        self.aborted = threading.Event()

    def _next(self, name, token, result):
        self.calls.append(name)
        if self.failures:
            raise self.failures.pop(0)
        if self.block:
            with self._checkout(token, self.aborted.set):
                self.aborted.wait(5)
                token.raise_if_cancelled(name)
        return result

    def check_connection(self, credential, *, cancel=None):
        return self._next("check_connection", self._token(cancel), True)

    def list_databases(self, credential, *, cancel=None):
        return self._next("list_databases", self._token(cancel), ["main"])

    def list_storage_units(self, credential, *, cancel=None):
        return self._next("list_storage_units", self._token(cancel), [])

    def browse_rows(self, credential, unit, *, condition=None, order_by=(), offset=0, limit=100, cancel=None):
        return self._next("browse_rows", self._token(cancel), QueryResult(columns=(), rows=()))

    def raw_execute(self, credential, text, *, cancel=None):
        return self._next("raw_execute", self._token(cancel), MutationResult(0))

    def add_row(self, credential, unit, row, *, cancel=None):
        return self._next("add_row", self._token(cancel), MutationResult(1))

    def update_row(self, credential, unit, condition, values, *, cancel=None):
        return self._next("update_row", self._token(cancel), MutationResult(1))

    def delete_row(self, credential, unit, condition, *, cancel=None):
        return self._next("delete_row", self._token(cancel), MutationResult(1))


ALL_CAPS = frozenset(Capability)


def _engine(adapter, capabilities=ALL_CAPS, *, retries=3, settings=None) -> Engine:
    settings = settings or OmnistoreSettings(query_timeout=5)
    eng = Engine(
        settings,
        read_retry=ExponentialBackoff(
            max_retries=retries, base_delay=0.0, jitter=False,
            retryable_errors=(ConnectionTimeoutError,),
        ),
    )
    eng.register_plugin(Plugin(EngineType.SQLITE, adapter, capabilities))
    return eng


CRED = Credential("sqlite", database=":memory:")


class TestRegistration:
    def test_duplicate_rejected(self):
        eng = _engine(StubAdapter())
        with pytest.raises(DuplicatePluginError):
            eng.register_plugin(Plugin(EngineType.SQLITE, StubAdapter()))

    def test_unsupported_engine(self):
        eng = _engine(StubAdapter())
        with pytest.raises(UnsupportedEngineError) as exc_info:
            eng.check_connection(Credential("cassandra"))
        assert exc_info.value.engine_type == "cassandra"

    def test_unregister(self):
        eng = _engine(StubAdapter())
        eng.unregister_plugin("sqlite")
        assert eng.list_engines() == []
        with pytest.raises(UnsupportedEngineError):
            eng.unregister_plugin("sqlite")

    def test_aliases_resolve(self):
        eng = _engine(StubAdapter())
        assert eng.plugin_for("sqlite3").engine_type is EngineType.SQLITE

    def test_default_engine_registers_every_builtin(self):
        with create_default_engine() as eng:
            assert eng.list_engines() == sorted(e.value for e in EngineType)
            labels = {d["engine"]: d["storage_unit_label"] for d in eng.describe()}
        assert labels["mongodb"] == "Collections"
        assert labels["redis"] == "Keys"
        assert labels["elasticsearch"] == "Indices"
        assert labels["mariadb"] == "Tables"

    def test_engines_are_independent(self):
        first, second = _engine(StubAdapter()), Engine()
        assert first.list_engines() == ["sqlite"]
        assert second.list_engines() == []


class TestDispatch:
    def test_routes_to_adapter(self):
        adapter = StubAdapter()
        eng = _engine(adapter)
        assert eng.list_databases(CRED) == ["main"]
        assert eng.delete_row(CRED, "users", eq("id", 1)).affected == 1
        assert adapter.calls == ["list_databases", "delete_row"]

    def test_dispatch_by_name(self):
        eng = _engine(StubAdapter())
        assert eng.dispatch("check_connection", CRED) is True
        assert Operation.BROWSE_ROWS.read_only
        assert not Operation.DELETE_ROW.read_only

    def test_missing_capability(self):
        adapter = StubAdapter()
        eng = _engine(adapter, capabilities=frozenset())
        with pytest.raises(CapabilityNotSupportedError) as exc_info:
            eng.add_row(CRED, "users", {"id": 1})
        assert exc_info.value.capability == "mutations"
        assert exc_info.value.context.operation == "add_row"
        assert adapter.calls == []

    def test_graph_needs_capability(self):
        eng = _engine(StubAdapter(), capabilities=ALL_CAPS - {Capability.GRAPH})
        with pytest.raises(CapabilityNotSupportedError):
            eng.get_graph(CRED)

    def test_errors_carry_context(self):
        eng = _engine(StubAdapter(failures=[QueryError("bad")]))
        with pytest.raises(QueryError) as exc_info:
            eng.browse_rows(CRED, "users")
        ctx = exc_info.value.context
        assert ctx.engine == "sqlite"
        assert ctx.operation == "browse_rows"
        assert ctx.storage_unit == "users"

    def test_foreign_exceptions_are_wrapped(self):
        boom = KeyError("driver bug")
        eng = _engine(StubAdapter(failures=[boom]))
        with pytest.raises(AdapterError) as exc_info:
            eng.list_storage_units(CRED)
        assert exc_info.value.__cause__ is boom


class TestReadRetry:
    def test_reads_retry_on_connection_timeout(self):
        adapter = StubAdapter(failures=[ConnectionTimeoutError("slow"), ConnectionTimeoutError("slow")])
        eng = _engine(adapter, retries=3)
        assert eng.list_databases(CRED) == ["main"]
        assert adapter.calls.count("list_databases") == 3

    def test_reads_give_up_after_budget(self):
        adapter = StubAdapter(failures=[ConnectionTimeoutError("slow")] * 5)
        eng = _engine(adapter, retries=2)
        with pytest.raises(ConnectionTimeoutError):
            eng.list_databases(CRED)
        assert len(adapter.calls) == 2

    def test_other_errors_are_not_retried(self):
        adapter = StubAdapter(failures=[QueryError("syntax")])
        eng = _engine(adapter)
        with pytest.raises(QueryError):
            eng.browse_rows(CRED, "users")
        assert len(adapter.calls) == 1

    @pytest.mark.parametrize("op", ["add_row", "update_row", "delete_row", "raw_execute"])
    def test_writes_never_retry(self, op):
        adapter = StubAdapter(failures=[ConnectionTimeoutError("slow")])
        eng = _engine(adapter)
        args = {
            "add_row": ("users", {"id": 1}),
            "update_row": ("users", eq("id", 1), {"name": "y"}),
            "delete_row": ("users", eq("id", 1)),
            "raw_execute": ("DELETE FROM users",),
        }[op]
        with pytest.raises(ConnectionTimeoutError):
            getattr(eng, op)(CRED, *args)
        assert len(adapter.calls) == 1

    def test_adapter_without_idempotent_reads(self):
        adapter = StubAdapter(failures=[ConnectionTimeoutError("slow")])
        adapter.idempotent_reads = False
        eng = _engine(adapter)
        with pytest.raises(ConnectionTimeoutError):
            eng.list_databases(CRED)
        assert len(adapter.calls) == 1

    def test_retry_context_counts_attempts(self):
        ctx = RetryContext(ExponentialBackoff(max_retries=2, base_delay=0, jitter=False), sleep=lambda _: None)
        with pytest.raises(ValueError):
            ctx.run(lambda: (_ for _ in ()).throw(ValueError("x")))
        assert ctx.attempts == 2


class TestConsistencyWarnings:
    def test_non_transactional_writes_are_flagged(self):
        eng = _engine(StubAdapter(), capabilities=ALL_CAPS - {Capability.TRANSACTIONS})
        result = eng.add_row(CRED, "users", {"id": 1})
        assert result.has_warning(WarningKind.EVENTUAL_CONSISTENCY)
        assert result.warnings == (EVENTUAL_CONSISTENCY_WARNING,)

    def test_transactional_writes_are_not(self):
        eng = _engine(StubAdapter())
        assert eng.add_row(CRED, "users", {"id": 1}).warnings == ()


class TestDeadlineAndCancellation:
    @pytest.mark.slow
    def test_deadline_aborts_and_reports_timeout(self):
        adapter = StubAdapter(block=True)
        eng = _engine(adapter, retries=1)
        with pytest.raises(ConnectionTimeoutError):
            eng.raw_execute(CRED, "SELECT 1", timeout=0.1)
        assert adapter.aborted.is_set()
        assert adapter.pool_stats()["checked_out"] == 0

    def test_caller_cancellation(self):
        adapter = StubAdapter(block=True)
        eng = _engine(adapter)
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()
        with pytest.raises(OperationCancelledError):
            eng.add_row(CRED, "users", {"id": 1}, cancel=token)
        assert adapter.pool_stats()["checked_out"] == 0

    def test_cancelled_before_dispatch(self):
        adapter = StubAdapter()
        eng = _engine(adapter)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            eng.delete_row(CRED, "users", eq("id", 1), cancel=token)
        assert adapter.calls == []

    def test_mutation_errors_propagate_unchanged(self):
        eng = _engine(StubAdapter(failures=[MutationError("constraint")]))
        with pytest.raises(MutationError, match="constraint"):
            eng.update_row(CRED, "users", eq("id", 1), {"name": "y"})
