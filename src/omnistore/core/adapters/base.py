"""Adapter base class.

Manifesto:
    Every engine family implements the same eight operations against the
    shared model. Callers never see a driver object, a driver exception or
    an engine-specific value type; the adapter owns its connections (and
    pools, where the settings ask for them) and releases them on every
    exit path, cancellation included.

Features:
    - Abstract ``check_connection``, ``list_databases``,
      ``list_storage_units``, ``browse_rows``, ``raw_execute``,
      ``add_row``, ``update_row``, ``delete_row``
    - Optional ``get_graph`` (capability ``GRAPH``)
    - Checked-out connection accounting (``pool_stats``)
    - Abort-callback registration against a ``CancellationToken``

Tags:
    omnistore, adapter-pattern, abstract-base

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, ClassVar

from omnistore.core.conditions import Condition, SortKey
from omnistore.core.errors import (
    CapabilityNotSupportedError,
    MutationError,
    UnsupportedFilterError,
)
from omnistore.core.models import (
    Credential,
    EngineType,
    GraphEdge,
    MutationResult,
    QueryResult,
    Row,
    StorageUnit,
)
from omnistore.core.settings import OmnistoreSettings
from omnistore.core.values import Decoder, to_native
from omnistore.execution.cancellation import CancellationToken


class Adapter(ABC):
    """
    Abstract base class for engine adapters.

    Every operation takes the Credential explicitly and a keyword-only
    ``cancel`` token. Nothing derived from a Credential outlives the call
    unless the adapter declares a pool (see ``OmnistoreSettings.pool_mode``).
    """

    engine_types: ClassVar[tuple[EngineType, ...]] = ()
    idempotent_reads: ClassVar[bool] = True
    decoders: ClassVar[Mapping[str, Decoder]] = {}

    def __init__(self, settings: OmnistoreSettings | None = None):
        self.settings = settings or OmnistoreSettings()
        self._checkout_lock = threading.Lock()
        self._checked_out = 0

    # ── Contract ─────────────────────────────────────────────────────────

    @abstractmethod
    def check_connection(self, credential: Credential, *, cancel: CancellationToken | None = None) -> bool:
        """Return True if the engine is reachable with these credentials."""
        ...

    @abstractmethod
    def list_databases(self, credential: Credential, *, cancel: CancellationToken | None = None) -> list[str]:
        """Databases or schemas visible to the credential."""
        ...

    @abstractmethod
    def list_storage_units(
        self, credential: Credential, *, cancel: CancellationToken | None = None
    ) -> list[StorageUnit]:
        ...

    @abstractmethod
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
        ...

    @abstractmethod
    def raw_execute(
        self, credential: Credential, text: str, *, cancel: CancellationToken | None = None
    ) -> QueryResult | MutationResult:
        ...

    @abstractmethod
    def add_row(
        self,
        credential: Credential,
        unit: str,
        row: Row | Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        ...

    @abstractmethod
    def update_row(
        self,
        credential: Credential,
        unit: str,
        condition: Condition,
        values: Row | Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        ...

    @abstractmethod
    def delete_row(
        self,
        credential: Credential,
        unit: str,
        condition: Condition,
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        ...

    def get_graph(self, credential: Credential, *, cancel: CancellationToken | None = None) -> list[GraphEdge]:
        """Relationships between storage units."""
        raise CapabilityNotSupportedError(credential.engine_label, "graph")

    # ── Lifecycle ────────────────────────────────────────────────────────

    def close(self) -> None:
        """Release any pooled resources."""

    def pool_stats(self) -> dict[str, Any]:
        """Connections currently held by in-flight operations."""
        return {"mode": self.settings.pool_mode, "checked_out": self._checked_out}

    # ── Helpers for subclasses ───────────────────────────────────────────

    @staticmethod
    def _token(cancel: CancellationToken | None) -> CancellationToken:
        return cancel if cancel is not None else CancellationToken()

    @contextmanager
    def _checkout(self, token: CancellationToken, abort: Callable[[], None]) -> Iterator[None]:
        """Count a held connection and route cancellation to ``abort``."""
        with self._checkout_lock:
            self._checked_out += 1
        unregister = token.on_cancel(abort)
        try:
            yield
        finally:
            unregister()
            with self._checkout_lock:
                self._checked_out -= 1

    def _native_values(self, values: Row | Mapping[str, Any]) -> dict[str, Any]:
        """Convert incoming row values to driver values."""
        items = values.cells if isinstance(values, Row) else values.items()
        native = {str(name): to_native(value, str(name), self.decoders) for name, value in items}
        if not native:
            raise MutationError("No values supplied")
        return native

    @staticmethod
    def _check_page(offset: int, limit: int) -> None:
        if offset < 0:
            raise UnsupportedFilterError(f"Offset must be non-negative, got {offset}")
        if limit <= 0:
            raise UnsupportedFilterError(f"Limit must be positive, got {limit}")


__all__ = ["Adapter"]
