"""
Structured error types for omnistore.

Every failure that crosses the Engine boundary is an ``OmnistoreError``. Each
one carries a normalized ``kind`` (what went wrong, independent of engine),
a ``category`` (where to route it), retry semantics, structured context,
and the engine's own message, kept verbatim.

Manifesto:
    - **One taxonomy for every engine:** A unique-constraint failure on
      PostgreSQL and a duplicate-key error on MongoDB are both
      ``MutationError``; callers branch on ``kind`` and never on driver
      exception classes.
    - **Keep the engine's words:** ``engine_message`` preserves the original
      text so operators can search the engine's own documentation for it.
    - **Explicit retry semantics:** Only ``ConnectionTimeoutError`` is
      retryable by default, and only read-only operations are ever retried.
    - **Error chaining:** The driver exception is kept as ``cause``.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       OmnistoreError                             │
        │   (kind, category, retryable, context, cause, engine_message)    │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ConfigError            EngineConnectionError   QueryError       │
        │    DuplicatePlugin        ConnectionTimeout                      │
        │    UnsupportedEngine                                             │
        │    CapabilityNotSupported                                        │
        │                                                                  │
        │  UnsupportedFilterError  UnknownStorageUnit   MutationError      │
        │                          UnknownAttribute       NoRowsMatched    │
        │                                                 AmbiguousTarget  │
        │  OperationCancelledError AdapterError           NonEditableValue │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = ConnectionTimeoutError("pool exhausted")
    >>> error.kind
    <ErrorKind.CONNECTION_TIMEOUT: 'CONNECTION_TIMEOUT'>
    >>> error.retryable
    True

    >>> try:
    ...     raise ValueError("duplicate key value violates unique constraint")
    ... except ValueError as e:
    ...     err = MutationError("Insert failed", cause=e)
    >>> err.engine_message
    'duplicate key value violates unique constraint'

Guardrails:
    ❌ DON'T: Let driver exceptions escape an adapter
    ✅ DO: Wrap them with ``cause=`` so ``engine_message`` is preserved

    ❌ DON'T: Put credentials in ``context``
    ✅ DO: Use ``Credential.redacted()`` when context needs connection details

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    omnistore, normalization

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Normalized failure kinds shared by all engines."""

    CONNECTION = "CONNECTION"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    UNSUPPORTED_ENGINE = "UNSUPPORTED_ENGINE"
    CAPABILITY_NOT_SUPPORTED = "CAPABILITY_NOT_SUPPORTED"
    UNSUPPORTED_FILTER = "UNSUPPORTED_FILTER"
    UNKNOWN_STORAGE_UNIT = "UNKNOWN_STORAGE_UNIT"
    UNKNOWN_ATTRIBUTE = "UNKNOWN_ATTRIBUTE"
    AMBIGUOUS_TARGET = "AMBIGUOUS_TARGET"
    NO_ROWS_MATCHED = "NO_ROWS_MATCHED"
    MUTATION = "MUTATION"
    QUERY = "QUERY"
    CANCELLED = "CANCELLED"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


class ErrorCategory(str, Enum):
    """
    Error categories for classification and routing.

    ``kind`` says what happened; ``category`` says who should look at it.
    Infrastructure problems (NETWORK) go to whoever runs the database,
    VALIDATION and CONFIG problems go back to the caller.
    """

    NETWORK = "NETWORK"           # Connection refused, DNS, timeouts
    DATABASE = "DATABASE"         # Engine rejected a statement
    CONFIG = "CONFIG"             # Registration, capability, credential shape
    VALIDATION = "VALIDATION"     # Bad filter, unknown attribute
    MUTATION = "MUTATION"         # Write rejected or unsafe
    CANCELLED = "CANCELLED"       # Caller abandoned the operation
    INTERNAL = "INTERNAL"         # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields are serialized by ``to_dict()``. Anything that does
    not fit a typed field goes in ``metadata``.
    """

    engine: str | None = None
    operation: str | None = None
    storage_unit: str | None = None
    host: str | None = None
    database: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["engine", "operation", "storage_unit", "host", "database"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class OmnistoreError(Exception):
    """
    Base exception for all omnistore errors.

    Subclasses set ``default_kind``, ``default_category`` and
    ``default_retryable``; callers rarely pass them explicitly.

    ``engine_message`` defaults to ``str(cause)`` so that the engine's
    original wording survives normalization.
    """

    default_kind: ErrorKind = ErrorKind.INTERNAL
    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
        engine_message: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if engine_message is None and cause is not None:
            engine_message = str(cause)
        self.engine_message = engine_message

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> OmnistoreError:
        """
        Add context to this error (fluent API).

        Usage:
            raise QueryError("Browse failed", cause=e).with_context(
                engine="postgresql", storage_unit="users"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                if getattr(self.context, key) is None:
                    setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.engine_message is not None:
            result["engine_message"] = self.engine_message
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, kind={self.kind.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(OmnistoreError):
    """
    Configuration error.

    Never retryable - configuration must be fixed.
    """

    default_kind = ErrorKind.CONFIG
    default_category = ErrorCategory.CONFIG


class DuplicatePluginError(ConfigError):
    """A plugin for this engine type is already registered."""


class UnsupportedEngineError(ConfigError):
    """No plugin is registered for the credential's engine type."""

    default_kind = ErrorKind.UNSUPPORTED_ENGINE

    def __init__(self, engine_type: str, message: str | None = None, **kwargs: Any):
        self.engine_type = engine_type
        super().__init__(message or f"Unsupported engine: {engine_type}", **kwargs)


class CapabilityNotSupportedError(ConfigError):
    """The engine's plugin does not declare the capability an operation needs."""

    default_kind = ErrorKind.CAPABILITY_NOT_SUPPORTED

    def __init__(self, engine_type: str, capability: str, message: str | None = None, **kwargs: Any):
        self.engine_type = engine_type
        self.capability = capability
        super().__init__(
            message or f"Engine {engine_type} does not support {capability}",
            **kwargs,
        )


# =============================================================================
# CONNECTION ERRORS
# =============================================================================


class EngineConnectionError(OmnistoreError):
    """
    Could not reach or authenticate against the engine.

    Not retried automatically: a wrong password stays wrong.
    """

    default_kind = ErrorKind.CONNECTION
    default_category = ErrorCategory.NETWORK


class ConnectionTimeoutError(EngineConnectionError):
    """Connect, pool acquisition, or per-call deadline expired."""

    default_kind = ErrorKind.CONNECTION_TIMEOUT
    default_retryable = True


# =============================================================================
# REQUEST ERRORS
# =============================================================================


class UnsupportedFilterError(OmnistoreError):
    """A condition uses an operator or attribute the engine cannot express."""

    default_kind = ErrorKind.UNSUPPORTED_FILTER
    default_category = ErrorCategory.VALIDATION


class UnknownStorageUnitError(OmnistoreError):
    """The named table, collection, key pattern, or index does not exist."""

    default_kind = ErrorKind.UNKNOWN_STORAGE_UNIT
    default_category = ErrorCategory.VALIDATION

    def __init__(self, unit: str, message: str | None = None, **kwargs: Any):
        self.unit = unit
        super().__init__(message or f"Unknown storage unit: {unit}", **kwargs)


class UnknownAttributeError(OmnistoreError):
    """A row or condition names an attribute the storage unit does not have."""

    default_kind = ErrorKind.UNKNOWN_ATTRIBUTE
    default_category = ErrorCategory.VALIDATION

    def __init__(self, attribute: str, unit: str | None = None, message: str | None = None, **kwargs: Any):
        self.attribute = attribute
        self.unit = unit
        where = f" on {unit}" if unit else ""
        super().__init__(message or f"Unknown attribute {attribute!r}{where}", **kwargs)


class QueryError(OmnistoreError):
    """The engine rejected a read or a raw statement."""

    default_kind = ErrorKind.QUERY
    default_category = ErrorCategory.DATABASE


# =============================================================================
# MUTATION ERRORS
# =============================================================================


class MutationError(OmnistoreError):
    """The engine rejected a write (constraint, type, permissions)."""

    default_kind = ErrorKind.MUTATION
    default_category = ErrorCategory.MUTATION


class NoRowsMatchedError(MutationError):
    """An update addressed zero rows. Nothing was written."""

    default_kind = ErrorKind.NO_ROWS_MATCHED


class AmbiguousTargetError(MutationError):
    """A mutation could address more than one row. Nothing was written."""

    default_kind = ErrorKind.AMBIGUOUS_TARGET


class NonEditableValueError(MutationError):
    """A raw value that cannot round-trip was submitted as a new value."""

    def __init__(self, attribute: str, message: str | None = None, **kwargs: Any):
        self.attribute = attribute
        super().__init__(message or f"Value for {attribute!r} is not editable", **kwargs)


# =============================================================================
# LIFECYCLE ERRORS
# =============================================================================


class OperationCancelledError(OmnistoreError):
    """The caller cancelled the operation before it completed."""

    default_kind = ErrorKind.CANCELLED
    default_category = ErrorCategory.CANCELLED


class AdapterError(OmnistoreError):
    """An adapter raised something that was not an ``OmnistoreError``."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, OmnistoreError):
        return error.retryable
    return False


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, OmnistoreError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorKind",
    "ErrorCategory",
    "ErrorContext",
    "OmnistoreError",
    # Config
    "ConfigError",
    "DuplicatePluginError",
    "UnsupportedEngineError",
    "CapabilityNotSupportedError",
    # Connection
    "EngineConnectionError",
    "ConnectionTimeoutError",
    # Request
    "UnsupportedFilterError",
    "UnknownStorageUnitError",
    "UnknownAttributeError",
    "QueryError",
    # Mutation
    "MutationError",
    "NoRowsMatchedError",
    "AmbiguousTargetError",
    "NonEditableValueError",
    # Lifecycle
    "OperationCancelledError",
    "AdapterError",
    # Utilities
    "is_retryable",
    "categorize_error",
]
