"""Omnistore Core -- the shared model, the error taxonomy and the engine registry.

Architecture::

    Layer 1 -- Model & Errors
        errors.py          OmnistoreError hierarchy (normalized kinds)
        values.py          Value / ValueKind normalization
        conditions.py      Condition tree, SortKey
        models.py          Credential, StorageUnit, Row, QueryResult, MutationResult

    Layer 2 -- Ambient
        logging.py         structlog configuration, secret redaction
        settings.py        OmnistoreSettings (pydantic-settings)
        dialect.py         Relational dialect specifics

    Layer 3 -- Routing
        adapters/base.py       Adapter contract
        adapters/plugin.py     Plugin + Capability flags
        adapters/registry.py   Engine (register, dispatch)
        adapters/*.py          One module per engine family

Tags:
    omnistore, core, registry
"""

from omnistore.core.adapters.plugin import Capability, Plugin
from omnistore.core.adapters.registry import Engine, Operation, create_default_engine
from omnistore.core.conditions import (
    And,
    Condition,
    Not,
    Operator,
    Or,
    Predicate,
    SortKey,
    eq,
    from_mapping,
    in_,
    is_null,
    like,
    match,
    where,
)
from omnistore.core.errors import (
    AmbiguousTargetError,
    CapabilityNotSupportedError,
    ConnectionTimeoutError,
    EngineConnectionError,
    ErrorKind,
    MutationError,
    NoRowsMatchedError,
    OmnistoreError,
    OperationCancelledError,
    UnsupportedEngineError,
    UnsupportedFilterError,
)
from omnistore.core.models import (
    Attribute,
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
from omnistore.core.settings import OmnistoreSettings, load_settings
from omnistore.core.values import Value, ValueKind

__all__ = [
    # registry
    "Engine",
    "Operation",
    "Plugin",
    "Capability",
    "create_default_engine",
    # model
    "Credential",
    "EngineType",
    "Attribute",
    "StorageUnit",
    "Row",
    "QueryResult",
    "MutationResult",
    "ResultWarning",
    "WarningKind",
    "GraphEdge",
    "Value",
    "ValueKind",
    # conditions
    "Condition",
    "Predicate",
    "And",
    "Or",
    "Not",
    "Operator",
    "SortKey",
    "where",
    "eq",
    "in_",
    "like",
    "is_null",
    "match",
    "from_mapping",
    # errors
    "OmnistoreError",
    "ErrorKind",
    "EngineConnectionError",
    "ConnectionTimeoutError",
    "UnsupportedEngineError",
    "CapabilityNotSupportedError",
    "UnsupportedFilterError",
    "MutationError",
    "NoRowsMatchedError",
    "AmbiguousTargetError",
    "OperationCancelledError",
    # settings
    "OmnistoreSettings",
    "load_settings",
]
