"""Shared data model: credentials, storage units, rows and results.

Every type here is immutable once built. ``Credential`` never shows its
secret in ``repr`` and is only ever logged through ``redacted()``.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from omnistore.core.errors import ConfigError
from omnistore.core.values import Value, normalize, to_jsonable


class EngineType(str, Enum):
    """Supported engine identifiers."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    SQLITE = "sqlite"
    MONGODB = "mongodb"
    REDIS = "redis"
    ELASTICSEARCH = "elasticsearch"

    @classmethod
    def parse(cls, value: EngineType | str) -> EngineType | str:
        """Normalize a user-supplied name; unknown names pass through as str."""
        if isinstance(value, EngineType):
            return value
        name = value.strip().lower()
        aliases = {"postgres": "postgresql", "sqlite3": "sqlite", "mongo": "mongodb", "es": "elasticsearch"}
        name = aliases.get(name, name)
        try:
            return cls(name)
        except ValueError:
            return name


@dataclass(frozen=True)
class Credential:
    """Connection details for one engine.

    ``schema`` selects the namespace inside ``database`` for engines that
    have one (PostgreSQL schemas); ``advanced`` carries engine-specific
    options such as ``sslmode`` or ``authSource``.
    """

    engine_type: EngineType | str
    host: str = ""
    port: int | None = None
    username: str = ""
    password: str = field(default="", repr=False)
    database: str = ""
    schema: str = ""
    advanced: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "engine_type", EngineType.parse(self.engine_type))
        object.__setattr__(self, "advanced", MappingProxyType(dict(self.advanced)))
        if self.port is not None:
            try:
                port = int(self.port)
            except (TypeError, ValueError):
                raise ConfigError(f"Invalid port: {self.port!r}") from None
            if not 0 < port < 65536:
                raise ConfigError(f"Invalid port: {self.port}")
            object.__setattr__(self, "port", port)

    def __hash__(self) -> int:
        return hash(self.fingerprint())

    def __repr__(self) -> str:
        return (
            f"Credential(engine_type={self.engine_label!r}, host={self.host!r}, "
            f"port={self.port!r}, username={self.username!r}, password='***', "
            f"database={self.database!r})"
        )

    @property
    def engine_label(self) -> str:
        return self.engine_type.value if isinstance(self.engine_type, EngineType) else str(self.engine_type)

    def option(self, name: str, default: str | None = None) -> str | None:
        """Case-insensitive lookup in ``advanced``."""
        lowered = name.lower()
        for key, value in self.advanced.items():
            if key.lower() == lowered:
                return value
        return default

    def fingerprint(self) -> str:
        """Stable digest identifying this credential without exposing it."""
        parts = [
            self.engine_label, self.host, str(self.port or ""), self.username,
            self.password, self.database, self.schema,
            *(f"{k}={v}" for k, v in sorted(self.advanced.items())),
        ]
        return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()

    def redacted(self) -> dict[str, Any]:
        """Loggable form with the secret masked."""
        return {
            "engine_type": self.engine_label,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "password": "***" if self.password else "",
            "database": self.database,
            "schema": self.schema,
            "advanced": sorted(self.advanced),
        }


@dataclass(frozen=True)
class Attribute:
    name: str
    type: str


@dataclass(frozen=True)
class StorageUnit:
    """A table, collection, key namespace or index.

    ``attributes`` is ordered and names are unique. ``row_count`` is an
    estimate where the engine only offers one, or None when unknown.
    """

    name: str
    attributes: tuple[Attribute, ...] = ()
    row_count: int | None = None
    kind: str = "table"

    def __post_init__(self) -> None:
        attrs = tuple(
            a if isinstance(a, Attribute) else Attribute(*a) for a in self.attributes
        )
        names = [a.name for a in attrs]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate attribute names in {self.name}: {names}")
        object.__setattr__(self, "attributes", attrs)

    @classmethod
    def from_pairs(
        cls,
        name: str,
        pairs: Iterable[tuple[str, str]],
        **kwargs: Any,
    ) -> StorageUnit:
        """Build from possibly repeating pairs; the first occurrence wins."""
        seen: dict[str, str] = {}
        for attr_name, attr_type in pairs:
            seen.setdefault(attr_name, attr_type)
        return cls(name, tuple(Attribute(n, t) for n, t in seen.items()), **kwargs)

    @property
    def attribute_names(self) -> list[str]:
        return [a.name for a in self.attributes]


@dataclass(frozen=True)
class Row:
    """Ordered (attribute, value) pairs.

    Rows from schema-less engines may carry a superset or subset of the
    storage unit's attributes.
    """

    cells: tuple[tuple[str, Value], ...]

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], encoders: Mapping[type, Any] | None = None) -> Row:
        return cls(tuple((str(k), normalize(v, encoders)) for k, v in values.items()))

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, Any]]) -> Row:
        return cls(tuple((k, normalize(v)) for k, v in pairs))

    def __iter__(self) -> Iterator[tuple[str, Value]]:
        return iter(self.cells)

    def __len__(self) -> int:
        return len(self.cells)

    def __getitem__(self, attribute: str) -> Value:
        for name, value in self.cells:
            if name == attribute:
                return value
        raise KeyError(attribute)

    def get(self, attribute: str, default: Value | None = None) -> Value | None:
        try:
            return self[attribute]
        except KeyError:
            return default

    @property
    def attributes(self) -> list[str]:
        return [name for name, _ in self.cells]

    def as_dict(self) -> dict[str, Value]:
        return dict(self.cells)

    def to_python(self) -> dict[str, Any]:
        return {name: value.to_python() for name, value in self.cells}

    def to_jsonable(self) -> dict[str, Any]:
        return {name: to_jsonable(value) for name, value in self.cells}


class WarningKind(str, Enum):
    EVENTUAL_CONSISTENCY = "eventual_consistency"
    UNORDERED = "unordered"
    TRUNCATED = "truncated"


@dataclass(frozen=True)
class ResultWarning:
    """Non-fatal notice attached to a successful result."""

    kind: WarningKind
    message: str


@dataclass(frozen=True)
class QueryResult:
    """Rows plus paging metadata.

    ``ordered`` is False when the engine could not honour the requested
    ordering (key-value SCAN, for example); ``total_count`` is None when a
    count would need a second full pass.
    """

    columns: tuple[Attribute, ...]
    rows: tuple[Row, ...]
    total_count: int | None = None
    offset: int = 0
    limit: int | None = None
    ordered: bool = True
    warnings: tuple[ResultWarning, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "columns", tuple(c if isinstance(c, Attribute) else Attribute(*c) for c in self.columns)
        )
        object.__setattr__(self, "rows", tuple(self.rows))
        object.__setattr__(self, "warnings", tuple(self.warnings))

    def __len__(self) -> int:
        return len(self.rows)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def to_python(self) -> list[dict[str, Any]]:
        return [row.to_python() for row in self.rows]


@dataclass(frozen=True)
class MutationResult:
    affected: int
    warnings: tuple[ResultWarning, ...] = ()

    def has_warning(self, kind: WarningKind) -> bool:
        return any(w.kind is kind for w in self.warnings)


@dataclass(frozen=True)
class GraphEdge:
    """A relationship between two storage units (a foreign key, for example)."""

    source: str
    target: str
    relation: str = "foreign_key"
    columns: tuple[tuple[str, str], ...] = ()


def columns_from_rows(rows: Sequence[Row], known: Sequence[Attribute] = ()) -> tuple[Attribute, ...]:
    """Union of attributes in first-seen order, types from ``known`` or the
    first non-null value."""
    types = {a.name: a.type for a in known}
    order: dict[str, str] = {a.name: a.type for a in known}
    for row in rows:
        for name, value in row:
            if name not in order or (order[name] == "null" and not value.is_null):
                order[name] = types.get(name) or value.kind.value
    return tuple(Attribute(n, t) for n, t in order.items())


__all__ = [
    "EngineType",
    "Credential",
    "Attribute",
    "StorageUnit",
    "Row",
    "WarningKind",
    "ResultWarning",
    "QueryResult",
    "MutationResult",
    "GraphEdge",
    "columns_from_rows",
]
