"""Normalized values: one closed set of value kinds for every engine.

Every value read from an engine is mapped to a ``Value`` whose ``kind`` is
one of ``ValueKind``. Anything that cannot be represented losslessly by one
of the primitive kinds is kept as ``RAW`` text; raw values are editable only
when this module (or an adapter-supplied decoder) knows how to turn the text
back into the engine's native type.

Integers are Python ints, so unsigned 64-bit values and larger never wrap.
``Value.is_wide`` tells display code that a number does not fit a
double-precision float.

Examples:
    >>> normalize(42)
    Value(kind=<ValueKind.INTEGER: 'integer'>, data=42, editable=True, native_type='int')
    >>> normalize({"a": [1, None]}).to_python()
    {'a': [1, None]}
    >>> normalize(Decimal("1.10")).kind
    <ValueKind.RAW: 'raw'>

Tags:
    values, normalization, type-mapping, omnistore
"""

from __future__ import annotations

import base64
import datetime as dt
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from omnistore.core.errors import NonEditableValueError

# Largest integer a double represents exactly
_FLOAT_SAFE_INT = 2**53


class ValueKind(str, Enum):
    """Closed set of normalized value kinds."""

    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    BINARY = "binary"
    TIMESTAMP = "timestamp"
    DOCUMENT = "document"
    RAW = "raw"


@dataclass(frozen=True)
class Value:
    """A single normalized value.

    ``data`` holds the Python form: ``bytes`` for BINARY, a
    ``datetime``/``date``/``time`` for TIMESTAMP, a ``dict`` or ``list`` of
    ``Value`` for DOCUMENT and the textual form for RAW.
    """

    kind: ValueKind
    data: Any = None
    editable: bool = True
    native_type: str | None = None

    @classmethod
    def null(cls) -> Value:
        return cls(ValueKind.NULL)

    @classmethod
    def raw(cls, text: str, native_type: str | None = None, *, editable: bool = False) -> Value:
        return cls(ValueKind.RAW, text, editable=editable, native_type=native_type)

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    @property
    def is_wide(self) -> bool:
        """True for integers a double-precision float cannot hold exactly."""
        return self.kind is ValueKind.INTEGER and abs(self.data) > _FLOAT_SAFE_INT

    def to_python(self) -> Any:
        """Plain Python form, with documents unwrapped recursively."""
        if self.kind is ValueKind.DOCUMENT:
            if isinstance(self.data, dict):
                return {k: v.to_python() for k, v in self.data.items()}
            return [v.to_python() for v in self.data]
        return self.data

    def display(self) -> str:
        """Text form for tables and terminals."""
        if self.kind is ValueKind.NULL:
            return "NULL"
        if self.kind is ValueKind.BINARY:
            return "0x" + bytes(self.data).hex()
        if self.kind is ValueKind.TIMESTAMP:
            return self.data.isoformat()
        if self.kind is ValueKind.BOOLEAN:
            return "true" if self.data else "false"
        if self.kind is ValueKind.DOCUMENT:
            return str(to_jsonable(self))
        return str(self.data)


Encoder = Callable[[Any], Value]
Decoder = Callable[[str], Any]

# Extended scalar types that round-trip through their text form
_DEFAULT_DECODERS: dict[str, Decoder] = {
    "Decimal": Decimal,
    "UUID": uuid.UUID,
}


def normalize(value: Any, encoders: Mapping[type, Encoder] | None = None) -> Value:
    """Map a driver value to a ``Value``.

    ``encoders`` lets an adapter handle engine-specific types (BSON
    ObjectId, for example) before the generic rules apply. Encoders are
    passed down into nested documents.
    """
    if isinstance(value, Value):
        return value
    if encoders:
        for type_, encode in encoders.items():
            if isinstance(value, type_):
                return encode(value)
    if value is None:
        return Value.null()
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return Value(ValueKind.BOOLEAN, value, native_type="bool")
    if isinstance(value, int):
        return Value(ValueKind.INTEGER, int(value), native_type=type(value).__name__)
    if isinstance(value, float):
        return Value(ValueKind.FLOAT, value, native_type="float")
    if isinstance(value, str):
        return Value(ValueKind.STRING, value, native_type="str")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return Value(ValueKind.BINARY, bytes(value), native_type="bytes")
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return Value(ValueKind.TIMESTAMP, value, native_type=type(value).__name__)
    if isinstance(value, Mapping):
        return Value(
            ValueKind.DOCUMENT,
            {str(k): normalize(v, encoders) for k, v in value.items()},
            native_type="dict",
        )
    if isinstance(value, (list, tuple)):
        return Value(
            ValueKind.DOCUMENT,
            [normalize(v, encoders) for v in value],
            native_type="list",
        )
    if isinstance(value, (set, frozenset)):
        return Value(
            ValueKind.DOCUMENT,
            [normalize(v, encoders) for v in sorted(value, key=repr)],
            native_type="set",
            editable=False,
        )
    type_name = type(value).__name__
    return Value.raw(str(value), type_name, editable=type_name in _DEFAULT_DECODERS)


def to_native(
    value: Any,
    attribute: str = "value",
    decoders: Mapping[str, Decoder] | None = None,
) -> Any:
    """Map a ``Value`` (or plain Python value) back to a driver value.

    Raises:
        NonEditableValueError: for RAW values that cannot round-trip
    """
    if not isinstance(value, Value):
        return value
    if value.kind is ValueKind.RAW:
        if not value.editable:
            raise NonEditableValueError(attribute)
        decode = None
        if value.native_type:
            decode = (decoders or {}).get(value.native_type) or _DEFAULT_DECODERS.get(value.native_type)
        return decode(value.data) if decode else value.data
    if value.kind is ValueKind.DOCUMENT:
        if not value.editable:
            raise NonEditableValueError(attribute)
        if isinstance(value.data, dict):
            return {k: to_native(v, f"{attribute}.{k}", decoders) for k, v in value.data.items()}
        return [to_native(v, f"{attribute}[{i}]", decoders) for i, v in enumerate(value.data)]
    return value.data


def to_jsonable(value: Value) -> Any:
    """JSON-safe form: wide integers, binary and timestamps become strings."""
    if value.kind is ValueKind.DOCUMENT:
        if isinstance(value.data, dict):
            return {k: to_jsonable(v) for k, v in value.data.items()}
        return [to_jsonable(v) for v in value.data]
    if value.kind is ValueKind.BINARY:
        return base64.b64encode(value.data).decode("ascii")
    if value.kind is ValueKind.TIMESTAMP:
        return value.data.isoformat()
    if value.is_wide:
        return str(value.data)
    return value.data


__all__ = [
    "ValueKind",
    "Value",
    "Encoder",
    "Decoder",
    "normalize",
    "to_native",
    "to_jsonable",
]
