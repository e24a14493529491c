"""MongoDB adapter.

Collections are storage units; their attributes are the union of field
names over a sample of documents, typed with BSON type names. Documents
keep their nesting as ``DOCUMENT`` values. BSON types without a portable
Python form (ObjectId, Decimal128, Regex, Timestamp) become ``RAW`` text;
ObjectId and Decimal128 stay editable because they parse back losslessly.

A client is created per operation and closed on every exit path. Closing
the client is also how a running call is aborted.

Examples:
    >>> cred = Credential("mongodb", host="localhost", database="shop")
    >>> adapter = MongoDBAdapter()
    >>> adapter.browse_rows(cred, "orders", condition=eq("status", "open"), limit=10)
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any, ClassVar

import pymongo
from bson import Binary, Code, DBRef, Decimal128, Int64, MaxKey, MinKey, ObjectId, Regex, Timestamp, json_util
from pymongo import errors as mongo_errors

from omnistore.core.conditions import And, Condition, Not, Operator, Or, Predicate, SortKey, equality_map, like_to_regex_source
from omnistore.core.errors import (
    AmbiguousTargetError,
    ConfigError,
    ConnectionTimeoutError,
    EngineConnectionError,
    MutationError,
    NoRowsMatchedError,
    OmnistoreError,
    OperationCancelledError,
    QueryError,
    UnsupportedFilterError,
)
from omnistore.core.logging import get_logger
from omnistore.core.models import (
    Attribute,
    Credential,
    EngineType,
    MutationResult,
    QueryResult,
    Row,
    StorageUnit,
)
from omnistore.core.settings import OmnistoreSettings
from omnistore.core.values import Decoder, Encoder, Value, to_native
from omnistore.execution.cancellation import CancellationToken
from omnistore.execution.timeout import get_remaining_deadline

from .base import Adapter
from .plugin import Capability, Plugin

logger = get_logger(__name__)

ENCODERS: dict[type, Encoder] = {
    ObjectId: lambda v: Value.raw(str(v), "ObjectId", editable=True),
    Decimal128: lambda v: Value.raw(str(v), "Decimal128", editable=True),
    # Code subclasses str; it must be caught before the generic rules
    Code: lambda v: Value.raw(str(v), "Code"),
    Regex: lambda v: Value.raw(f"/{v.pattern}/{v.flags}", "Regex"),
    Timestamp: lambda v: Value.raw(f"Timestamp({v.time}, {v.inc})", "Timestamp"),
    DBRef: lambda v: Value.raw(f"DBRef({v.collection!r}, {v.id!r})", "DBRef"),
    MinKey: lambda v: Value.raw("MinKey", "MinKey"),
    MaxKey: lambda v: Value.raw("MaxKey", "MaxKey"),
}

DECODERS: dict[str, Decoder] = {
    "ObjectId": ObjectId,
    "Decimal128": Decimal128,
}

_COMPARISON = {
    Operator.NE: "$ne",
    Operator.LT: "$lt",
    Operator.LTE: "$lte",
    Operator.GT: "$gt",
    Operator.GTE: "$gte",
}

_WRITE_COMMANDS = frozenset({"insert", "update", "delete"})


def bson_type_name(value: Any) -> str:
    """BSON type alias as used by ``$type``."""
    # order matters: bool before int, Int64 before int, Binary before bytes
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, Int64):
        return "long"
    if isinstance(value, int):
        return "int" if -(2**31) <= value < 2**31 else "long"
    if isinstance(value, float):
        return "double"
    if isinstance(value, ObjectId):
        return "objectId"
    if isinstance(value, Code):
        return "javascript"
    if isinstance(value, str):
        return "string"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, (Binary, bytes)):
        return "binData"
    if isinstance(value, Decimal128):
        return "decimal"
    if isinstance(value, Regex):
        return "regex"
    if isinstance(value, Timestamp):
        return "timestamp"
    return type(value).__name__.lower()


class MongoDBAdapter(Adapter):
    engine_types: ClassVar[tuple[EngineType, ...]] = (EngineType.MONGODB,)
    decoders: ClassVar[Mapping[str, Decoder]] = DECODERS

    # ── Client lifecycle ─────────────────────────────────────────────────

    def _client(self, credential: Credential) -> pymongo.MongoClient:
        """Build a client; no connection is made until the first command."""
        remaining = get_remaining_deadline(self.settings.query_timeout) or self.settings.query_timeout
        connect_ms = int(min(self.settings.connect_timeout, remaining) * 1000)
        options: dict[str, Any] = {
            "serverSelectionTimeoutMS": connect_ms,
            "connectTimeoutMS": connect_ms,
            "socketTimeoutMS": int(remaining * 1000),
            "appname": "omnistore",
        }
        if credential.username:
            options["username"] = credential.username
            options["password"] = credential.password
        options.update(credential.advanced)
        return pymongo.MongoClient(
            host=credential.host or "localhost",
            port=credential.port or 27017,
            **options,
        )

    @contextmanager
    def _session(self, credential: Credential, token: CancellationToken) -> Iterator[pymongo.MongoClient]:
        token.raise_if_cancelled("connect")
        client = self._client(credential)
        try:
            with self._checkout(token, client.close):
                yield client
        finally:
            client.close()

    def _database(self, client: pymongo.MongoClient, credential: Credential) -> Any:
        if not credential.database:
            raise ConfigError("MongoDB credential needs a database")
        return client[credential.database]

    @contextmanager
    def _guard(
        self,
        token: CancellationToken,
        error_cls: type[OmnistoreError],
        message: str,
    ) -> Iterator[None]:
        try:
            yield
        except OmnistoreError:
            raise
        except mongo_errors.PyMongoError as e:
            if token.is_cancelled():
                if token.timed_out:
                    raise ConnectionTimeoutError(f"{message}: deadline exceeded", cause=e) from e
                raise OperationCancelledError(f"{message}: cancelled", cause=e) from e
            if isinstance(e, (mongo_errors.ServerSelectionTimeoutError, mongo_errors.NetworkTimeout,
                              mongo_errors.ExecutionTimeout)):
                raise ConnectionTimeoutError(message, cause=e) from e
            if isinstance(e, mongo_errors.ConnectionFailure):
                raise EngineConnectionError(message, cause=e) from e
            if isinstance(e, mongo_errors.OperationFailure) and e.code in (13, 18):
                # Unauthorized / AuthenticationFailed
                raise EngineConnectionError(message, cause=e) from e
            raise error_cls(message, cause=e, engine_message=_engine_message(e)) from e

    # ── Condition translation ────────────────────────────────────────────

    def _native(self, attribute: str, value: Any) -> Any:
        native = to_native(value, attribute, self.decoders)
        if attribute == "_id" and isinstance(native, str) and ObjectId.is_valid(native):
            return ObjectId(native)
        return native

    def build_filter(self, condition: Condition | None) -> dict[str, Any]:
        """Translate a Condition into a MongoDB query document."""
        if condition is None:
            return {}
        if isinstance(condition, And):
            return {"$and": [self.build_filter(c) for c in condition.conditions]}
        if isinstance(condition, Or):
            return {"$or": [self.build_filter(c) for c in condition.conditions]}
        if isinstance(condition, Not):
            return {"$nor": [self.build_filter(condition.condition)]}
        if not isinstance(condition, Predicate):
            raise UnsupportedFilterError(f"Unsupported condition node: {type(condition).__name__}")

        attr, op = condition.attribute, condition.operator
        if op is Operator.EQ:
            return {attr: self._native(attr, condition.value)}
        if op in _COMPARISON:
            return {attr: {_COMPARISON[op]: self._native(attr, condition.value)}}
        if op in (Operator.IN, Operator.NOT_IN):
            values = [self._native(attr, v) for v in condition.value]
            return {attr: {"$in" if op is Operator.IN else "$nin": values}}
        if op is Operator.LIKE:
            return {attr: {"$regex": f"^{like_to_regex_source(condition.native_value)}$", "$options": "s"}}
        if op is Operator.IS_NULL:
            return {attr: None}
        if op is Operator.IS_NOT_NULL:
            return {attr: {"$ne": None}}
        raise UnsupportedFilterError(f"Operator {op.value} is not supported by MongoDB")

    @staticmethod
    def _sort(order_by: Sequence[SortKey]) -> list[tuple[str, int]]:
        sort = [
            (key.attribute, pymongo.DESCENDING if key.descending else pymongo.ASCENDING)
            for key in order_by
        ]
        if all(key.attribute != "_id" for key in order_by):
            sort.append(("_id", pymongo.ASCENDING))
        return sort

    def _rows(self, documents: Sequence[Mapping[str, Any]]) -> tuple[tuple[Attribute, ...], tuple[Row, ...]]:
        pairs = [(k, bson_type_name(v)) for doc in documents for k, v in doc.items()]
        unit = StorageUnit.from_pairs("result", pairs)
        rows = tuple(Row.from_mapping(doc, ENCODERS) for doc in documents)
        return unit.attributes, rows

    # ── Read operations ──────────────────────────────────────────────────

    def check_connection(self, credential: Credential, *, cancel: CancellationToken | None = None) -> bool:
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, EngineConnectionError, "MongoDB ping failed"):
                client.admin.command("ping")
        return True

    def list_databases(self, credential: Credential, *, cancel: CancellationToken | None = None) -> list[str]:
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, QueryError, "Could not list databases"):
                return sorted(client.list_database_names())

    def list_storage_units(
        self, credential: Credential, *, cancel: CancellationToken | None = None
    ) -> list[StorageUnit]:
        token = self._token(cancel)
        units: list[StorageUnit] = []
        with self._session(credential, token) as client:
            db = self._database(client, credential)
            with self._guard(token, QueryError, "Could not list collections"):
                for info in sorted(db.list_collections(), key=lambda c: c["name"]):
                    name = info["name"]
                    if name.startswith("system."):
                        continue
                    token.raise_if_cancelled("list_storage_units")
                    kind = "view" if info.get("type") == "view" else "collection"
                    coll = db[name]
                    sample = list(coll.find({}, limit=self.settings.schema_sample_size))
                    pairs = [(k, bson_type_name(v)) for doc in sample for k, v in doc.items()]
                    count = (
                        coll.estimated_document_count()
                        if self.settings.count_rows and kind == "collection" else None
                    )
                    units.append(StorageUnit.from_pairs(name, pairs, row_count=count, kind=kind))
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
        query = self.build_filter(condition)
        with self._session(credential, token) as client:
            coll = self._database(client, credential)[unit]
            with self._guard(token, QueryError, f"Could not read {unit}"):
                cursor = coll.find(query).sort(self._sort(order_by)).skip(offset).limit(limit)
                documents = list(cursor)
                total = coll.count_documents(query) if self.settings.count_rows else None
        columns, rows = self._rows(documents)
        return QueryResult(columns=columns, rows=rows, total_count=total, offset=offset, limit=limit)

    def raw_execute(
        self, credential: Credential, text: str, *, cancel: CancellationToken | None = None
    ) -> QueryResult | MutationResult:
        """Run a database command given as Extended JSON, e.g.
        ``{"find": "users", "filter": {"age": {"$gt": 30}}}``."""
        try:
            command = json_util.loads(text)
        except ValueError as e:
            raise QueryError("Command is not valid Extended JSON", cause=e) from e
        if not isinstance(command, dict) or not command:
            raise QueryError("Command must be a non-empty JSON object")

        token = self._token(cancel)
        with self._session(credential, token) as client:
            db = self._database(client, credential)
            with self._guard(token, QueryError, "Command failed"):
                response = db.command(command)

        if next(iter(command)) in _WRITE_COMMANDS:
            return MutationResult(int(response.get("n", 0)))
        cursor = response.get("cursor")
        if isinstance(cursor, Mapping):
            documents = cursor.get("firstBatch", cursor.get("nextBatch", []))
        else:
            documents = [response]
        columns, rows = self._rows(documents)
        return QueryResult(columns=columns, rows=rows, total_count=len(rows))

    # ── Mutations ────────────────────────────────────────────────────────

    def _resolve_target(self, coll: Any, condition: Condition, query: dict[str, Any], unit: str) -> dict[str, Any] | None:
        """Filter that addresses exactly one document, or None when nothing matches.

        An ``_id`` equality addresses one document by itself; anything else
        is resolved to an ``_id`` first and must match at most one document.
        """
        pinned = equality_map(condition) or {}
        if "_id" in pinned:
            return query if coll.find_one(query, {"_id": 1}) is not None else None
        matches = list(coll.find(query, {"_id": 1}).limit(2))
        if not matches:
            return None
        if len(matches) > 1:
            raise AmbiguousTargetError(f"Condition matches more than one document in {unit}")
        return {"_id": matches[0]["_id"]}

    def add_row(
        self,
        credential: Credential,
        unit: str,
        row: Row | Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        document = self._native_values(row)
        if "_id" in document:
            document["_id"] = self._native("_id", document["_id"])
        token = self._token(cancel)
        with self._session(credential, token) as client:
            coll = self._database(client, credential)[unit]
            with self._guard(token, MutationError, f"Insert into {unit} failed"):
                coll.insert_one(document)
        return MutationResult(1)

    def update_row(
        self,
        credential: Credential,
        unit: str,
        condition: Condition,
        values: Row | Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        changes = self._native_values(values)
        query = self.build_filter(condition)
        token = self._token(cancel)
        with self._session(credential, token) as client:
            coll = self._database(client, credential)[unit]
            with self._guard(token, MutationError, f"Update of {unit} failed"):
                target = self._resolve_target(coll, condition, query, unit)
                if target is None:
                    raise NoRowsMatchedError(f"No documents in {unit} match the condition")
                result = coll.update_one(target, {"$set": changes})
                if result.matched_count == 0:
                    raise NoRowsMatchedError(f"Document in {unit} disappeared before the update")
        return MutationResult(result.matched_count)

    def delete_row(
        self,
        credential: Credential,
        unit: str,
        condition: Condition,
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        query = self.build_filter(condition)
        token = self._token(cancel)
        with self._session(credential, token) as client:
            coll = self._database(client, credential)[unit]
            with self._guard(token, MutationError, f"Delete from {unit} failed"):
                target = self._resolve_target(coll, condition, query, unit)
                if target is None:
                    return MutationResult(0)
                result = coll.delete_one(target)
        return MutationResult(result.deleted_count)


def _engine_message(error: mongo_errors.PyMongoError) -> str:
    details = getattr(error, "details", None)
    if isinstance(details, Mapping) and details.get("errmsg"):
        return str(details["errmsg"])
    return str(error)


def create_plugin(settings: OmnistoreSettings | None = None) -> Plugin:
    return Plugin(
        engine_type=EngineType.MONGODB,
        adapter=MongoDBAdapter(settings),
        capabilities=frozenset({
            Capability.RAW_EXECUTE,
            Capability.MUTATIONS,
            Capability.TRANSACTIONS,
            Capability.ORDERING,
            Capability.FILTERS,
        }),
        storage_unit_label="Collections",
    )


__all__ = ["MongoDBAdapter", "ENCODERS", "DECODERS", "bson_type_name", "create_plugin"]
