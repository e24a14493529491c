"""Redis adapter.

Manifesto:
    A key-value store has no tables. This adapter presents the keyspace as
    synthetic storage units: ``*`` for every key, plus one ``prefix:*``
    unit per namespace found in a bounded SCAN. Each key is a row with the
    attributes ``key``, ``type`` and ``value``.

Features:
    - SCAN-based paging: ``offset`` matching keys are skipped and ``limit``
      collected, at most one pass over the keyspace per call; pages do not
      overlap while the keyspace is unchanged
    - Conditions on ``key`` and ``type`` only (``EQ``, ``NE``, ``IN``,
      ``NOT_IN``, ``LIKE``); a key ``LIKE`` is pushed down as the SCAN
      MATCH glob, a key ``EQ`` becomes a direct lookup
    - Aggregate values (list, hash, set, zset) are read up to
      ``kv_value_limit`` members; longer values come back read-only with a
      ``truncated`` warning
    - Writes replace a key's value atomically (MULTI/EXEC under WATCH),
      preserving its type and TTL

Guardrails:
    ❌ DON'T: Use KEYS; it blocks the server
    ✅ DO: SCAN with a COUNT hint and stop once the page is full

Tags:
    omnistore, redis, key-value, adapter

Doc-Types:
    api-reference
"""

from __future__ import annotations

import fnmatch
import shlex
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, ClassVar

import redis
from redis import exceptions as redis_errors

from omnistore.core.conditions import Condition, Operator, SortKey, equality_map, like_to_glob
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
    ResultWarning,
    Row,
    StorageUnit,
    WarningKind,
)
from omnistore.core.settings import OmnistoreSettings
from omnistore.core.values import Value, ValueKind, normalize
from omnistore.execution.cancellation import CancellationToken
from omnistore.execution.timeout import get_remaining_deadline

from .base import Adapter
from .plugin import Capability, Plugin

logger = get_logger(__name__)

ALL_KEYS = "*"
KEY_ATTRIBUTES = (Attribute("key", "string"), Attribute("type", "string"), Attribute("value", "string"))
FILTER_ATTRIBUTES = frozenset({"key", "type"})
FILTER_OPERATORS = frozenset({Operator.EQ, Operator.NE, Operator.IN, Operator.NOT_IN, Operator.LIKE})

UNORDERED_WARNING = ResultWarning(WarningKind.UNORDERED, "Keys are returned in SCAN order; ordering was ignored")


def _text(raw: bytes | str) -> str:
    return raw.decode("utf-8", errors="backslashreplace") if isinstance(raw, bytes) else str(raw)


def _member(raw: bytes | str) -> Value:
    """A string member: text when it decodes as UTF-8, binary otherwise."""
    if isinstance(raw, bytes):
        try:
            return normalize(raw.decode("utf-8"))
        except UnicodeDecodeError:
            return Value(ValueKind.BINARY, raw, native_type="bytes")
    return normalize(raw)


class RedisAdapter(Adapter):
    engine_types: ClassVar[tuple[EngineType, ...]] = (EngineType.REDIS,)

    # ── Client lifecycle ─────────────────────────────────────────────────

    def _db_index(self, credential: Credential) -> int:
        try:
            return int(credential.database or 0)
        except ValueError:
            raise ConfigError(f"Redis database must be a number, got {credential.database!r}") from None

    def _client(self, credential: Credential) -> redis.Redis:
        remaining = get_remaining_deadline(self.settings.query_timeout) or self.settings.query_timeout
        return redis.Redis(
            host=credential.host or "localhost",
            port=credential.port or 6379,
            db=self._db_index(credential),
            username=credential.username or None,
            password=credential.password or None,
            socket_connect_timeout=min(self.settings.connect_timeout, remaining),
            socket_timeout=remaining,
            ssl=(credential.option("ssl", "false") or "").lower() in ("1", "true", "yes"),
            decode_responses=False,
        )

    @contextmanager
    def _session(self, credential: Credential, token: CancellationToken) -> Iterator[redis.Redis]:
        token.raise_if_cancelled("connect")
        client = self._client(credential)
        try:
            with self._checkout(token, client.close):
                yield client
        finally:
            client.close()

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
        except redis_errors.RedisError as e:
            if token.is_cancelled():
                if token.timed_out:
                    raise ConnectionTimeoutError(f"{message}: deadline exceeded", cause=e) from e
                raise OperationCancelledError(f"{message}: cancelled", cause=e) from e
            if isinstance(e, redis_errors.TimeoutError):
                raise ConnectionTimeoutError(message, cause=e) from e
            if isinstance(e, (redis_errors.ConnectionError, redis_errors.AuthenticationError)):
                raise EngineConnectionError(message, cause=e) from e
            raise error_cls(message, cause=e) from e

    # ── Reading values ───────────────────────────────────────────────────

    def _read_value(self, client: redis.Redis, key: bytes, kind: str) -> tuple[Value, bool]:
        """Return the key's value and whether it was truncated."""
        limit = self.settings.kv_value_limit
        if kind == "string":
            raw = client.get(key)
            return (Value.null() if raw is None else _member(raw)), False
        if kind == "list":
            size = client.llen(key)
            items = [_member(i) for i in client.lrange(key, 0, limit - 1)]
            return Value(ValueKind.DOCUMENT, items, editable=size <= limit, native_type="list"), size > limit
        if kind == "hash":
            size = client.hlen(key)
            if size <= limit:
                pairs = client.hgetall(key).items()
            else:
                _, page = client.hscan(key, 0, count=limit)
                pairs = list(page.items())[:limit]
            data = {_text(f): _member(v) for f, v in sorted(pairs)}
            return Value(ValueKind.DOCUMENT, data, editable=size <= limit, native_type="hash"), size > limit
        if kind == "set":
            size = client.scard(key)
            if size <= limit:
                members = client.smembers(key)
            else:
                _, members = client.sscan(key, 0, count=limit)
            items = [_member(m) for m in sorted(members)[:limit]]
            return Value(ValueKind.DOCUMENT, items, editable=size <= limit, native_type="set"), size > limit
        if kind == "zset":
            size = client.zcard(key)
            items = [
                Value(
                    ValueKind.DOCUMENT,
                    {"member": _member(m), "score": normalize(float(s))},
                    native_type="dict",
                )
                for m, s in client.zrange(key, 0, limit - 1, withscores=True)
            ]
            return Value(ValueKind.DOCUMENT, items, editable=size <= limit, native_type="zset"), size > limit
        # streams and module types have no flat form
        return Value.raw(f"<{kind}>", kind), False

    def _row(self, client: redis.Redis, key: bytes, kind: str) -> tuple[Row, bool]:
        value, truncated = self._read_value(client, key, kind)
        return Row((("key", _member(key)), ("type", normalize(kind)), ("value", value))), truncated

    @staticmethod
    def _key_type(client: redis.Redis, key: bytes) -> str:
        return _text(client.type(key))

    # ── Condition handling ───────────────────────────────────────────────

    @staticmethod
    def _check_condition(condition: Condition | None) -> None:
        if condition is None:
            return
        unknown = condition.attributes() - FILTER_ATTRIBUTES
        if unknown:
            raise UnsupportedFilterError(
                f"Redis can only filter on key and type, not: {', '.join(sorted(unknown))}"
            )
        unsupported = condition.operators() - FILTER_OPERATORS
        if unsupported:
            names = ", ".join(sorted(op.value for op in unsupported))
            raise UnsupportedFilterError(f"Redis cannot filter with: {names}")

    @staticmethod
    def _scan_pattern(unit: str, condition: Condition | None) -> str:
        """SCAN MATCH glob: the unit's, or a key LIKE when the whole condition is one."""
        if condition is not None:
            preds = list(condition.predicates())
            if (
                unit == ALL_KEYS
                and len(preds) == 1
                and preds[0] is condition
                and preds[0].attribute == "key"
                and preds[0].operator is Operator.LIKE
            ):
                return like_to_glob(preds[0].native_value)
        return unit

    @staticmethod
    def _in_unit(unit: str, key: str) -> bool:
        return unit == ALL_KEYS or fnmatch.fnmatchcase(key, unit)

    def _candidate_keys(self, client: redis.Redis, unit: str, condition: Condition | None) -> Iterator[bytes]:
        """Keys to test against the condition, without duplicates."""
        pinned = equality_map(condition) or {}
        if "key" in pinned:
            key = str(pinned["key"])
            if self._in_unit(unit, key) and client.exists(key):
                yield key.encode("utf-8")
            return

        pattern = self._scan_pattern(unit, condition)
        seen: set[bytes] = set()
        cursor = 0
        while True:
            cursor, keys = client.scan(cursor, match=pattern, count=self.settings.key_scan_batch)
            for key in keys:
                if key not in seen:
                    seen.add(key)
                    yield key
            if int(cursor) == 0:
                return

    # ── Read operations ──────────────────────────────────────────────────

    def check_connection(self, credential: Credential, *, cancel: CancellationToken | None = None) -> bool:
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, EngineConnectionError, "Redis ping failed"):
                return bool(client.ping())

    def list_databases(self, credential: Credential, *, cancel: CancellationToken | None = None) -> list[str]:
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, QueryError, "Could not list databases"):
                try:
                    config = client.config_get("databases")
                except redis_errors.ResponseError:
                    # CONFIG is often disabled on managed servers
                    return [str(self._db_index(credential))]
        count = int(config.get("databases") or config.get(b"databases") or 1)
        return [str(i) for i in range(count)]

    def list_storage_units(
        self, credential: Credential, *, cancel: CancellationToken | None = None
    ) -> list[StorageUnit]:
        token = self._token(cancel)
        namespaces: dict[str, int] = {}
        scanned = 0
        with self._session(credential, token) as client:
            with self._guard(token, QueryError, "Could not scan keys"):
                total = client.dbsize()
                cursor = 0
                while scanned < self.settings.key_scan_limit:
                    token.raise_if_cancelled("list_storage_units")
                    cursor, keys = client.scan(cursor, count=self.settings.key_scan_batch)
                    for key in keys:
                        scanned += 1
                        text = _text(key)
                        if ":" in text:
                            unit = text.split(":", 1)[0] + ":*"
                            namespaces[unit] = namespaces.get(unit, 0) + 1
                    if int(cursor) == 0:
                        break
        if scanned >= self.settings.key_scan_limit:
            logger.info("namespace_scan_truncated", scanned=scanned, total=total)
        units = [StorageUnit(ALL_KEYS, KEY_ATTRIBUTES, total, kind="keyspace")]
        units.extend(
            StorageUnit(name, KEY_ATTRIBUTES, count, kind="namespace")
            for name, count in sorted(namespaces.items())
        )
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
        self._check_condition(condition)
        token = self._token(cancel)
        warnings: list[ResultWarning] = [UNORDERED_WARNING] if order_by else []
        rows: list[Row] = []
        truncated_keys: list[str] = []
        skipped = 0
        filters_type = condition is not None and "type" in condition.attributes()
        with self._session(credential, token) as client:
            with self._guard(token, QueryError, f"Could not read {unit}"):
                for key in self._candidate_keys(client, unit, condition):
                    token.raise_if_cancelled("browse_rows")
                    # skipped keys only need TYPE when the condition tests it
                    kind = self._key_type(client, key) if filters_type or skipped >= offset else None
                    if kind == "none":
                        continue  # expired or deleted since SCAN returned it
                    if condition is not None and not condition.evaluate({"key": _text(key), "type": kind}):
                        continue
                    if skipped < offset:
                        skipped += 1
                        continue
                    row, truncated = self._row(client, key, kind)
                    rows.append(row)
                    if truncated:
                        truncated_keys.append(_text(key))
                    if len(rows) >= limit:
                        break
                total = client.dbsize() if unit == ALL_KEYS and condition is None else None
        if truncated_keys:
            warnings.append(ResultWarning(
                WarningKind.TRUNCATED,
                f"Values truncated to {self.settings.kv_value_limit} members: {', '.join(truncated_keys)}",
            ))
        return QueryResult(
            columns=KEY_ATTRIBUTES,
            rows=tuple(rows),
            total_count=total,
            offset=offset,
            limit=limit,
            ordered=False,
            warnings=tuple(warnings),
        )

    def raw_execute(
        self, credential: Credential, text: str, *, cancel: CancellationToken | None = None
    ) -> QueryResult | MutationResult:
        """Run one command in redis-cli syntax, e.g. ``HGETALL user:1``."""
        try:
            parts = shlex.split(text)
        except ValueError as e:
            raise QueryError("Could not parse command", cause=e) from e
        if not parts:
            raise QueryError("Empty command")
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, QueryError, f"{parts[0].upper()} failed"):
                response = client.execute_command(*parts)
        return _response_result(response)

    # ── Mutations ────────────────────────────────────────────────────────

    def _pinned_key(self, unit: str, condition: Condition) -> str:
        self._check_condition(condition)
        pinned = equality_map(condition) or {}
        if "key" not in pinned:
            raise AmbiguousTargetError("Redis writes must address a single key with key = ...")
        key = str(pinned["key"])
        if not self._in_unit(unit, key):
            raise NoRowsMatchedError(f"Key {key!r} is outside {unit}")
        return key

    @staticmethod
    def _write(pipe: Any, key: str, kind: str, value: Any) -> None:
        """Queue commands that store ``value`` under ``key`` as ``kind``."""
        if kind == "string":
            if isinstance(value, (dict, list, tuple)):
                raise MutationError("A string key needs a scalar value")
            pipe.set(key, value)
        elif kind == "list":
            pipe.rpush(key, *_members(value, kind))
        elif kind == "set":
            pipe.sadd(key, *_members(value, kind))
        elif kind == "hash":
            if not isinstance(value, Mapping) or not value:
                raise MutationError("A hash key needs a non-empty mapping")
            pipe.hset(key, mapping=dict(value))
        elif kind == "zset":
            pipe.zadd(key, _scores(value))
        else:
            raise MutationError(f"Cannot write Redis values of type {kind}")

    def add_row(
        self,
        credential: Credential,
        unit: str,
        row: Row | Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        values = self._native_values(row)
        if "key" not in values or "value" not in values:
            raise MutationError("Redis rows need a key and a value")
        key = str(values["key"])
        if not self._in_unit(unit, key):
            raise MutationError(f"Key {key!r} does not belong to {unit}")
        value = values["value"]
        kind = str(values.get("type") or _infer_type(value))

        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, MutationError, f"Could not add {key}"):

                def create(pipe: Any) -> None:
                    if pipe.exists(key):
                        raise MutationError(f"Key {key!r} already exists")
                    pipe.multi()
                    self._write(pipe, key, kind, value)

                client.transaction(create, key)
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
        key = self._pinned_key(unit, condition)
        changes = self._native_values(values)
        extra = set(changes) - {"value", "key", "type"}
        if extra or "value" not in changes:
            raise MutationError("Only the value of a Redis key can be updated")
        if str(changes.get("key", key)) != key:
            raise MutationError("Renaming keys is not supported; add the new key and delete the old one")

        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, MutationError, f"Could not update {key}"):

                def replace(pipe: Any) -> None:
                    kind = _text(pipe.type(key))
                    if kind == "none":
                        raise NoRowsMatchedError(f"Key {key!r} does not exist")
                    if changes.get("type", kind) != kind:
                        raise MutationError(f"Cannot change the type of {key!r} from {kind}")
                    ttl = pipe.pttl(key)
                    pipe.multi()
                    pipe.delete(key)
                    self._write(pipe, key, kind, changes["value"])
                    if ttl and ttl > 0:
                        pipe.pexpire(key, ttl)

                client.transaction(replace, key)
        return MutationResult(1)

    def delete_row(
        self,
        credential: Credential,
        unit: str,
        condition: Condition,
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        try:
            key = self._pinned_key(unit, condition)
        except NoRowsMatchedError:
            return MutationResult(0)
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, MutationError, f"Could not delete {key}"):
                deleted = client.delete(key)
        return MutationResult(int(deleted))


# ── Helpers ──────────────────────────────────────────────────────────────


def _infer_type(value: Any) -> str:
    if isinstance(value, Mapping):
        return "hash"
    if isinstance(value, (list, tuple)):
        return "list"
    return "string"


def _members(value: Any, kind: str) -> list[Any]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
        raise MutationError(f"A {kind} key needs a list of members")
    if not value:
        raise MutationError(f"A {kind} key needs at least one member")
    return list(value)


def _scores(value: Any) -> dict[Any, float]:
    """Sorted-set members from ``{member: score}`` or ``[{member, score}]``."""
    if isinstance(value, Mapping):
        pairs = value.items()
    elif isinstance(value, (list, tuple)):
        try:
            pairs = [(item["member"], item["score"]) for item in value]
        except (KeyError, TypeError) as e:
            raise MutationError("Sorted-set members need member and score fields", cause=e) from e
    else:
        raise MutationError("A zset key needs members with scores")
    if not pairs:
        raise MutationError("A zset key needs at least one member")
    return {member: float(score) for member, score in pairs}


def _response_result(response: Any) -> QueryResult:
    if isinstance(response, Mapping):
        rows = tuple(
            Row((("field", _member(k)), ("value", _reply(v)))) for k, v in response.items()
        )
        columns = (Attribute("field", "string"), Attribute("value", "string"))
    elif isinstance(response, (list, tuple, set)):
        rows = tuple(Row((("value", _reply(item)),)) for item in response)
        columns = (Attribute("value", "string"),)
    else:
        rows = (Row((("result", _reply(response)),)),)
        columns = (Attribute("result", "string"),)
    return QueryResult(columns=columns, rows=rows, total_count=len(rows))


def _reply(item: Any) -> Value:
    if isinstance(item, (bytes, str)):
        return _member(item)
    if isinstance(item, (list, tuple)):
        return Value(ValueKind.DOCUMENT, [_reply(i) for i in item], editable=False, native_type="list")
    return normalize(item)


def create_plugin(settings: OmnistoreSettings | None = None) -> Plugin:
    return Plugin(
        engine_type=EngineType.REDIS,
        adapter=RedisAdapter(settings),
        capabilities=frozenset({
            Capability.RAW_EXECUTE,
            Capability.MUTATIONS,
            Capability.TRANSACTIONS,
        }),
        storage_unit_label="Keys",
    )


__all__ = ["RedisAdapter", "ALL_KEYS", "KEY_ATTRIBUTES", "create_plugin"]
