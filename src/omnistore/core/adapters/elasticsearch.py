"""Elasticsearch adapter.

Indices are storage units; mapping properties (flattened to dotted names)
are their attributes. Every row starts with the synthetic attributes
``_id`` and ``_score``, so relevance is visible without changing the row
order the caller asked for.

Paging uses ``from``/``size`` inside ``index.max_result_window``; deeper
pages switch to a point-in-time with ``search_after``. Writes go through
the document API and are only visible to search after the next refresh,
so every mutation result carries an eventual-consistency warning.

Examples:
    >>> cred = Credential("elasticsearch", host="localhost", port=9200)
    >>> ElasticsearchAdapter().browse_rows(cred, "articles", condition=match("body", "python"))
    >>> ElasticsearchAdapter().raw_execute(cred, 'GET /articles/_search\\n{"size": 1}')
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, ClassVar

from elasticsearch import (
    ApiError,
    AuthenticationException,
    AuthorizationException,
    ConflictError,
    ConnectionError as ESConnectionError,
    ConnectionTimeout,
    Elasticsearch,
    NotFoundError,
    TransportError,
)

from omnistore.core.conditions import And, Condition, Not, Operator, Or, Predicate, SortKey, equality_map, like_to_glob
from omnistore.core.errors import (
    AmbiguousTargetError,
    ConnectionTimeoutError,
    EngineConnectionError,
    MutationError,
    NoRowsMatchedError,
    OmnistoreError,
    OperationCancelledError,
    QueryError,
    UnknownStorageUnitError,
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
from omnistore.core.values import normalize
from omnistore.execution.cancellation import CancellationToken
from omnistore.execution.timeout import get_remaining_deadline

from .base import Adapter
from .plugin import Capability, Plugin

logger = get_logger(__name__)

ID = "_id"
SCORE = "_score"
PIT_KEEP_ALIVE = "1m"
# Pins browse pages to the same shard copies; `_doc` order differs between replicas.
PAGING_PREFERENCE = "omnistore-browse"
METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "HEAD"})

REFRESH_WARNING = ResultWarning(
    WarningKind.EVENTUAL_CONSISTENCY,
    "Elasticsearch makes writes searchable on the next index refresh",
)

_RANGE = {Operator.LT: "lt", Operator.LTE: "lte", Operator.GT: "gt", Operator.GTE: "gte"}


def _body(response: Any) -> Any:
    """Plain body of a client response."""
    return getattr(response, "body", response)


def flatten_properties(properties: Mapping[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """``[(dotted_name, type)]`` from a mapping's ``properties`` tree."""
    fields: list[tuple[str, str]] = []
    for name, spec in properties.items():
        path = f"{prefix}{name}"
        if "properties" in spec:
            if spec.get("type") == "nested":
                fields.append((path, "nested"))
            fields.extend(flatten_properties(spec["properties"], f"{path}."))
        else:
            fields.append((path, spec.get("type", "object")))
    return fields


def build_query(condition: Condition | None) -> dict[str, Any]:
    """Translate a Condition into Query DSL."""
    if condition is None:
        return {"match_all": {}}
    if isinstance(condition, And):
        return {"bool": {"must": [build_query(c) for c in condition.conditions]}}
    if isinstance(condition, Or):
        return {"bool": {"should": [build_query(c) for c in condition.conditions], "minimum_should_match": 1}}
    if isinstance(condition, Not):
        return {"bool": {"must_not": [build_query(condition.condition)]}}
    if not isinstance(condition, Predicate):
        raise UnsupportedFilterError(f"Unsupported condition node: {type(condition).__name__}")

    attr, op, value = condition.attribute, condition.operator, condition.native_value
    if op is Operator.EQ:
        if value is None:
            return {"bool": {"must_not": [{"exists": {"field": attr}}]}}
        return {"ids": {"values": [str(value)]}} if attr == ID else {"term": {attr: value}}
    if op is Operator.NE:
        return {"bool": {"must_not": [build_query(Predicate(attr, Operator.EQ, condition.value))]}}
    if op in _RANGE:
        return {"range": {attr: {_RANGE[op]: value}}}
    if op is Operator.IN:
        return {"ids": {"values": [str(v) for v in value]}} if attr == ID else {"terms": {attr: list(value)}}
    if op is Operator.NOT_IN:
        return {"bool": {"must_not": [build_query(Predicate(attr, Operator.IN, condition.value))]}}
    if op is Operator.LIKE:
        return {"wildcard": {attr: {"value": like_to_glob(value)}}}
    if op is Operator.IS_NULL:
        return {"bool": {"must_not": [{"exists": {"field": attr}}]}}
    if op is Operator.IS_NOT_NULL:
        return {"exists": {"field": attr}}
    if op is Operator.MATCH:
        return {"match": {attr: value}}
    raise UnsupportedFilterError(f"Operator {op.value} is not supported by Elasticsearch")


def _sort(order_by: Sequence[SortKey]) -> list[Any]:
    return [{key.attribute: {"order": "desc" if key.descending else "asc"}} for key in order_by]


def _hit_row(hit: Mapping[str, Any]) -> Row:
    cells = [(ID, normalize(hit.get(ID))), (SCORE, normalize(hit.get(SCORE)))]
    cells.extend((k, normalize(v)) for k, v in (hit.get("_source") or {}).items())
    return Row(tuple(cells))


def _columns(rows: Sequence[Row], mapping_fields: Sequence[tuple[str, str]] = ()) -> tuple[Attribute, ...]:
    types = dict(mapping_fields)
    pairs = [(ID, "keyword"), (SCORE, "float")]
    for row in rows:
        for name, value in row:
            pairs.append((name, types.get(name) or value.kind.value))
    return StorageUnit.from_pairs("result", pairs).attributes


class ElasticsearchAdapter(Adapter):
    engine_types: ClassVar[tuple[EngineType, ...]] = (EngineType.ELASTICSEARCH,)

    # ── Client lifecycle ─────────────────────────────────────────────────

    def _client(self, credential: Credential) -> Elasticsearch:
        remaining = get_remaining_deadline(self.settings.query_timeout) or self.settings.query_timeout
        scheme = credential.option("scheme", "http")
        options: dict[str, Any] = {"request_timeout": remaining}
        if credential.username:
            options["basic_auth"] = (credential.username, credential.password)
        if credential.option("api_key"):
            options["api_key"] = credential.option("api_key")
        if (credential.option("verify_certs") or "").lower() in ("0", "false", "no"):
            options["verify_certs"] = False
        return Elasticsearch(
            f"{scheme}://{credential.host or 'localhost'}:{credential.port or 9200}",
            **options,
        )

    @contextmanager
    def _session(self, credential: Credential, token: CancellationToken) -> Iterator[Elasticsearch]:
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
        except (ApiError, TransportError) as e:
            if token.is_cancelled():
                if token.timed_out:
                    raise ConnectionTimeoutError(f"{message}: deadline exceeded", cause=e) from e
                raise OperationCancelledError(f"{message}: cancelled", cause=e) from e
            if isinstance(e, ConnectionTimeout):
                raise ConnectionTimeoutError(message, cause=e) from e
            if isinstance(e, (ESConnectionError, AuthenticationException, AuthorizationException)):
                raise EngineConnectionError(message, cause=e, engine_message=_engine_message(e)) from e
            raise error_cls(message, cause=e, engine_message=_engine_message(e)) from e

    def _mapping_fields(self, client: Elasticsearch, unit: str) -> list[tuple[str, str]]:
        try:
            response = _body(client.indices.get_mapping(index=unit))
        except NotFoundError:
            raise UnknownStorageUnitError(unit) from None
        fields: list[tuple[str, str]] = []
        for index in sorted(response):
            fields.extend(flatten_properties(response[index].get("mappings", {}).get("properties", {})))
        return fields

    # ── Read operations ──────────────────────────────────────────────────

    def check_connection(self, credential: Credential, *, cancel: CancellationToken | None = None) -> bool:
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, EngineConnectionError, "Elasticsearch ping failed"):
                client.info()
        return True

    def list_databases(self, credential: Credential, *, cancel: CancellationToken | None = None) -> list[str]:
        # a cluster has no database level; report one so callers can select it
        self.check_connection(credential, cancel=cancel)
        return ["default"]

    def list_storage_units(
        self, credential: Credential, *, cancel: CancellationToken | None = None
    ) -> list[StorageUnit]:
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, QueryError, "Could not list indices"):
                mappings = _body(client.indices.get_mapping(index="*"))
                counts: dict[str, int | None] = {}
                if self.settings.count_rows:
                    for entry in _body(client.cat.indices(index="*", format="json", h="index,docs.count")):
                        raw = entry.get("docs.count")
                        counts[entry["index"]] = int(raw) if raw not in (None, "") else None
        units = []
        for name in sorted(mappings):
            if name.startswith("."):
                continue
            properties = mappings[name].get("mappings", {}).get("properties", {})
            units.append(StorageUnit.from_pairs(
                name, flatten_properties(properties), row_count=counts.get(name), kind="index"
            ))
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
        query = build_query(condition)
        sort = _sort(order_by)
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, QueryError, f"Could not search {unit}"):
                fields = self._mapping_fields(client, unit)
                if offset + limit <= self.settings.search_max_result_window:
                    response = _body(client.search(
                        index=unit, query=query, sort=sort + ["_doc"], from_=offset, size=limit,
                        preference=PAGING_PREFERENCE, track_total_hits=True, track_scores=True,
                    ))
                    hits = response["hits"]["hits"]
                    total = response["hits"]["total"]["value"]
                else:
                    hits, total = self._deep_page(client, token, unit, query, sort, offset, limit)
        rows = tuple(_hit_row(hit) for hit in hits)
        return QueryResult(
            columns=_columns(rows, fields),
            rows=rows,
            total_count=total,
            offset=offset,
            limit=limit,
        )

    def _deep_page(
        self,
        client: Elasticsearch,
        token: CancellationToken,
        unit: str,
        query: dict[str, Any],
        sort: list[Any],
        offset: int,
        limit: int,
    ) -> tuple[list[dict[str, Any]], int]:
        """Walk a point-in-time with ``search_after`` up to ``offset + limit``."""
        pit = _body(client.open_point_in_time(index=unit, keep_alive=PIT_KEEP_ALIVE))["id"]
        logger.debug("deep_page_started", index=unit, offset=offset)
        batch = self.settings.search_max_result_window
        skipped = 0
        hits: list[dict[str, Any]] = []
        total = 0
        search_after = None
        try:
            while len(hits) < limit:
                token.raise_if_cancelled("browse_rows")
                kwargs: dict[str, Any] = {
                    "pit": {"id": pit, "keep_alive": PIT_KEEP_ALIVE},
                    "query": query,
                    "sort": sort + [{"_shard_doc": "asc"}],
                    "size": batch,
                    "track_total_hits": True,
                    "track_scores": True,
                }
                if search_after is not None:
                    kwargs["search_after"] = search_after
                response = _body(client.search(**kwargs))
                pit = response.get("pit_id", pit)
                total = response["hits"]["total"]["value"]
                page = response["hits"]["hits"]
                if not page:
                    break
                for hit in page:
                    if skipped < offset:
                        skipped += 1
                    elif len(hits) < limit:
                        hits.append(hit)
                search_after = page[-1]["sort"]
        finally:
            client.close_point_in_time(id=pit)
        return hits, total

    def raw_execute(
        self, credential: Credential, text: str, *, cancel: CancellationToken | None = None
    ) -> QueryResult | MutationResult:
        """Run a request in console form: ``METHOD /path`` then an optional JSON body."""
        method, path, body = parse_request(text)
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, QueryError, f"{method} {path} failed"):
                headers = {"accept": "application/json"}
                if body is not None:
                    headers["content-type"] = "application/json"
                response = _body(client.perform_request(method, path, headers=headers, body=body))
        return _response_result(method, response)

    # ── Mutations ────────────────────────────────────────────────────────

    def _resolve_id(self, client: Elasticsearch, unit: str, condition: Condition) -> str | None:
        """Document id addressed by ``condition``; None when nothing matches.

        Search results lag writes until the next refresh, so a condition
        other than ``_id = ...`` may miss a document indexed moments ago.
        """
        pinned = equality_map(condition) or {}
        if set(pinned) == {ID}:
            return str(pinned[ID])
        response = _body(client.search(index=unit, query=build_query(condition), size=2, source=False))
        hits = response["hits"]["hits"]
        if len(hits) > 1:
            raise AmbiguousTargetError(f"Condition matches more than one document in {unit}")
        return hits[0][ID] if hits else None

    def add_row(
        self,
        credential: Credential,
        unit: str,
        row: Row | Mapping[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        document = self._native_values(row)
        doc_id = document.pop(ID, None)
        document.pop(SCORE, None)
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, MutationError, f"Insert into {unit} failed"):
                try:
                    if doc_id is None:
                        client.index(index=unit, document=document)
                    else:
                        client.index(index=unit, id=str(doc_id), document=document, op_type="create")
                except ConflictError as e:
                    raise MutationError(f"Document {doc_id!r} already exists in {unit}", cause=e) from e
        return MutationResult(1, (REFRESH_WARNING,))

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
        changes.pop(SCORE, None)
        new_id = changes.pop(ID, None)
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, MutationError, f"Update of {unit} failed"):
                doc_id = self._resolve_id(client, unit, condition)
                if doc_id is None:
                    raise NoRowsMatchedError(f"No documents in {unit} match the condition")
                if new_id is not None and str(new_id) != doc_id:
                    raise MutationError("Document ids cannot be changed")
                try:
                    client.update(index=unit, id=doc_id, doc=changes)
                except NotFoundError:
                    raise NoRowsMatchedError(f"Document {doc_id!r} not found in {unit}") from None
        return MutationResult(1, (REFRESH_WARNING,))

    def delete_row(
        self,
        credential: Credential,
        unit: str,
        condition: Condition,
        *,
        cancel: CancellationToken | None = None,
    ) -> MutationResult:
        token = self._token(cancel)
        with self._session(credential, token) as client:
            with self._guard(token, MutationError, f"Delete from {unit} failed"):
                doc_id = self._resolve_id(client, unit, condition)
                if doc_id is None:
                    return MutationResult(0, (REFRESH_WARNING,))
                try:
                    client.delete(index=unit, id=doc_id)
                except NotFoundError:
                    return MutationResult(0, (REFRESH_WARNING,))
        return MutationResult(1, (REFRESH_WARNING,))


# ── Raw requests ─────────────────────────────────────────────────────────


def parse_request(text: str) -> tuple[str, str, Any]:
    """Split ``METHOD /path\\n{json}`` into its parts."""
    stripped = text.strip()
    if not stripped:
        raise QueryError("Empty request")
    first, _, rest = stripped.partition("\n")
    parts = first.split(None, 1)
    if len(parts) != 2 or parts[0].upper() not in METHODS:
        raise QueryError("Request must start with METHOD /path, e.g. GET /index/_search")
    method, path = parts[0].upper(), parts[1].strip()
    if not path.startswith("/"):
        path = "/" + path
    body = None
    if rest.strip():
        try:
            body = json.loads(rest)
        except json.JSONDecodeError as e:
            raise QueryError("Request body is not valid JSON", cause=e) from e
    return method, path, body


def _response_result(method: str, response: Any) -> QueryResult | MutationResult:
    if isinstance(response, Mapping):
        if isinstance(response.get("hits"), Mapping):
            hits = response["hits"].get("hits", [])
            rows = tuple(_hit_row(hit) for hit in hits)
            total = response["hits"].get("total", {})
            return QueryResult(
                columns=_columns(rows),
                rows=rows,
                total_count=total.get("value", len(rows)) if isinstance(total, Mapping) else total,
            )
        if method != "GET":
            if response.get("result") in ("created", "updated", "deleted", "noop"):
                affected = 0 if response["result"] == "noop" else 1
                return MutationResult(affected, (REFRESH_WARNING,))
            for counter in ("deleted", "updated"):
                if isinstance(response.get(counter), int) and "took" in response:
                    return MutationResult(response[counter], (REFRESH_WARNING,))
        rows = (Row(tuple((str(k), normalize(v)) for k, v in response.items())),)
    elif isinstance(response, list):
        rows = tuple(
            Row(tuple((str(k), normalize(v)) for k, v in item.items())) if isinstance(item, Mapping)
            else Row((("value", normalize(item)),))
            for item in response
        )
    else:
        rows = (Row((("result", normalize(response)),)),)
    columns = StorageUnit.from_pairs(
        "result", [(name, value.kind.value) for row in rows for name, value in row]
    ).attributes
    return QueryResult(columns=columns, rows=rows, total_count=len(rows))


def _engine_message(error: Exception) -> str:
    body = getattr(error, "body", None)
    if isinstance(body, Mapping):
        detail = body.get("error")
        if isinstance(detail, Mapping) and detail.get("reason"):
            return str(detail["reason"])
        if isinstance(detail, str):
            return detail
    return getattr(error, "message", None) or str(error)


def create_plugin(settings: OmnistoreSettings | None = None) -> Plugin:
    return Plugin(
        engine_type=EngineType.ELASTICSEARCH,
        adapter=ElasticsearchAdapter(settings),
        capabilities=frozenset({
            Capability.RAW_EXECUTE,
            Capability.MUTATIONS,
            Capability.ORDERING,
            Capability.FILTERS,
            Capability.FULL_TEXT,
        }),
        storage_unit_label="Indices",
    )


__all__ = [
    "ElasticsearchAdapter",
    "build_query",
    "flatten_properties",
    "parse_request",
    "create_plugin",
]
