"""Tests for ``omnistore.core.adapters.elasticsearch`` -- Elasticsearch adapter."""

from __future__ import annotations

import dataclasses
import random
from unittest.mock import MagicMock

import pytest
from elasticsearch import BadRequestError, ConflictError, ConnectionTimeout, NotFoundError
from elasticsearch import ConnectionError as ESConnectionError

from omnistore.core.adapters.elasticsearch import (
    PAGING_PREFERENCE,
    REFRESH_WARNING,
    ElasticsearchAdapter,
    build_query,
    create_plugin,
    flatten_properties,
    parse_request,
)
from omnistore.core.adapters.plugin import Capability
from omnistore.core.adapters.registry import Engine
from omnistore.core.conditions import Operator, Predicate, SortKey, eq, gt, in_, is_null, like, match, ne
from omnistore.core.errors import (
    AmbiguousTargetError,
    ConnectionTimeoutError,
    EngineConnectionError,
    MutationError,
    NoRowsMatchedError,
    QueryError,
    UnknownStorageUnitError,
)
from omnistore.core.models import Credential, MutationResult, QueryResult, WarningKind
from omnistore.core.values import normalize


def api_error(cls, status: int, reason: str):
    return cls(reason, meta=MagicMock(status=status), body={"error": {"type": "x", "reason": reason}})


def hit(doc_id: str, source: dict, score: float | None = 1.0, sort=None) -> dict:
    result = {"_index": "articles", "_id": doc_id, "_score": score, "_source": source}
    if sort is not None:
        result["sort"] = sort
    return result


def search_response(hits: list[dict], total: int | None = None, **extra) -> dict:
    return {"hits": {"total": {"value": len(hits) if total is None else total}, "hits": hits}, **extra}


MAPPING = {
    "articles": {
        "mappings": {
            "properties": {
                "title": {"type": "text"},
                "views": {"type": "long"},
                "author": {"properties": {"name": {"type": "keyword"}}},
            }
        }
    }
}


class MemoryIndex:
    """Documents for ``client.index``/``client.search`` side effects.

    Sort ties come back in a different order on every search unless the
    sort ends in ``_doc``, which orders them by insertion.
    """

    def __init__(self):
        self.documents: dict[str, dict] = {}
        self.searches = 0

    def index(self, index, document, id=None, op_type=None):
        doc_id = id or f"auto-{len(self.documents)}"
        self.documents[doc_id] = dict(document)
        return {"_id": doc_id, "result": "created"}

    def search(self, index, query, sort, from_, size, **kwargs):
        if "ids" in query:
            wanted = query["ids"]["values"]
            found = [(i, d) for i, d in self.documents.items() if i in wanted]
        else:
            found = list(self.documents.items())
        self.searches += 1
        random.Random(self.searches).shuffle(found)
        if "_doc" in sort:
            order = list(self.documents)
            found.sort(key=lambda pair: order.index(pair[0]))
        for key in reversed([k for k in sort if isinstance(k, dict)]):
            [(field, spec)] = key.items()
            found.sort(key=lambda pair: pair[1][field], reverse=spec["order"] == "desc")
        page = [hit(i, d, score=None) for i, d in found[from_:from_ + size]]
        return search_response(page, total=len(found))


class FakeESAdapter(ElasticsearchAdapter):
    def __init__(self, settings, client):
        super().__init__(settings)
        self.client = client

    def _client(self, credential):
        return self.client


@pytest.fixture
def client() -> MagicMock:
    es = MagicMock(name="Elasticsearch")
    es.indices.get_mapping.return_value = MAPPING
    return es


@pytest.fixture
def adapter(settings, client) -> FakeESAdapter:
    return FakeESAdapter(settings, client)


@pytest.fixture
def cred() -> Credential:
    return Credential("elasticsearch", host="localhost", port=9200)


class TestBuildQuery:
    @pytest.mark.parametrize(
        "condition,expected",
        [
            (None, {"match_all": {}}),
            (eq("status", "open"), {"term": {"status": "open"}}),
            (eq("_id", 7), {"ids": {"values": ["7"]}}),
            (eq("email", None), {"bool": {"must_not": [{"exists": {"field": "email"}}]}}),
            (ne("status", "open"), {"bool": {"must_not": [{"term": {"status": "open"}}]}}),
            (gt("views", 10), {"range": {"views": {"gt": 10}}}),
            (in_("tag", ["a", "b"]), {"terms": {"tag": ["a", "b"]}}),
            (in_("_id", [1, 2]), {"ids": {"values": ["1", "2"]}}),
            (
                Predicate("tag", Operator.NOT_IN, ["a"]),
                {"bool": {"must_not": [{"terms": {"tag": ["a"]}}]}},
            ),
            (like("title", "py%"), {"wildcard": {"title": {"value": "py*"}}}),
            (is_null("email"), {"bool": {"must_not": [{"exists": {"field": "email"}}]}}),
            (Predicate("email", Operator.IS_NOT_NULL), {"exists": {"field": "email"}}),
            (match("body", "hello world"), {"match": {"body": "hello world"}}),
        ],
    )
    def test_predicates(self, condition, expected):
        assert build_query(condition) == expected

    def test_composition(self):
        cond = (eq("a", 1) & match("body", "x")) | ~eq("b", 2)
        assert build_query(cond) == {
            "bool": {
                "should": [
                    {"bool": {"must": [{"term": {"a": 1}}, {"match": {"body": "x"}}]}},
                    {"bool": {"must_not": [{"term": {"b": 2}}]}},
                ],
                "minimum_should_match": 1,
            }
        }


class TestMappings:
    def test_flatten_properties(self):
        properties = {
            "title": {"type": "text"},
            "author": {"properties": {"name": {"type": "keyword"}}},
            "comments": {"type": "nested", "properties": {"body": {"type": "text"}}},
            "meta": {},
        }
        assert flatten_properties(properties) == [
            ("title", "text"),
            ("author.name", "keyword"),
            ("comments", "nested"),
            ("comments.body", "text"),
            ("meta", "object"),
        ]

    def test_storage_units(self, adapter, client, cred):
        client.indices.get_mapping.return_value = {**MAPPING, ".kibana_1": {"mappings": {}}}
        client.cat.indices.return_value = [
            {"index": "articles", "docs.count": "5"},
            {"index": ".kibana_1", "docs.count": "1"},
        ]
        units = adapter.list_storage_units(cred)
        assert len(units) == 1
        unit = units[0]
        assert (unit.name, unit.row_count, unit.kind) == ("articles", 5, "index")
        assert unit.attribute_names == ["title", "views", "author.name"]

    def test_list_databases(self, adapter, client, cred):
        assert adapter.list_databases(cred) == ["default"]
        client.info.assert_called_once()


class TestParseRequest:
    def test_with_body(self):
        assert parse_request('GET /articles/_search\n{"size": 1}') == ("GET", "/articles/_search", {"size": 1})

    def test_without_body_and_leading_slash(self):
        assert parse_request("get articles/_count") == ("GET", "/articles/_count", None)

    @pytest.mark.parametrize("text", ["", "   ", "FETCH /x", "GET", 'POST /x\n{"size":'])
    def test_rejected(self, text):
        with pytest.raises(QueryError):
            parse_request(text)


class TestElasticsearchBrowse:
    def test_search_shape_and_columns(self, adapter, client, cred):
        client.search.return_value = search_response(
            [
                hit("1", {"title": "python tips", "views": 3}, score=2.5),
                hit("2", {"title": "python faq", "author": {"name": "ann"}}, score=1.1),
            ],
            total=40,
        )
        result = adapter.browse_rows(
            cred, "articles", condition=match("title", "python"),
            order_by=[SortKey("views", descending=True)], offset=10, limit=2,
        )
        client.search.assert_called_once_with(
            index="articles",
            query={"match": {"title": "python"}},
            sort=[{"views": {"order": "desc"}}, "_doc"],
            from_=10,
            size=2,
            preference=PAGING_PREFERENCE,
            track_total_hits=True,
            track_scores=True,
        )
        assert result.total_count == 40
        assert [(c.name, c.type) for c in result.columns][:4] == [
            ("_id", "keyword"), ("_score", "float"), ("title", "text"), ("views", "long"),
        ]
        first = result.rows[0]
        assert first["_id"].data == "1"
        assert first["_score"].data == 2.5
        assert result.rows[1]["author"].to_python() == {"name": "ann"}

    def test_default_sort_is_index_order(self, adapter, client, cred):
        client.search.return_value = search_response([])
        adapter.browse_rows(cred, "articles")
        assert client.search.call_args.kwargs["sort"] == ["_doc"]

    def test_unknown_index(self, adapter, client, cred):
        client.indices.get_mapping.side_effect = api_error(NotFoundError, 404, "no such index [nope]")
        with pytest.raises(UnknownStorageUnitError) as exc_info:
            adapter.browse_rows(cred, "nope")
        assert exc_info.value.unit == "nope"

    def test_deep_page_uses_point_in_time(self, settings, client, cred):
        adapter = FakeESAdapter(settings.model_copy(update={"search_max_result_window": 2}), client)
        client.open_point_in_time.return_value = {"id": "pit-1"}
        client.search.side_effect = [
            search_response([hit("1", {}, sort=[1]), hit("2", {}, sort=[2])], total=5, pit_id="pit-2"),
            search_response([hit("3", {}, sort=[3]), hit("4", {}, sort=[4])], total=5, pit_id="pit-3"),
        ]

        result = adapter.browse_rows(cred, "articles", offset=2, limit=2)

        assert [r["_id"].data for r in result.rows] == ["3", "4"]
        assert result.total_count == 5
        second_call = client.search.call_args_list[1].kwargs
        assert second_call["search_after"] == [2]
        assert second_call["pit"]["id"] == "pit-2"
        client.close_point_in_time.assert_called_once_with(id="pit-3")

    def test_bad_query(self, adapter, client, cred):
        client.search.side_effect = api_error(BadRequestError, 400, "failed to parse date field")
        with pytest.raises(QueryError) as exc_info:
            adapter.browse_rows(cred, "articles", condition=gt("published", "yesterday"))
        assert exc_info.value.engine_message == "failed to parse date field"


class TestElasticsearchRawExecute:
    def test_search_request(self, adapter, client, cred):
        client.perform_request.return_value = search_response([hit("1", {"title": "a"})])
        result = adapter.raw_execute(cred, 'POST /articles/_search\n{"query": {"match_all": {}}}')
        client.perform_request.assert_called_once_with(
            "POST",
            "/articles/_search",
            headers={"accept": "application/json", "content-type": "application/json"},
            body={"query": {"match_all": {}}},
        )
        assert isinstance(result, QueryResult)
        assert result.rows[0]["title"].data == "a"

    def test_document_write(self, adapter, client, cred):
        client.perform_request.return_value = {"_id": "9", "result": "created"}
        result = adapter.raw_execute(cred, 'PUT /articles/_doc/9\n{"title": "x"}')
        assert isinstance(result, MutationResult)
        assert result.affected == 1
        assert result.warnings == (REFRESH_WARNING,)

    def test_delete_by_query(self, adapter, client, cred):
        client.perform_request.return_value = {"took": 4, "deleted": 3, "failures": []}
        result = adapter.raw_execute(cred, 'POST /articles/_delete_by_query\n{"query": {"match_all": {}}}')
        assert result.affected == 3

    def test_cat_listing(self, adapter, client, cred):
        client.perform_request.return_value = [{"index": "articles", "health": "green"}]
        result = adapter.raw_execute(cred, "GET /_cat/indices?format=json")
        assert result.to_python() == [{"index": "articles", "health": "green"}]
        assert client.perform_request.call_args.kwargs["body"] is None

    def test_plain_get(self, adapter, client, cred):
        client.perform_request.return_value = {"cluster_name": "dev", "status": "green"}
        result = adapter.raw_execute(cred, "GET /_cluster/health")
        assert result.column_names == ["cluster_name", "status"]


class TestElasticsearchMutations:
    def test_add_with_id(self, adapter, client, cred):
        result = adapter.add_row(cred, "articles", {"_id": 7, "title": "x"})
        client.index.assert_called_once_with(index="articles", id="7", document={"title": "x"}, op_type="create")
        assert result.affected == 1
        assert result.warnings == (REFRESH_WARNING,)

    def test_add_without_id(self, adapter, client, cred):
        adapter.add_row(cred, "articles", {"title": "x", "_score": 1.0})
        client.index.assert_called_once_with(index="articles", document={"title": "x"})

    def test_add_existing_id(self, adapter, client, cred):
        client.index.side_effect = api_error(ConflictError, 409, "version conflict, document already exists")
        with pytest.raises(MutationError, match="already exists"):
            adapter.add_row(cred, "articles", {"_id": 7, "title": "x"})

    def test_update_by_id(self, adapter, client, cred):
        adapter.update_row(cred, "articles", eq("_id", "7"), {"title": "y"})
        client.search.assert_not_called()
        client.update.assert_called_once_with(index="articles", id="7", doc={"title": "y"})

    def test_update_resolves_condition(self, adapter, client, cred):
        client.search.return_value = search_response([hit("42", {})])
        adapter.update_row(cred, "articles", eq("slug", "intro"), {"title": "y"})
        assert client.search.call_args.kwargs == {
            "index": "articles", "query": {"term": {"slug": "intro"}}, "size": 2, "source": False,
        }
        client.update.assert_called_once_with(index="articles", id="42", doc={"title": "y"})

    def test_update_missing(self, adapter, client, cred):
        client.update.side_effect = api_error(NotFoundError, 404, "document missing")
        with pytest.raises(NoRowsMatchedError):
            adapter.update_row(cred, "articles", eq("_id", "7"), {"title": "y"})

    def test_update_accepts_unchanged_id(self, adapter, client, cred):
        adapter.update_row(cred, "articles", eq("_id", "d1"), {"_id": "d1", "_score": None, "title": "new"})
        client.update.assert_called_once_with(index="articles", id="d1", doc={"title": "new"})

    def test_update_cannot_change_id(self, adapter, client, cred):
        with pytest.raises(MutationError):
            adapter.update_row(cred, "articles", eq("_id", "7"), {"_id": "8"})
        client.update.assert_not_called()

    def test_delete_by_id(self, adapter, client, cred):
        assert adapter.delete_row(cred, "articles", eq("_id", "7")).affected == 1
        client.delete.assert_called_once_with(index="articles", id="7")

    def test_delete_missing_is_zero(self, adapter, client, cred):
        client.delete.side_effect = api_error(NotFoundError, 404, "not_found")
        result = adapter.delete_row(cred, "articles", eq("_id", "7"))
        assert result.affected == 0
        assert result.warnings == (REFRESH_WARNING,)

    def test_delete_no_match(self, adapter, client, cred):
        client.search.return_value = search_response([])
        assert adapter.delete_row(cred, "articles", eq("slug", "gone")).affected == 0
        client.delete.assert_not_called()

    def test_delete_ambiguous(self, adapter, client, cred):
        client.search.return_value = search_response([hit("1", {}), hit("2", {})])
        with pytest.raises(AmbiguousTargetError):
            adapter.delete_row(cred, "articles", eq("slug", "dup"))
        client.delete.assert_not_called()


class TestElasticsearchRoundTrip:
    @pytest.fixture
    def memory(self, client) -> MemoryIndex:
        index = MemoryIndex()
        client.index.side_effect = index.index
        client.search.side_effect = index.search
        return index

    def test_added_document_reads_back_equal(self, adapter, memory, cred):
        written = {"_id": normalize("d1"), "title": normalize("hello"), "views": normalize(3)}
        adapter.add_row(cred, "articles", written)
        result = adapter.browse_rows(cred, "articles", condition=eq("_id", "d1"))
        assert len(result) == 1
        for name, value in written.items():
            assert result.rows[0][name] == value

    def test_pages_concatenate_when_sort_keys_tie(self, adapter, memory, cred):
        for i in range(9):
            adapter.add_row(cred, "articles", {"_id": f"d{i}", "views": i % 2})
        order = [SortKey("views", descending=True)]
        first = adapter.browse_rows(cred, "articles", order_by=order, offset=0, limit=4)
        second = adapter.browse_rows(cred, "articles", order_by=order, offset=4, limit=4)
        both = adapter.browse_rows(cred, "articles", order_by=order, offset=0, limit=8)
        assert first.rows + second.rows == both.rows

    def test_browsed_row_can_be_written_back(self, adapter, client, memory, cred):
        adapter.add_row(cred, "articles", {"_id": "d1", "title": "old"})
        row = adapter.browse_rows(cred, "articles", condition=eq("_id", "d1")).rows[0]
        edited = {name: value for name, value in row}
        edited["title"] = normalize("new")
        adapter.update_row(cred, "articles", eq("_id", "d1"), edited)
        client.update.assert_called_once_with(index="articles", id="d1", doc={"title": "new"})


class TestElasticsearchErrors:
    def test_timeout(self, adapter, client, cred):
        client.info.side_effect = ConnectionTimeout("timed out")
        with pytest.raises(ConnectionTimeoutError):
            adapter.check_connection(cred)
        client.close.assert_called()

    def test_connection_refused(self, adapter, client, cred):
        client.info.side_effect = ESConnectionError("refused")
        with pytest.raises(EngineConnectionError):
            adapter.check_connection(cred)


class TestElasticsearchPlugin:
    def test_no_transactions(self):
        plugin = create_plugin()
        assert plugin.storage_unit_label == "Indices"
        assert plugin.supports(Capability.FULL_TEXT)
        assert not plugin.supports(Capability.TRANSACTIONS)

    def test_engine_flags_writes_once(self, settings, client, cred):
        plugin = create_plugin(settings)
        eng = Engine(settings)
        eng.register_plugin(dataclasses.replace(plugin, adapter=FakeESAdapter(settings, client)))
        result = eng.add_row(cred, "articles", {"title": "x"})
        kinds = [w.kind for w in result.warnings]
        assert kinds == [WarningKind.EVENTUAL_CONSISTENCY]
