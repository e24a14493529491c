"""
Tests for CLI utilities.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

import pytest
import typer

from omnistore.cli.utils import (
    _to_dict,
    build_credential,
    output_mutation,
    output_query,
    parse_filters,
    parse_options,
    reporting_errors,
)
from omnistore.core.errors import QueryError
from omnistore.core.models import MutationResult, QueryResult, ResultWarning, Row, WarningKind


@dataclass
class _Sample:
    name: str = "test"
    count: int = 0


class TestToDict:
    def test_dataclass(self):
        assert _to_dict(_Sample(name="x", count=5)) == {"name": "x", "count": 5}

    def test_dict_passthrough(self):
        assert _to_dict({"a": 1}) == {"a": 1}

    def test_other(self):
        assert _to_dict("hello") == {"value": "hello"}


class TestParseOptions:
    def test_pairs(self):
        assert parse_options(["sslmode=require", "application_name=x=y"]) == {
            "sslmode": "require",
            "application_name": "x=y",
        }

    def test_empty(self):
        assert parse_options(None) == {}

    @pytest.mark.parametrize("bad", ["novalue", "=value"])
    def test_rejected(self, bad):
        with pytest.raises(typer.BadParameter):
            parse_options([bad])


class TestParseFilters:
    def test_json_literals_keep_type(self):
        assert parse_filters(["id=1", "active=true", "deleted_at=null", "name=ann"]) == {
            "id": 1,
            "active": True,
            "deleted_at": None,
            "name": "ann",
        }

    def test_quoted_number_stays_string(self):
        assert parse_filters(['zip="01234"']) == {"zip": "01234"}


class TestBuildCredential:
    def test_fields(self):
        cred = build_credential(
            "postgres", host="db", port=6543, user="app", password="s3cret",
            database="shop", schema="sales", options=["sslmode=require"],
        )
        assert cred.engine_label == "postgresql"
        assert cred.port == 6543
        assert cred.advanced == {"sslmode": "require"}
        assert "s3cret" not in repr(cred)

    def test_no_prompt_without_terminal(self):
        cred = build_credential("postgresql", host="db", user="app")
        assert cred.password == ""


class TestReportingErrors:
    def test_exit_code_and_kind(self, capsys):
        with pytest.raises(typer.Exit) as exc_info:
            with reporting_errors():
                raise QueryError("Query failed", engine_message='near "SELEC": syntax error')
        assert exc_info.value.exit_code == 1
        err = capsys.readouterr().err
        assert "QUERY" in err
        assert "syntax error" in err

    def test_other_errors_propagate(self):
        with pytest.raises(KeyError):
            with reporting_errors():
                raise KeyError("bug")


class TestOutput:
    def test_query_json(self, capsys):
        result = QueryResult(
            columns=(("id", "INTEGER"), ("blob", "BLOB")),
            rows=(Row.from_mapping({"id": 2**60, "blob": b"\x00\x01"}),),
            total_count=1,
            warnings=(ResultWarning(WarningKind.UNORDERED, "no order"),),
        )
        output_query(result, as_json=True)
        payload = json.loads(capsys.readouterr().out)
        assert payload["rows"] == [{"id": str(2**60), "blob": "AAE="}]
        assert payload["columns"] == [{"name": "id", "type": "INTEGER"}, {"name": "blob", "type": "BLOB"}]
        assert payload["warnings"] == ["no order"]

    def test_query_table_prints_warnings_to_stderr(self, capsys):
        result = QueryResult(
            columns=(("key", "string"),),
            rows=(Row.from_mapping({"key": "a"}),),
            warnings=(ResultWarning(WarningKind.UNORDERED, "SCAN order"),),
        )
        output_query(result)
        captured = capsys.readouterr()
        assert "unordered" in captured.err
        assert "a" in captured.out

    def test_empty_result(self, capsys):
        output_query(QueryResult(columns=(), rows=()))
        assert "No rows" in capsys.readouterr().out

    def test_mutation(self, capsys):
        output_mutation(MutationResult(3))
        assert "3 row(s) affected" in capsys.readouterr().out
