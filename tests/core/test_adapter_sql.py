"""Tests for ``omnistore.core.adapters.sql`` -- condition compilation and plugins."""

from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from omnistore.core.adapters.mysql import MySQLAdapter
from omnistore.core.adapters.mysql import create_plugin as mysql_plugin
from omnistore.core.adapters.plugin import Capability
from omnistore.core.adapters.postgresql import PostgreSQLAdapter
from omnistore.core.adapters.postgresql import create_plugin as postgresql_plugin
from omnistore.core.adapters.sql import SQL_CAPABILITIES, compile_condition, order_clause
from omnistore.core.conditions import (
    Operator,
    Predicate,
    SortKey,
    eq,
    gt,
    in_,
    is_null,
    like,
    match,
    ne,
)
from omnistore.core.dialect import MariaDBDialect, MySQLDialect
from omnistore.core.errors import ConfigError, UnknownAttributeError, UnsupportedFilterError
from omnistore.core.models import Credential, EngineType


@pytest.fixture
def users() -> sa.Table:
    return sa.Table(
        "users",
        sa.MetaData(),
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.Text),
        sa.Column("age", sa.Integer),
    )


def _sql(expr) -> str:
    return str(expr.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}))


class TestCompileCondition:
    def test_none(self, users):
        assert compile_condition(users, None) is None

    def test_equality_uses_bound_parameters(self, users):
        expr = compile_condition(users, eq("name", "x'; DROP TABLE users; --"))
        compiled = expr.compile(dialect=postgresql.dialect())
        assert str(compiled) == "users.name = %(name_1)s"
        assert compiled.params == {"name_1": "x'; DROP TABLE users; --"}

    def test_null_equality(self, users):
        assert _sql(compile_condition(users, eq("name", None))) == "users.name IS NULL"
        assert _sql(compile_condition(users, ne("name", None))) == "users.name IS NOT NULL"

    def test_comparisons_and_sets(self, users):
        assert _sql(compile_condition(users, gt("age", 30))) == "users.age > 30"
        assert _sql(compile_condition(users, in_("id", [1, 2]))) == "users.id IN (1, 2)"
        assert "users.id NOT IN (3)" in _sql(compile_condition(users, Predicate("id", Operator.NOT_IN, [3])))

    def test_like_escape(self, users):
        sql = _sql(compile_condition(users, like("name", "a%")))
        assert sql.startswith("users.name LIKE 'a%' ESCAPE")

    def test_unary(self, users):
        assert _sql(compile_condition(users, is_null("age"))) == "users.age IS NULL"

    def test_composition(self, users):
        expr = compile_condition(users, (eq("id", 1) | gt("age", 2)) & ~eq("name", "x"))
        assert _sql(expr) == "(users.id = 1 OR users.age > 2) AND users.name != 'x'"

    def test_unknown_column(self, users):
        with pytest.raises(UnknownAttributeError) as exc_info:
            compile_condition(users, eq("email", "a"))
        assert exc_info.value.unit == "users"

    def test_match_unsupported(self, users):
        with pytest.raises(UnsupportedFilterError):
            compile_condition(users, match("name", "x"))


class TestOrderClause:
    def _order_by(self, table, keys) -> str:
        return _sql(sa.select(table).order_by(*order_clause(table, keys))).split("ORDER BY ")[1]

    def test_primary_key_breaks_ties(self, users):
        assert self._order_by(users, [SortKey("age", descending=True)]) == "users.age DESC, users.id"

    def test_default_is_primary_key(self, users):
        assert self._order_by(users, []) == "users.id"

    def test_primary_key_not_repeated(self, users):
        assert self._order_by(users, [SortKey("id", descending=True)]) == "users.id DESC"

    def test_keyless_table(self):
        tags = sa.Table("tags", sa.MetaData(), sa.Column("label", sa.Text))
        assert order_clause(tags, []) == []


class TestRelationalPlugins:
    def test_capabilities(self):
        plugin = postgresql_plugin()
        assert plugin.capabilities == SQL_CAPABILITIES
        assert plugin.supports(Capability.GRAPH)
        assert not plugin.supports(Capability.FULL_TEXT)

    def test_postgresql_adapter(self):
        assert isinstance(postgresql_plugin().adapter, PostgreSQLAdapter)

    def test_mysql_and_mariadb_share_adapter_class(self):
        mysql = mysql_plugin()
        mariadb = mysql_plugin(engine_type=EngineType.MARIADB)
        assert isinstance(mysql.adapter, MySQLAdapter)
        assert isinstance(mariadb.adapter, MySQLAdapter)
        assert mariadb.engine_type is EngineType.MARIADB
        assert isinstance(mariadb.adapter.dialect, MariaDBDialect)
        assert type(mysql.adapter.dialect) is MySQLDialect

    def test_server_credential_needs_host(self):
        with pytest.raises(ConfigError):
            PostgreSQLAdapter().check_connection(Credential("postgresql"))
