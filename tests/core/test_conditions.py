"""Tests for omnistore.core.conditions -- filter expressions."""

import pytest

from omnistore.core.conditions import (
    And,
    Not,
    Operator,
    Or,
    Predicate,
    all_of,
    ensure_supported,
    eq,
    equality_map,
    from_mapping,
    gt,
    in_,
    is_null,
    like,
    like_to_glob,
    like_to_regex,
    lt,
    match,
    ne,
    where,
)
from omnistore.core.errors import UnsupportedFilterError
from omnistore.core.values import normalize


class TestPredicate:
    def test_builders(self):
        assert eq("a", 1) == Predicate("a", Operator.EQ, 1)
        assert where("a", "gte", 2) == Predicate("a", Operator.GTE, 2)
        assert is_null("a").value is None

    def test_set_operators_store_tuples(self):
        assert in_("a", [1, 2]).value == (1, 2)

    def test_set_operator_rejects_scalar(self):
        with pytest.raises(UnsupportedFilterError):
            in_("a", "abc")
        with pytest.raises(UnsupportedFilterError):
            in_("a", 5)

    def test_like_needs_string(self):
        with pytest.raises(UnsupportedFilterError):
            like("a", 5)

    def test_empty_attribute(self):
        with pytest.raises(UnsupportedFilterError):
            eq("", 1)

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            where("a", "between", (1, 2))

    def test_native_value_unwraps_values(self):
        assert eq("a", normalize(3)).native_value == 3
        assert in_("a", [normalize(1), 2]).native_value == (1, 2)


class TestComposition:
    def test_operators(self):
        cond = eq("a", 1) & (gt("b", 2) | ~is_null("c"))
        assert isinstance(cond, And)
        assert isinstance(cond.conditions[1], Or)
        assert isinstance(cond.conditions[1].conditions[1], Not)

    def test_attributes_and_operators(self):
        cond = eq("a", 1) & (gt("b", 2) | ~is_null("c"))
        assert cond.attributes() == {"a", "b", "c"}
        assert cond.operators() == {Operator.EQ, Operator.GT, Operator.IS_NULL}

    def test_empty_groups_rejected(self):
        with pytest.raises(UnsupportedFilterError):
            And(())
        with pytest.raises(UnsupportedFilterError):
            Or([])

    def test_all_of_single(self):
        single = eq("a", 1)
        assert all_of(single) is single

    def test_from_mapping(self):
        cond = from_mapping({"id": 1, "name": "x"})
        assert cond == And((eq("id", 1), eq("name", "x")))
        with pytest.raises(UnsupportedFilterError):
            from_mapping({})


class TestEvaluate:
    row = {"key": "user:1", "type": "hash", "age": 30, "missing": None}

    @pytest.mark.parametrize(
        ("cond", "expected"),
        [
            (eq("type", "hash"), True),
            (ne("type", "hash"), False),
            (in_("type", ["list", "hash"]), True),
            (Predicate("type", Operator.NOT_IN, ["hash"]), False),
            (like("key", "user:%"), True),
            (like("key", "user:_"), True),
            (like("key", "user:__"), False),
            (gt("age", 18), True),
            (lt("age", 18), False),
            (is_null("missing"), True),
            (Predicate("missing", Operator.IS_NOT_NULL), False),
            (gt("missing", 1), False),
            (gt("key", 1), False),  # str vs int compares false instead of raising
            (eq("type", "hash") & ~like("key", "admin:%"), True),
        ],
    )
    def test_evaluate(self, cond, expected):
        assert cond.evaluate(self.row) is expected

    def test_match_cannot_run_client_side(self):
        with pytest.raises(UnsupportedFilterError):
            match("body", "hello").evaluate({"body": "hello"})


class TestEqualityMap:
    def test_none(self):
        assert equality_map(None) is None

    def test_single_and_conjunction(self):
        assert equality_map(eq("id", 1)) == {"id": 1}
        assert equality_map(eq("id", 1) & eq("name", "x")) == {"id": 1, "name": "x"}

    def test_non_equality_shapes(self):
        assert equality_map(gt("id", 1)) is None
        assert equality_map(eq("id", 1) | eq("id", 2)) is None
        assert equality_map(eq("id", 1) & gt("age", 2)) is None

    def test_contradiction(self):
        assert equality_map(eq("id", 1) & eq("id", 2)) is None


class TestEnsureSupported:
    def test_allows_listed_operators(self):
        ensure_supported(eq("a", 1), {Operator.EQ}, "redis")
        ensure_supported(None, set(), "redis")

    def test_rejects_with_engine_context(self):
        with pytest.raises(UnsupportedFilterError) as exc_info:
            ensure_supported(gt("a", 1) & eq("b", 2), {Operator.EQ}, "redis")
        assert "gt" in exc_info.value.message
        assert exc_info.value.context.engine == "redis"


class TestLikeTranslation:
    def test_regex(self):
        assert like_to_regex("a%b_").fullmatch("aXYZbQ")
        assert not like_to_regex("a%b_").fullmatch("ab")
        assert like_to_regex("100\\%").fullmatch("100%")
        assert not like_to_regex("100\\%").fullmatch("1000")
        assert like_to_regex("a.c").fullmatch("a.c")
        assert not like_to_regex("a.c").fullmatch("abc")

    def test_glob(self):
        assert like_to_glob("user:%") == "user:*"
        assert like_to_glob("a_c") == "a?c"
        assert like_to_glob("star*") == "star\\*"
        assert like_to_glob("50\\%") == "50%"
