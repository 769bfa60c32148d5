"""Tests for filter parsing, translation and evaluation."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from casesync.errors import FilterError
from casesync.filters import (
    And,
    Between,
    Equals,
    Exists,
    In,
    Not,
    Or,
    and_all,
    convert_where,
    format_timestamp,
    matches,
    parse_timestamp,
    parse_where,
    translate,
)


class TestParseWhere:
    """Loopback-style where clauses into expression trees."""

    def test_empty_is_none(self):
        assert parse_where(None) is None
        assert parse_where({}) is None

    def test_plain_value_is_equality(self):
        assert parse_where({"name": "Ana"}) == Equals("name", "Ana")

    def test_id_maps_to_native_key(self):
        assert parse_where({"id": "x1"}) == Equals("_id", "x1")

    def test_multiple_keys_are_anded(self):
        expr = parse_where({"a": 1, "b": 2})
        assert expr == And((Equals("a", 1), Equals("b", 2)))

    def test_between(self):
        assert parse_where({"age": {"between": [1, 5]}}) == Between("age", 1, 5)

    def test_between_needs_two_values(self):
        with pytest.raises(FilterError):
            parse_where({"age": {"between": [1]}})

    def test_unknown_operator_rejected(self):
        with pytest.raises(FilterError, match="near"):
            parse_where({"loc": {"near": [0, 0]}})

    def test_non_dict_rejected(self):
        with pytest.raises(FilterError):
            parse_where(["a"])

    def test_empty_and_is_dropped(self):
        assert parse_where({"and": []}) is None


class TestTranslate:
    """Expression trees into native predicates."""

    def test_inq(self):
        where = {"outbreakId": {"inq": ["a", "b"]}}
        assert convert_where(where) == {"outbreakId": {"$in": ["a", "b"]}}

    def test_nested_boolean(self):
        where = {"and": [{"a": 1}, {"or": [{"b": 2}, {"c": {"neq": 3}}]}]}
        assert convert_where(where) == {
            "$and": [{"a": 1}, {"$or": [{"b": 2}, {"c": {"$ne": 3}}]}]
        }

    def test_comparisons_and_nin(self):
        assert convert_where({"n": {"lt": 3}}) == {"n": {"$lt": 3}}
        assert convert_where({"n": {"gte": 3}}) == {"n": {"$gte": 3}}
        assert convert_where({"n": {"nin": [1]}}) == {"n": {"$nin": [1]}}

    def test_between_becomes_range(self):
        assert translate(Between("n", 1, 9)) == {"n": {"$gte": 1, "$lte": 9}}

    def test_dates_are_normalized(self):
        predicate = convert_where({"updatedAt": {"gte": "2026-01-01T00:00:00Z"}})
        assert predicate == {"updatedAt": {"$gte": "2026-01-01T00:00:00.000Z"}}

    def test_datetime_values_are_rendered(self):
        value = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
        assert translate(Equals("d", value)) == {"d": "2026-03-04T05:06:07.000Z"}

    def test_regex_with_options(self):
        predicate = convert_where({"name": {"regexp": "^an", "options": "i"}})
        assert predicate == {"name": {"$regex": "^an", "$options": "i"}}

    def test_not_becomes_nor(self):
        assert translate(Not(Equals("a", 1))) == {"$nor": [{"a": 1}]}

    def test_none_matches_everything(self):
        assert translate(None) == {}

    def test_and_all_drops_empty(self):
        assert and_all(None, None) is None
        assert and_all(Equals("a", 1), None) == Equals("a", 1)
        assert and_all(Equals("a", 1), Equals("b", 2)) == And((Equals("a", 1), Equals("b", 2)))


class TestMatches:
    """Native predicates evaluated against documents."""

    def test_equality_and_missing_field(self):
        assert matches({"a": 1}, {"a": 1})
        assert not matches({"a": 1}, {"a": 2})
        assert matches({"a": None}, {})

    def test_ne_excludes_only_true(self):
        predicate = translate(Not(Equals("deleted", True)))
        assert matches(predicate, {"deleted": False})
        assert matches(predicate, {})
        assert not matches(predicate, {"deleted": True})

    def test_in_over_nested_list(self):
        predicate = translate(In("persons.id", ("p2",)))
        assert matches(predicate, {"persons": [{"id": "p1"}, {"id": "p2"}]})
        assert not matches(predicate, {"persons": [{"id": "p1"}]})
        assert not matches(predicate, {"persons": []})

    def test_dates_compare_as_instants(self):
        predicate = {"updatedAt": {"$gte": "2026-01-01T00:00:00.000Z"}}
        assert matches(predicate, {"updatedAt": "2026-01-01T01:00:00+01:00"})
        assert not matches(predicate, {"updatedAt": "2025-12-31T23:59:59Z"})

    def test_ordering_ignores_missing(self):
        assert not matches({"n": {"$gt": 1}}, {})

    def test_regex_case_insensitive(self):
        assert matches({"name": {"$regex": "^an", "$options": "i"}}, {"name": "Ana"})
        assert not matches({"name": {"$regex": "^an"}}, {"name": "Ana"})

    def test_exists(self):
        predicate = translate(Or((Exists("outbreakId", False), Equals("outbreakId", "a"))))
        assert matches(predicate, {})
        assert matches(predicate, {"outbreakId": "a"})
        assert not matches(predicate, {"outbreakId": "b"})

    def test_unknown_operator_raises(self):
        with pytest.raises(FilterError):
            matches({"a": {"$near": 1}}, {"a": 1})


class TestTimestamps:
    """ISO-8601 parsing and rendering."""

    def test_format_uses_milliseconds(self):
        value = datetime(2026, 1, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2026-01-01T12:00:00.123Z"

    def test_parse_zulu(self):
        parsed = parse_timestamp("2026-01-01T00:00:00Z")
        assert parsed == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        parsed = parse_timestamp(datetime(2026, 1, 1))
        assert parsed.tzinfo is not None

    def test_garbage_is_none(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp("") is None
        assert parse_timestamp(42) is None
