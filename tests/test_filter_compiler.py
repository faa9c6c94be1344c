from datetime import date

import pytest

from peek.core.errors import ClientInputError, UnknownEntityKindError
from peek.query.compiler import compile_filters, expand_criteria, parse_filters
from peek.query.filters import MultiIdCriterion, NumberCriterion
from peek.query.identity import CompositeKey, composite_string, parse_composite_value
from peek.query.predicates import (
    And, Between, Column, Compare, DateCompare, EffectiveRating, Exists, InSet, IsNull, Not, Or,
    Related, TextMatch, bound_parameters, uses_overlay,
)


# ============ Composite ids ============

def test_composite_value_splits_on_first_colon():
    assert parse_composite_value("82:inst-a") == CompositeKey("82", "inst-a")
    assert parse_composite_value("82:inst:with:colons") == CompositeKey("82", "inst:with:colons")
    assert parse_composite_value(" 82 ") == CompositeKey("82")
    assert parse_composite_value(82) == CompositeKey("82")


@pytest.mark.parametrize("value", [None, "", ":inst", True, {"id": 1}, [1]])
def test_malformed_composite_values_are_rejected(value):
    with pytest.raises(ClientInputError):
        parse_composite_value(value)


def test_composite_string_round_trip():
    assert composite_string("5", "a") == "5:a"
    assert composite_string("5", "") == "5"
    assert composite_string("5", None) == "5"
    assert str(CompositeKey("5", "a")) == "5:a"


# ============ Parsing ============

def test_empty_filters_compile_to_nothing():
    assert parse_filters("scene", None) == {}
    assert parse_filters("scene", {}) == {}
    assert compile_filters("scene", {}) is None


def test_empty_values_are_dropped():
    criteria = parse_filters("scene", {
        "title": {"value": "  ", "modifier": "INCLUDES"},
        "performers": {"value": [], "modifier": "INCLUDES"},
        "duration": {"value": None},
    })
    assert criteria == {}


def test_unknown_field_is_rejected():
    with pytest.raises(ClientInputError):
        parse_filters("scene", {"no_such_field": {"value": 1}})


def test_unknown_kind_is_rejected():
    with pytest.raises(UnknownEntityKindError):
        parse_filters("movie", {"title": {"value": "x"}})


def test_malformed_number_is_rejected():
    with pytest.raises(ClientInputError):
        parse_filters("scene", {"duration": {"value": "abc", "modifier": "GREATER_THAN"}})


def test_malformed_date_is_rejected():
    with pytest.raises(ClientInputError):
        parse_filters("scene", {"date": {"value": "yesterday", "modifier": "GREATER_THAN"}})


def test_numeric_strings_are_accepted():
    criteria = parse_filters("scene", {"duration": {"value": "600", "modifier": "GREATER_THAN"}})
    assert criteria["duration"] == NumberCriterion("GREATER_THAN", 600)


# ============ Compilation ============

def _compile(kind, raw, today=None):
    return compile_filters(kind, parse_filters(kind, raw), today)


def test_number_modifiers():
    duration = Column("duration")
    assert _compile("scene", {"duration": {"value": 60, "modifier": "EQUALS"}}) == Compare(duration, "=", 60)
    assert _compile("scene", {"duration": {"value": 60, "value2": 120, "modifier": "BETWEEN"}}) == Between(duration, 60, 120)
    assert _compile("scene", {"duration": {"value": 60, "value2": 120, "modifier": "NOT_BETWEEN"}}) == Or((
        Compare(duration, "<", 60), Compare(duration, ">", 120),
    ))
    assert _compile("scene", {"duration": {"modifier": "IS_NULL"}}) == IsNull(duration)


def test_rating_uses_effective_rating():
    predicate = _compile("scene", {"rating100": {"value": 70, "modifier": "GREATER_THAN"}})
    assert predicate == Compare(EffectiveRating(), ">", 70)
    assert uses_overlay(predicate)
    assert not uses_overlay(_compile("scene", {"duration": {"value": 60}}))
    assert uses_overlay(_compile("scene", {"performer_favorite": {"value": True}}))


def test_text_excludes_keeps_null_rows():
    predicate = _compile("scene", {"title": {"value": "day", "modifier": "EXCLUDES"}})
    assert predicate == Or((IsNull(Column("title")), Not(TextMatch(Column("title"), "day"))))


def test_performer_name_searches_disambiguation_too():
    predicate = _compile("performer", {"name": {"value": "ali"}})
    assert predicate == Or((TextMatch(Column("name"), "ali"), TextMatch(Column("disambiguation"), "ali")))


def test_multi_id_modifiers():
    keys = (CompositeKey("p1", "a"), CompositeKey("p2"))
    raw = ["p1:a", "p2"]
    assert _compile("scene", {"performers": {"value": raw, "modifier": "INCLUDES"}}) == Related("performers", keys, "any")
    assert _compile("scene", {"performers": {"value": raw, "modifier": "INCLUDES_ALL"}}) == Related("performers", keys, "all")
    assert _compile("scene", {"performers": {"value": raw, "modifier": "EXCLUDES"}}) == Related("performers", keys, "none")


def test_scene_tags_include_inherited_tags():
    predicate = _compile("scene", {"tags": {"value": ["t1:a"], "modifier": "INCLUDES"}})
    assert predicate == Related("tags", (CompositeKey("t1", "a"),), "any", include_inherited=True)


def test_unknown_modifier_compiles_to_no_predicate():
    assert _compile("scene", {"performers": {"value": ["p1"], "modifier": "SOMETIMES"}}) is None


def test_ids_filter_matches_the_entity_key():
    predicate = _compile("scene", {"ids": {"value": ["1:a", "2"], "modifier": "INCLUDES"}})
    assert predicate == Or((
        InSet(Column("id"), ("2",)),
        And((Compare(Column("id"), "=", "1"), Compare(Column("instance_id"), "=", "a"))),
    ))


def test_date_equals_uses_day_grain():
    predicate = _compile("scene", {"date": {"value": "2023-05-01", "modifier": "EQUALS"}})
    assert predicate == DateCompare(Column("date"), "=", "2023-05-01", day_grain=True)


def test_age_compiles_to_birthdate_bounds():
    today = date(2024, 6, 1)
    predicate = _compile("performer", {"age": {"value": 30, "modifier": "EQUALS"}}, today)
    birthdate = Column("birthdate")
    assert predicate == And((
        DateCompare(birthdate, "<=", "1994-06-01"),
        DateCompare(birthdate, ">", "1993-06-01"),
    ))


def test_age_on_leap_day_falls_back_to_feb_28():
    predicate = _compile("performer", {"age": {"value": 1, "modifier": "LESS_THAN"}}, date(2024, 2, 29))
    assert predicate == DateCompare(Column("birthdate"), ">", "2023-02-28")


def test_resolution_and_orientation():
    assert _compile("scene", {"resolution": {"value": "FULL_HD"}}) == Compare(Column("height", 0), "=", 1080)
    assert _compile("scene", {"resolution": {"value": "720p", "modifier": "GREATER_THAN"}}) == Compare(
        Column("height", 0), ">", 720
    )
    assert _compile("scene", {"orientation": {"value": ["PORTRAIT"]}}) == Compare(
        Column("width"), "<", Column("height")
    )


def test_related_favorite_filter():
    assert _compile("scene", {"performer_favorite": {"value": True}}) == Exists("performers", "favorite")
    assert _compile("scene", {"performer_favorite": {"value": "false"}}) == Not(Exists("performers", "favorite"))


def test_multiple_criteria_are_conjoined():
    predicate = _compile("scene", {
        "title": {"value": "sun"},
        "duration": {"value": 100, "modifier": "GREATER_THAN"},
    })
    assert isinstance(predicate, And)
    assert len(predicate.items) == 2


def test_bound_parameters_never_inline_user_text():
    predicate = _compile("scene", {"title": {"value": "x'; DROP TABLE scenes; --"}})
    assert bound_parameters(predicate) == ["x'; DROP TABLE scenes; --"]


def test_hierarchy_expansion_replaces_values_and_clears_depth():
    criteria = parse_filters("scene", {"tags": {"value": ["t1:a"], "modifier": "INCLUDES", "depth": -1}})

    def expand(hierarchy, keys, depth):
        assert hierarchy == "tag"
        assert depth == -1
        return keys + (CompositeKey("t2", "a"),)

    expanded = expand_criteria("scene", criteria, expand)
    assert expanded["tags"] == MultiIdCriterion("INCLUDES", (CompositeKey("t1", "a"), CompositeKey("t2", "a")), None)
