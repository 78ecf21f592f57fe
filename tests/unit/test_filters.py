"""
Unit tests for dimension filters.
"""
from carbon_core.data import EmissionRecord
from carbon_core.filters import ALL, DimensionFilter, is_unconstrained, normalize_filter


def _record(**overrides):
    values = dict(campus="Ganesha", building="Lab", room="R1", device="AC", year=2024, month=3, emission=1.0)
    values.update(overrides)
    return EmissionRecord(**values)


def test_all_sentinel_and_none_are_unconstrained():
    assert is_unconstrained(None)
    assert is_unconstrained(ALL)
    assert is_unconstrained("  ")
    assert not is_unconstrained("Ganesha")
    assert not is_unconstrained(0)


def test_matches_applies_every_constraint():
    filt = DimensionFilter(campus="Ganesha", year=2024, building="Lab", room="R1")

    assert filt.matches(_record())
    assert not filt.matches(_record(campus="Jatinangor"))
    assert not filt.matches(_record(year=2023))
    assert not filt.matches(_record(building="Library"))
    assert not filt.matches(_record(room="R2"))


def test_string_year_constraint_matches_int_years():
    assert DimensionFilter(year="2024").matches(_record(year=2024))


def test_records_missing_a_constrained_field_do_not_match():
    assert not DimensionFilter(campus="Ganesha").matches(_record(campus=None))


def test_normalize_filter_handles_loose_input():
    filt = normalize_filter({"campus": " Ganesha ", "year": "2024", "building": "", "room": None})

    assert filt == DimensionFilter(campus="Ganesha", year=2024)


def test_normalize_filter_defaults_to_everything():
    assert normalize_filter(None) == DimensionFilter()
    assert normalize_filter({"campus": "All", "year": "All"}) == DimensionFilter()


def test_unparsable_year_is_unconstrained():
    filt = normalize_filter({"year": "twenty"})

    assert filt.year is None
    assert filt.matches(_record(year=1999))


def test_as_query_fills_in_sentinels():
    assert DimensionFilter().as_query() == {"campus": ALL, "year": ALL, "building": None, "room": None}
    assert DimensionFilter(campus="Ganesha", year="2023").as_query()["year"] == 2023
