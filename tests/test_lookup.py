"""Tests for the user statistics lookup and share token registry."""

import pytest

from nutstate import lookup
from nutstate.cache import CacheStore, QueryCacheEntry

FIELDS = lookup.StatFields(
    today=lookup.StatField("4816299", "peanut_count"),
    total=lookup.StatField("4815993", "total_peanut_count"),
    sent=lookup.StatField("4811780", "sent_peanut_count"),
    rank=lookup.StatField("4801919", "rank"),
)


@pytest.fixture
def store(tmp_path) -> CacheStore:
    store = CacheStore(tmp_path / "cache.json", query_ids=FIELDS.query_ids)
    queries = store.snapshot.queries
    queries["4816299"] = QueryCacheEntry(
        rows=[{"fid": 3, "peanut_count": 12}, {"parent_fid": 5, "peanut_count": 2}],
    )
    queries["4815993"] = QueryCacheEntry(rows=[{"fid": "3", "total_peanut_count": 340}])
    queries["4811780"] = QueryCacheEntry(rows=[{"fid": 3, "sent_peanut_count": 18}])
    queries["4801919"] = QueryCacheEntry(rows=[{"fid": 3, "rank": 27}])
    return store


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("value", "expected"),
    [(5, 5), (5.9, 5.9), ("12", 12), ("7.5", 7.5), (None, 0), ("n/a", 0), (True, 0), ([1], 0)],
)
def test_as_number(value, expected):
    assert lookup.as_number(value) == expected
    assert type(lookup.as_number(value)) is type(expected)


def test_row_matches_fid_or_parent_fid():
    assert lookup.row_matches({"fid": 3}, "3")
    assert lookup.row_matches({"fid": 9, "parent_fid": "3"}, "3")
    assert not lookup.row_matches({"fid": 30}, "3")
    assert not lookup.row_matches({}, "3")


def test_row_user_key_prefers_fid():
    assert lookup.row_user_key({"fid": 4, "parent_fid": 8}) == "4"
    assert lookup.row_user_key({"parent_fid": 8}) == "8"
    assert lookup.row_user_key({"name": "x"}) is None


def test_stat_fields_query_ids_are_distinct():
    fields = lookup.StatFields(
        today=lookup.StatField("A", "x"),
        total=lookup.StatField("B", "y"),
        sent=lookup.StatField("A", "z"),
        rank=lookup.StatField("C", "rank"),
    )
    assert fields.query_ids == ["A", "B", "C"]


# ---------------------------------------------------------------------------
# StatsLookup
# ---------------------------------------------------------------------------


def test_get_stats_projects_rows(store):
    stats = lookup.StatsLookup(store, FIELDS).get_stats("3")

    assert stats == lookup.UserStats(
        today_count=12,
        total_count=340,
        sent_count=18,
        remaining_allowance=12,
        rank=27,
    )


def test_get_stats_matches_parent_fid(store):
    stats = lookup.StatsLookup(store, FIELDS).get_stats("5")

    assert stats.today_count == 2
    assert stats.remaining_allowance == 30


def test_get_stats_accepts_numeric_user_id(store):
    assert lookup.StatsLookup(store, FIELDS).get_stats(3).rank == 27


def test_unknown_user_gets_zero_defaults(store):
    """No matching row anywhere yields zeros, not an error."""
    stats = lookup.StatsLookup(store, FIELDS, allowance_ceiling=0).get_stats("999")

    assert stats == lookup.UserStats()


def test_empty_cache_gets_zero_defaults(tmp_path):
    empty = CacheStore(tmp_path / "cache.json")

    stats = lookup.StatsLookup(empty, FIELDS).get_stats("3")

    assert stats.today_count == 0
    assert stats.rank == 0
    assert stats.remaining_allowance == 30


def test_remaining_allowance_never_negative(store):
    store.snapshot.queries["4811780"].rows = [{"fid": 3, "sent_peanut_count": 45}]

    assert lookup.StatsLookup(store, FIELDS).get_stats("3").remaining_allowance == 0


def test_get_stats_keeps_fractional_values(store):
    store.snapshot.queries["4815993"].rows = [{"fid": 3, "total_peanut_count": 340.5}]
    store.snapshot.queries["4811780"].rows = [{"fid": 3, "sent_peanut_count": "12.5"}]

    stats = lookup.StatsLookup(store, FIELDS).get_stats("3")

    assert stats.total_count == 340.5
    assert stats.sent_count == 12.5
    assert stats.remaining_allowance == 17.5


def test_allowance_ceiling_can_depend_on_user(store):
    ceilings = {"3": 100}
    stats_lookup = lookup.StatsLookup(store, FIELDS, allowance_ceiling=lambda u: ceilings.get(u, 30))

    assert stats_lookup.get_stats("3").remaining_allowance == 82


def test_get_stats_reports_cumulative_excess(store):
    store.snapshot.excess = {"3": 6}

    assert lookup.StatsLookup(store, FIELDS).get_stats("3").cumulative_excess == 6


# ---------------------------------------------------------------------------
# HashRegistry
# ---------------------------------------------------------------------------


def test_hash_registry_token_format():
    registry = lookup.HashRegistry(clock=lambda: 1700000000.5)

    token = registry.get_or_create("3")

    timestamp, user_id, suffix = token.split("-")
    assert timestamp == "1700000000500"
    assert user_id == "3"
    assert len(suffix) == 9
    assert suffix.isalnum()


def test_hash_registry_reuses_token():
    registry = lookup.HashRegistry()

    first = registry.get_or_create("3")

    assert registry.get_or_create("3") == first
    assert registry.get_or_create("4") != first
    assert len(registry) == 2
