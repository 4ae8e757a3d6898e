from datetime import date

import pytest


@pytest.fixture
def seeded(store):
    store.create_channel_tables("abc")
    store.record_viewer("abc", "alice", "Alice")
    store.record_viewer("abc", "bob", "Bob")
    store.record_viewer("abc", "carol", "Carol", whitelisted=True)
    store.apply_time_delta("abc", "alice", False, 10.0, 20.0, 30.0, 40.0)
    store.apply_time_delta("abc", "bob", False, 50.0, 5.0, 5.0, 50.0)
    store.apply_time_delta("abc", "carol", True, 99.0, 99.0, 99.0, 99.0)
    return store


def test_create_channel_is_idempotent(store):
    store.create_channel_tables("abc")
    store.create_channel_tables("abc")
    store.create_channel_tables("def")

    assert store.list_channels() == ["abc", "def"]


def test_record_viewer_refreshes_name_only(seeded):
    seeded.record_viewer("abc", "alice", "Alicia")

    stats = seeded.query_individual_stats("abc", "alice")
    assert stats["name"] == "Alicia"
    assert stats["all_time"] == 40.0


def test_list_viewers_splits_by_membership(seeded):
    viewers = seeded.list_viewers("abc")

    assert sorted(viewers["regular"]) == [("alice", "Alice"), ("bob", "Bob")]
    assert viewers["whitelisted"] == [("carol", "Carol")]


def test_period_totals_exclude_whitelisted_and_sort_descending(seeded):
    assert seeded.query_period_totals("abc", "week") == [
        ("bob", "Bob", 50.0), ("alice", "Alice", 10.0),
    ]
    assert [row[0] for row in seeded.query_period_totals("abc", "year")] == ["alice", "bob"]


def test_period_totals_reject_unknown_period(seeded):
    with pytest.raises(ValueError):
        seeded.query_period_totals("abc", "decade")


def test_apply_time_delta_creates_missing_row(store):
    store.create_channel_tables("abc")
    store.apply_time_delta("abc", "dave", False, 1.0, 1.0, 1.0, 1.0)
    store.apply_time_delta("abc", "dave", False, 2.5, 2.5, 2.5, 2.5)

    stats = store.query_individual_stats("abc", "dave")
    assert stats["name"] == "dave"
    assert stats["all_time"] == 3.5


def test_move_viewer(seeded):
    seeded.move_viewer("abc", "alice", from_whitelisted=False)

    assert seeded.query_individual_stats("abc", "alice")["whitelisted"] is True
    assert [row[0] for row in seeded.query_period_totals("abc", "week")] == ["bob"]


def test_move_unknown_viewer(seeded):
    with pytest.raises(LookupError):
        seeded.move_viewer("abc", "ghost", from_whitelisted=False)


def test_daily_column_merges_into_existing_day(seeded):
    seeded.append_daily_column("abc", date(2024, 3, 2), {"alice": 5.0})
    seeded.append_daily_column("abc", date(2024, 3, 1), {"alice": 3.0, "bob": 1.0})
    seeded.append_daily_column("abc", date(2024, 3, 2), {"alice": 2.0})

    daily = seeded.query_individual_stats("abc", "alice")["daily"]
    assert daily == [
        {"day": "2024-03-01", "seconds": 3.0},
        {"day": "2024-03-02", "seconds": 7.0},
    ]


def test_individual_stats_respects_membership(seeded):
    assert seeded.query_individual_stats("abc", "carol", whitelisted=True)["week"] == 99.0

    with pytest.raises(LookupError):
        seeded.query_individual_stats("abc", "carol", whitelisted=False)
    with pytest.raises(LookupError):
        seeded.query_individual_stats("abc", "ghost")


def test_clear_weekly_counts_rows(seeded):
    assert seeded.clear_weekly_counters() == 3
    assert seeded.query_period_totals("abc", "week") == [
        ("alice", "Alice", 0.0), ("bob", "Bob", 0.0),
    ]


def test_ping(store):
    store.ping()
