import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import run_for, store_down
from registry import Forbidden, NotFound, SlotState


def test_observe_offline_registers_idle_viewer(registry, store, channel, ticker):
    seen = registry.observe(channel, "alice", "Alice")

    assert seen.tracking is False
    assert registry.book(channel).state_of("alice") is SlotState.IDLE
    assert ticker.jobs == {}
    assert store.list_viewers(channel)["regular"] == [("alice", "Alice")]


def test_observe_live_starts_one_timer(registry, session, channel, ticker, clock):
    session.stream_online(channel, 1000)

    first = registry.observe(channel, "alice", "Alice")
    timer = registry.book(channel).trackers["alice"].timer
    second = registry.observe(channel, "alice", "Alice")

    assert first.tracking and second.tracking
    assert registry.book(channel).trackers["alice"].timer is timer
    assert list(ticker.jobs) == [(channel, "alice")]


def test_reobserve_unpauses(registry, session, channel, ticker, clock):
    session.stream_online(channel, 1000)
    registry.observe(channel, "alice", "Alice")
    registry.toggle_tracker(channel, "alice", "alice", pause=True)
    clock.advance(30)

    registry.observe(channel, "alice", "Alice")
    run_for(clock, ticker, 2)

    assert registry.book(channel).trackers["alice"].timer.time == 2.0


def test_rename_updates_label(registry, store, channel):
    registry.observe(channel, "alice", "Alice")
    registry.observe(channel, "alice", "AliceTheGreat")

    assert registry.book(channel).trackers["alice"].display_name == "AliceTheGreat"
    assert store.list_viewers(channel)["regular"] == [("alice", "AliceTheGreat")]


def test_broadcaster_is_never_tracked(registry, session, channel, ticker):
    session.stream_online(channel, 1000)

    first  = registry.observe(channel, "abc", "", is_broadcaster=True)
    second = registry.observe(channel, "abc", "", is_broadcaster=True)

    assert first.needs_subscription is True
    assert second.needs_subscription is False
    assert registry.book(channel).state_of("abc") is SlotState.UNKNOWN
    assert ticker.jobs == {}


def test_observe_unknown_channel(registry):
    with pytest.raises(NotFound):
        registry.observe("nope", "alice", "Alice")


def test_whitelist_toggles_keep_partitions_exclusive(registry, store, channel):
    registry.observe(channel, "alice", "Alice")
    registry.observe(channel, "bob", "Bob")

    for expected in (True, False, True, False, True):
        assert registry.toggle_whitelist(channel, "alice") is expected
        book = registry.book(channel)
        assert ("alice" in book.trackers) != ("alice" in book.whitelisted)

    book = registry.book(channel)
    assert set(book.trackers) == {"bob"}
    assert set(book.whitelisted) == {"alice"}
    assert store.list_viewers(channel)["whitelisted"] == [("alice", "Alice")]


def test_whitelist_keeps_running_timer(registry, session, channel, ticker, clock):
    session.stream_online(channel, 1000)
    registry.observe(channel, "alice", "Alice")
    run_for(clock, ticker, 3)

    registry.toggle_whitelist(channel, "alice")
    run_for(clock, ticker, 2)

    assert registry.book(channel).whitelisted["alice"].timer.time == 5.0


def test_whitelist_unknown_viewer(registry, channel):
    with pytest.raises(NotFound):
        registry.toggle_whitelist(channel, "ghost")


def test_whitelist_store_failure_changes_nothing(registry, store, channel, monkeypatch):
    registry.observe(channel, "alice", "Alice")
    monkeypatch.setattr(store, "move_viewer", store_down)

    with pytest.raises(SQLAlchemyError):
        registry.toggle_whitelist(channel, "alice")

    assert "alice" in registry.book(channel).trackers
    assert "alice" not in registry.book(channel).whitelisted


def test_toggle_tracker_pauses_and_resumes(registry, session, channel, ticker, clock):
    session.stream_online(channel, 1000)
    registry.observe(channel, "alice", "Alice")
    run_for(clock, ticker, 2)

    timer = registry.toggle_tracker(channel, "alice", "alice", pause=True)
    run_for(clock, ticker, 5)
    assert timer.paused and timer.time == 2.0

    registry.toggle_tracker(channel, "alice", "alice", pause=False)
    run_for(clock, ticker, 1)
    assert timer.time == 3.0


def test_toggle_tracker_of_someone_else(registry, session, channel):
    session.stream_online(channel, 1000)
    registry.observe(channel, "alice", "Alice")

    with pytest.raises(Forbidden):
        registry.toggle_tracker(channel, "alice", "mallory", pause=True)
    assert registry.book(channel).trackers["alice"].timer.paused is False


def test_toggle_tracker_without_timer(registry, channel):
    registry.observe(channel, "alice", "Alice")

    with pytest.raises(NotFound):
        registry.toggle_tracker(channel, "alice", "alice", pause=True)


def test_search_is_case_insensitive_and_spans_partitions(registry, channel):
    registry.observe(channel, "alice", "Alice")
    registry.observe(channel, "malice", "Malice")
    registry.observe(channel, "bob", "Bob")
    registry.toggle_whitelist(channel, "malice")

    hits = registry.search(channel, "ALI")

    assert sorted(h[0] for h in hits) == ["alice", "malice"]
    assert all(h[2] == 0.0 for h in hits)


def test_session_board_is_sorted_and_hides_whitelisted(registry, session, channel,
                                                       ticker, clock):
    session.stream_online(channel, 1000)
    registry.observe(channel, "alice", "Alice")
    run_for(clock, ticker, 3)
    registry.observe(channel, "bob", "Bob")
    registry.observe(channel, "carol", "Carol")
    run_for(clock, ticker, 1)
    registry.toggle_whitelist(channel, "carol")

    board = registry.session_board(channel)

    assert [row["viewer_id"] for row in board] == ["alice", "bob"]
    assert board[0] == {"name": "Alice", "viewer_id": "alice", "time": 4.0, "paused": False}


def test_load_channel_hydrates_partitions(registry):
    book = registry.load_channel("xyz", [("alice", "Alice")], [("bob", "Bob")])

    assert book.state_of("alice") is SlotState.IDLE
    assert registry.membership("xyz", "bob") is True
    assert registry.membership("xyz", "alice") is False


def test_wait_ready_times_out_until_marked(services):
    from concurrent.futures import Future

    services.registry.ready = Future()
    assert services.registry.wait_ready(0.01) is False
    services.registry.mark_ready()
    assert services.registry.wait_ready(0.01) is True


def test_failed_viewer_record_is_retried_on_next_observe(registry, store, channel,
                                                         monkeypatch):
    with monkeypatch.context() as m:
        m.setattr(store, "record_viewer", store_down)
        registry.observe(channel, "u42", "Alice")
    assert registry.book(channel).unrecorded == {"u42"}

    registry.observe(channel, "u42", "Alice")

    assert registry.book(channel).unrecorded == set()
    assert store.list_viewers(channel)["regular"] == [("u42", "Alice")]


def test_failed_viewer_record_keeps_its_name_through_a_flush(registry, session, store,
                                                             rollover, channel, ticker,
                                                             clock, monkeypatch):
    session.stream_online(channel, 1000)
    with monkeypatch.context() as m:
        m.setattr(store, "record_viewer", store_down)
        registry.observe(channel, "u42", "Alice")
        registry.observe(channel, "u42", "Alice")
    run_for(clock, ticker, 5)

    rollover.flush_session_time()

    assert store.query_period_totals(channel, "all_time") == [("u42", "Alice", 5.0)]
    assert registry.book(channel).unrecorded == set()


def test_whitelist_after_failed_viewer_record(registry, store, channel, monkeypatch):
    with monkeypatch.context() as m:
        m.setattr(store, "record_viewer", store_down)
        registry.observe(channel, "u42", "Alice")

    assert registry.toggle_whitelist(channel, "u42") is True
    assert store.list_viewers(channel)["whitelisted"] == [("u42", "Alice")]
