# registry.py
"""In-memory registry of who is watching which channel.

Every channel gets a :class:`ChannelBook` with two partitions of viewer slots:
``trackers`` (shown on the leaderboard) and ``whitelisted`` (hidden). A viewer
id lives in at most one of them. A slot is either IDLE (known viewer, not
watching right now) or ACTIVE (a running :class:`~timer.Timer`); a viewer with
no slot at all is UNKNOWN.

All mutations go through ``ViewerRegistry.lock``. Flask, the APScheduler pool
and the live-status poller run on different threads, so this single lock is
what keeps a partition move or a flush-then-discard atomic. Store writes are
issued after the lock is released, using values snapshotted under it.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError

from timer import Timer

log = logging.getLogger(__name__)


class NotFound(LookupError):
    """The channel or viewer is not in the registry."""


class Forbidden(PermissionError):
    """The caller may not act on this viewer."""


class SlotState(enum.Enum):
    UNKNOWN = "unknown"
    IDLE    = "idle"
    ACTIVE  = "active"


@dataclass
class ViewerSlot:
    viewer_id:    str
    display_name: str
    timer:        Optional[Timer] = None

    @property
    def state(self) -> SlotState:
        return SlotState.ACTIVE if self.timer is not None else SlotState.IDLE


@dataclass
class ChannelBook:
    channel_id:  str
    trackers:    dict[str, ViewerSlot] = field(default_factory=dict)
    whitelisted: dict[str, ViewerSlot] = field(default_factory=dict)
    # viewer_id -> seconds since the last daily rollover
    daily:       dict[str, float] = field(default_factory=dict)
    # viewer_id -> seconds whose store write failed, retried on next flush
    pending:     dict[str, float] = field(default_factory=dict)
    # None while offline, else the start timestamp of the current broadcast
    live_since:  Optional[str] = None
    # start timestamp of the broadcast that last went offline
    ended_since: Optional[str] = None
    # viewer ids whose record_viewer write failed, retried on next observe or flush
    unrecorded:  set = field(default_factory=set)
    subscribed:  bool = False

    def find(self, viewer_id: str) -> tuple[Optional[ViewerSlot], bool]:
        """Return ``(slot, is_whitelisted)``; slot is None when unknown."""
        if viewer_id in self.trackers:
            return self.trackers[viewer_id], False
        if viewer_id in self.whitelisted:
            return self.whitelisted[viewer_id], True
        return None, False

    def slots(self) -> Iterator[tuple[ViewerSlot, bool]]:
        for slot in list(self.trackers.values()):
            yield slot, False
        for slot in list(self.whitelisted.values()):
            yield slot, True

    def state_of(self, viewer_id: str) -> SlotState:
        slot, _ = self.find(viewer_id)
        return slot.state if slot else SlotState.UNKNOWN

    @property
    def is_live(self) -> bool:
        return self.live_since is not None


@dataclass
class Observation:
    display_name:       Optional[str] = None
    tracking:           bool = False
    needs_subscription: bool = False


class ViewerRegistry:

    def __init__(self, store, ticker, clock=time.time):
        self.store    = store
        self.ticker   = ticker
        self.clock    = clock
        self.lock     = threading.RLock()
        self.channels: dict[str, ChannelBook] = {}
        # Resolved exactly once, when the startup channel load is done
        self.ready: Future = Future()

    # ─────────────────────────────  STARTUP  ─────────────────────────────────
    def load_channel(self, channel_id: str, regular, whitelisted) -> ChannelBook:
        """Hydrate a channel from persisted ``(viewer_id, display_name)`` pairs."""
        with self.lock:
            book = self.channels.setdefault(channel_id, ChannelBook(channel_id))
            for viewer_id, name in regular:
                book.trackers[viewer_id] = ViewerSlot(viewer_id, name)
            for viewer_id, name in whitelisted:
                book.whitelisted[viewer_id] = ViewerSlot(viewer_id, name)
            return book

    def mark_ready(self) -> None:
        self.ready.set_result(sorted(self.channels))
        log.info("Registry ready with %d channel(s)", len(self.channels))

    def wait_ready(self, timeout: float) -> bool:
        try:
            self.ready.result(timeout=timeout)
        except FutureTimeout:
            return False
        return True

    # ─────────────────────────────  CHANNELS  ────────────────────────────────
    def book(self, channel_id: str) -> ChannelBook:
        book = self.channels.get(channel_id)
        if book is None:
            raise NotFound(f"unknown channel {channel_id}")
        return book

    def ensure_channel(self, channel_id: str) -> bool:
        """Create the channel's book on first sight. Returns True if it was new."""
        with self.lock:
            if channel_id in self.channels:
                return False
            self.channels[channel_id] = ChannelBook(channel_id)

        log.info("New channel %s", channel_id)
        self._persist("create_channel_tables", channel_id)
        return True

    def subscription_failed(self, channel_id: str) -> None:
        with self.lock:
            book = self.channels.get(channel_id)
            if book:
                book.subscribed = False

    def mark_subscribed(self, channel_id: str) -> None:
        with self.lock:
            self.book(channel_id).subscribed = True

    # ─────────────────────────────  VIEWERS  ─────────────────────────────────
    def observe(self, channel_id: str, viewer_id: str, display_name: str,
                is_broadcaster: bool = False) -> Observation:
        """A viewer opened (or refreshed) the panel on ``channel_id``."""
        record = None
        with self.lock:
            book = self.book(channel_id)

            # Broadcasters never accrue time on their own channel
            if is_broadcaster:
                if book.subscribed:
                    return Observation()
                book.subscribed = True
                return Observation(needs_subscription=True)

            slot, hidden = book.find(viewer_id)
            if slot is None:
                slot = ViewerSlot(viewer_id, display_name)
                book.trackers[viewer_id] = slot
                book.daily.setdefault(viewer_id, 0.0)
                record = (channel_id, viewer_id, display_name, False)
            elif slot.display_name != display_name:
                slot.display_name = display_name
                record = (channel_id, viewer_id, display_name, hidden)
            elif viewer_id in book.unrecorded:
                record = (channel_id, viewer_id, display_name, hidden)

            tracking = False
            if book.is_live:
                if slot.timer is None:
                    self._start_timer(book, slot)
                else:
                    slot.timer.unpause(self.clock())
                tracking = True

        if record:
            self._record(*record)
        return Observation(display_name=display_name, tracking=tracking)

    def toggle_whitelist(self, channel_id: str, viewer_id: str) -> bool:
        """Move a viewer between the partitions. Returns True if now whitelisted."""
        # The store swap happens under the lock so memory and the table
        # assignment can never be seen disagreeing; a failed swap changes nothing.
        with self.lock:
            book = self.book(channel_id)
            slot, hidden = book.find(viewer_id)
            if slot is None:
                raise NotFound(f"unknown viewer {viewer_id} on {channel_id}")

            if viewer_id in book.unrecorded:
                self.store.record_viewer(channel_id, viewer_id, slot.display_name, hidden)
                book.unrecorded.discard(viewer_id)
            self.store.move_viewer(channel_id, viewer_id, hidden)

            if hidden:
                book.trackers[viewer_id] = book.whitelisted.pop(viewer_id)
            else:
                book.whitelisted[viewer_id] = book.trackers.pop(viewer_id)

        log.info("Viewer %s on %s whitelisted=%s", viewer_id, channel_id, not hidden)
        return not hidden

    def toggle_tracker(self, channel_id: str, viewer_id: str,
                       acting_viewer_id: str, pause: bool) -> Timer:
        """Pause or resume a viewer's timer. Only the viewer may do this."""
        if acting_viewer_id != viewer_id:
            log.warning("Illegal attempt: %s tried to toggle %s's tracker on %s",
                        acting_viewer_id, viewer_id, channel_id)
            raise Forbidden("viewers may only pause their own timer")

        with self.lock:
            book = self.book(channel_id)
            slot, _ = book.find(viewer_id)
            if slot is None or slot.timer is None:
                raise NotFound(f"no running timer for {viewer_id} on {channel_id}")
            if pause:
                slot.timer.pause()
            else:
                slot.timer.unpause(self.clock())
            return slot.timer

    def membership(self, channel_id: str, viewer_id: str) -> bool:
        """True if the viewer is whitelisted, False if on the leaderboard."""
        with self.lock:
            slot, hidden = self.book(channel_id).find(viewer_id)
            if slot is None:
                raise NotFound(f"unknown viewer {viewer_id} on {channel_id}")
            return hidden

    def search(self, channel_id: str, substring: str) -> list[tuple[str, str, float]]:
        """Linear scan of both partitions for display names containing ``substring``."""
        needle = substring.casefold()
        with self.lock:
            book = self.book(channel_id)
            return [
                (slot.viewer_id, slot.display_name, slot.timer.time if slot.timer else 0.0)
                for slot, _ in book.slots()
                if needle in slot.display_name.casefold()
            ]

    def session_board(self, channel_id: str) -> list[dict]:
        """Current-session leaderboard, served from memory only."""
        with self.lock:
            book = self.book(channel_id)
            rows = [
                {"name": slot.display_name, **slot.timer.to_dict()}
                for slot in book.trackers.values()
                if slot.timer is not None
            ]
        rows.sort(key=lambda r: r["time"], reverse=True)
        return rows

    # ─────────────────────────────  TIMERS  ──────────────────────────────────
    def tick(self, channel_id: str, viewer_id: str) -> None:
        with self.lock:
            book = self.channels.get(channel_id)
            if book is None:
                return
            slot, _ = book.find(viewer_id)
            if slot is not None and slot.timer is not None:
                slot.timer.tick(self.clock())

    def _start_timer(self, book: ChannelBook, slot: ViewerSlot) -> None:
        slot.timer = Timer.create(slot.viewer_id, self.clock())
        channel_id, viewer_id = book.channel_id, slot.viewer_id
        self.ticker.start((channel_id, viewer_id),
                          lambda: self.tick(channel_id, viewer_id))

    def discard_timer(self, book: ChannelBook, slot: ViewerSlot) -> None:
        """Stop a slot's timer and return the slot to IDLE. Caller holds the lock."""
        if slot.timer is None:
            return
        slot.timer.stop()
        self.ticker.cancel((book.channel_id, slot.viewer_id))
        slot.timer = None

    # ─────────────────────────────  STORE  ───────────────────────────────────
    def _persist(self, operation: str, *args) -> bool:
        try:
            getattr(self.store, operation)(*args)
        except SQLAlchemyError:
            log.exception("Store %s%r failed", operation, args)
            return False
        return True

    def _record(self, channel_id: str, viewer_id: str, display_name: str,
                whitelisted: bool) -> None:
        ok = self._persist("record_viewer", channel_id, viewer_id, display_name, whitelisted)
        with self.lock:
            book = self.channels.get(channel_id)
            if book is None:
                return
            if ok:
                book.unrecorded.discard(viewer_id)
            else:
                book.unrecorded.add(viewer_id)

    def retry_unrecorded(self) -> None:
        """Re-issue every viewer record whose earlier write failed."""
        with self.lock:
            todo = [
                (channel_id, slot.viewer_id, slot.display_name, hidden)
                for channel_id, book in self.channels.items()
                for slot, hidden in book.slots()
                if slot.viewer_id in book.unrecorded
            ]
        for record in todo:
            self._record(*record)
