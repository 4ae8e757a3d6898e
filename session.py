# session.py
# Stream online/offline state machine per channel:  Offline  <->  Live(started_at)

import logging
import re
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

log = logging.getLogger(__name__)

# Twitch timestamps carry anywhere up to nanoseconds; datetime wants exactly six digits
_FRACTION_RE = re.compile(r"\.(\d+)")


def _microseconds(match) -> str:
    return "." + match.group(1)[:6].ljust(6, "0")


def parse_timestamp(raw: str) -> datetime:
    cleaned = _FRACTION_RE.sub(_microseconds, raw.strip()).replace("Z", "+00:00")
    parsed = datetime.fromisoformat(cleaned)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def session_key(started_at: Union[str, datetime, int, float]) -> str:
    """Canonical form of a broadcast start time, so a webhook's string and the
    poller's datetime for the same broadcast compare equal."""
    if isinstance(started_at, (int, float)):
        moment = datetime.fromtimestamp(started_at, timezone.utc)
    elif isinstance(started_at, datetime):
        moment = started_at if started_at.tzinfo else started_at.replace(tzinfo=timezone.utc)
    else:
        try:
            moment = parse_timestamp(started_at)
        except ValueError:
            return started_at
    return moment.astimezone(timezone.utc).replace(microsecond=0).isoformat()


class SessionController:

    def __init__(self, registry, store):
        self.registry = registry
        self.store    = store

    def state(self, channel_id: str) -> Optional[str]:
        """None while offline, else the start timestamp of the live broadcast."""
        with self.registry.lock:
            book = self.registry.channels.get(channel_id)
            return book.live_since if book else None

    # ─────────────────────────────  ONLINE  ──────────────────────────────────
    def stream_online(self, channel_id: str, started_at, from_poll: bool = False) -> None:
        """Apply a live notification.

        ``from_poll`` marks a Helix poll result. Helix keeps listing a stream for
        a while after its offline webhook, so a poll naming the broadcast that
        just ended is ignored.
        """
        started_at = session_key(started_at)
        registry = self.registry
        registry.ensure_channel(channel_id)
        with registry.lock:
            book = registry.channels[channel_id]
            previous = book.live_since
            if previous == started_at:
                return
            if from_poll and previous is None and book.ended_since == started_at:
                log.debug("Channel %s: stale poll for ended broadcast %s ignored",
                          channel_id, started_at)
                return
            book.live_since = started_at

            if previous is None:
                log.info("Channel %s went live at %s", channel_id, started_at)
                return

            # Restarted broadcast without an offline in between: viewers from
            # the old session are stale, drop their timers without flushing.
            dropped = 0
            for slot, _ in book.slots():
                if slot.timer is not None:
                    registry.discard_timer(book, slot)
                    dropped += 1

        log.info("Channel %s restarted (%s -> %s), discarded %d tracker(s)",
                 channel_id, previous, started_at, dropped)

    # ─────────────────────────────  OFFLINE  ─────────────────────────────────
    def stream_offline(self, channel_id: str) -> None:
        registry = self.registry
        with registry.lock:
            book = registry.channels.get(channel_id)
            if book is None or not book.is_live:
                return
            book.ended_since = book.live_since
            book.live_since  = None

            deltas = []
            for slot, hidden in book.slots():
                # A rollover may have raced us here; the slot can already be idle
                timer = slot.timer
                if timer is None:
                    continue
                book.daily[slot.viewer_id] = book.daily.get(slot.viewer_id, 0.0) + timer.take_daily()
                seconds = timer.take_unflushed() + book.pending.pop(slot.viewer_id, 0.0)
                if seconds > 0:
                    deltas.append((slot.viewer_id, hidden, seconds))
                registry.discard_timer(book, slot)

        log.info("Channel %s went offline, flushing %d viewer(s)", channel_id, len(deltas))
        registry.retry_unrecorded()
        self.write_deltas(channel_id, deltas)

    def write_deltas(self, channel_id: str, deltas) -> int:
        """Add snapshotted session seconds to the store.

        A failed write is carried over in the channel's ``pending`` bucket and
        retried by the next flush. Returns the number of successful writes.
        """
        written = 0
        for viewer_id, hidden, seconds in deltas:
            try:
                self.store.apply_time_delta(channel_id, viewer_id, hidden,
                                            seconds, seconds, seconds, seconds)
                written += 1
            except SQLAlchemyError:
                log.exception("Could not add %.1fs for %s on %s, keeping it for the next flush",
                              seconds, viewer_id, channel_id)
                with self.registry.lock:
                    book = self.registry.channels[channel_id]
                    book.pending[viewer_id] = book.pending.get(viewer_id, 0.0) + seconds
        return written

    # ─────────────────────────────  SHUTDOWN  ────────────────────────────────
    def shutdown(self, rollover) -> None:
        """Final flush, persist daily totals, then stop every timer."""
        rollover.flush_session_time()
        rollover.rollover_daily()

        registry = self.registry
        with registry.lock:
            for book in registry.channels.values():
                for slot, _ in book.slots():
                    registry.discard_timer(book, slot)
        log.info("Session controller shut down")
