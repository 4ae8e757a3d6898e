# rollover.py
# Periodic folding of in-memory watch time into the store's period counters.

import logging
from datetime import date, datetime, timedelta

import pytz
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from constants import (
    CRON_DAILY,
    CRON_MONTHLY,
    CRON_WEEKLY,
    FLUSH_INTERVAL_MINUTES,
    ROLLOVER_TZ,
)

log = logging.getLogger(__name__)


class Rollover:

    def __init__(self, registry, session, store, tz: str = ROLLOVER_TZ):
        self.registry = registry
        self.session  = session
        self.store    = store
        self.tz       = pytz.timezone(tz)

    def today(self) -> date:
        return datetime.now(self.tz).date()

    # ─────────────────────────  SESSION FLUSH  ───────────────────────────────
    def flush_session_time(self) -> int:
        """Push every running timer's unflushed seconds to the store.

        Counters are read and zeroed under the registry lock; the writes go out
        afterwards with the snapshotted values. Returns the number of writes.
        """
        batches = {}
        with self.registry.lock:
            for channel_id, book in self.registry.channels.items():
                deltas = []
                carried = dict(book.pending)
                book.pending.clear()
                for slot, hidden in book.slots():
                    seconds = carried.pop(slot.viewer_id, 0.0)
                    if slot.timer is not None:
                        seconds += slot.timer.take_unflushed()
                    if seconds > 0:
                        deltas.append((slot.viewer_id, hidden, seconds))
                # Carried time for viewers no longer in either partition
                deltas.extend((viewer_id, False, seconds) for viewer_id, seconds in carried.items())
                if deltas:
                    batches[channel_id] = deltas

        # Rows must exist with their display name before time lands on them
        self.registry.retry_unrecorded()

        written = 0
        for channel_id, deltas in batches.items():
            written += self.session.write_deltas(channel_id, deltas)
        if written:
            log.info("Flushed session time for %d viewer(s)", written)
        return written

    # ─────────────────────────  DAILY ROLLOVER  ──────────────────────────────
    def rollover_daily(self, day: date = None) -> None:
        """Persist every channel's daily accumulator as the series point for ``day``."""
        day = day or self.today()
        snapshots = {}
        with self.registry.lock:
            for channel_id, book in self.registry.channels.items():
                for slot, _ in book.slots():
                    if slot.timer is not None:
                        book.daily[slot.viewer_id] = (
                            book.daily.get(slot.viewer_id, 0.0) + slot.timer.take_daily()
                        )
                snapshot = {v: s for v, s in book.daily.items() if s > 0}
                book.daily = dict.fromkeys(book.daily, 0.0)
                if snapshot:
                    snapshots[channel_id] = snapshot

        for channel_id, snapshot in snapshots.items():
            try:
                self.store.append_daily_column(channel_id, day, snapshot)
            except SQLAlchemyError:
                log.exception("Daily rollover for %s failed, keeping %d viewer(s) for next time",
                              channel_id, len(snapshot))
                with self.registry.lock:
                    daily = self.registry.channels[channel_id].daily
                    for viewer_id, seconds in snapshot.items():
                        daily[viewer_id] = daily.get(viewer_id, 0.0) + seconds
        log.info("Daily rollover for %s done (%d channel(s))", day, len(snapshots))

    def _rollover_yesterday(self) -> None:
        # Fires just after local midnight, so the day being closed is yesterday
        self.rollover_daily(self.today() - timedelta(days=1))

    # ─────────────────────────  PERIOD RESETS  ───────────────────────────────
    def clear_weekly(self) -> None:
        self.store.clear_weekly_counters()
        log.info("Weekly counters cleared")

    def clear_monthly(self) -> None:
        self.store.clear_monthly_counters()
        log.info("Monthly counters cleared")

    def clear_yearly(self) -> None:
        self.store.clear_yearly_counters()
        log.info("Yearly counters cleared")

    # ─────────────────────────  SCHEDULING  ──────────────────────────────────
    def schedule(self, scheduler) -> None:
        jobs = [
            (self._rollover_yesterday, CronTrigger(timezone=self.tz, **CRON_DAILY),
             'rollover_daily', 'Daily watch-time rollover'),
            (self.clear_weekly, CronTrigger(timezone=self.tz, **CRON_WEEKLY),
             'clear_weekly', 'Clear weekly counters'),
            (self.clear_monthly, CronTrigger(timezone=self.tz, **CRON_MONTHLY),
             'clear_monthly', 'Clear monthly counters'),
            (self.flush_session_time, IntervalTrigger(minutes=FLUSH_INTERVAL_MINUTES),
             'flush_session_time', 'Flush session time'),
        ]
        for func, trigger, job_id, name in jobs:
            scheduler.add_job(
                _logged(func),
                trigger=trigger,
                id=job_id,
                name=name,
                replace_existing=True,
                coalesce=True,
            )
        log.info("Scheduled %d rollover job(s) in %s", len(jobs), self.tz.zone)


def _logged(func):
    """Wrap a job so a failure is logged and the schedule keeps running."""
    def job():
        try:
            func()
        except Exception:
            log.exception("Scheduled job %s failed", func.__name__)
    job.__name__ = func.__name__
    return job
