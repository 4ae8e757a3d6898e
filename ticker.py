# ticker.py
# Owns the recurring tick of every running timer, one APScheduler job each.

import logging

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from constants import TICK_SECONDS

log = logging.getLogger(__name__)


def _job_id(key: tuple[str, str]) -> str:
    channel_id, viewer_id = key
    return f"tick:{channel_id}:{viewer_id}"


class Ticker:
    """Maps ``(channel_id, viewer_id)`` to a scheduled tick job."""

    def __init__(self, scheduler, seconds: float = TICK_SECONDS):
        self.scheduler = scheduler
        self.seconds   = seconds

    def start(self, key: tuple[str, str], callback) -> None:
        self.scheduler.add_job(
            callback,
            trigger=IntervalTrigger(seconds=self.seconds),
            id=_job_id(key),
            name=f"Tick {key[1]} on {key[0]}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    def cancel(self, key: tuple[str, str]) -> None:
        try:
            self.scheduler.remove_job(_job_id(key))
        except JobLookupError:
            log.debug("No tick job for %s", key)
