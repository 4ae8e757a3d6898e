# timer.py
"""Per-viewer watch-time accrual.

A ``Timer`` is a plain record: it knows nothing about how it gets ticked.
The recurring tick lives in :mod:`ticker`, keyed by ``(channel_id, viewer_id)``,
so a timer can be handed to ``jsonify`` as-is through :meth:`Timer.to_dict`.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Timer:
    viewer_id:      str
    time:           float = 0.0     # total seconds since creation
    time_not_added: float = 0.0     # seconds not yet written to the store
    daily_time:     float = 0.0     # seconds since the last daily rollover
    paused:         bool  = False
    prev_now:       float = 0.0
    stopped:        bool  = False

    @classmethod
    def create(cls, viewer_id: str, now: float) -> "Timer":
        return cls(viewer_id=viewer_id, prev_now=now)

    def tick(self, now: float) -> float:
        """Accrue the wall-clock time since the previous tick.

        Returns the delta that was added (0 while paused or stopped). A clock
        stepping backwards adds nothing rather than a negative delta.
        """
        if self.paused or self.stopped:
            return 0.0
        delta = max(now - self.prev_now, 0.0)
        self.prev_now = now
        self.time += delta
        self.time_not_added += delta
        self.daily_time += delta
        return delta

    def pause(self) -> None:
        self.paused = True

    def unpause(self, now: float) -> None:
        # Reset prev_now so the paused interval is never counted
        self.paused = False
        self.prev_now = now

    def stop(self) -> None:
        self.stopped = True

    def take_unflushed(self) -> float:
        """Read-and-zero the seconds not yet written to the store."""
        delta, self.time_not_added = self.time_not_added, 0.0
        return delta

    def take_daily(self) -> float:
        """Read-and-zero the seconds accrued since the last daily rollover."""
        delta, self.daily_time = self.daily_time, 0.0
        return delta

    def to_dict(self) -> dict:
        return {
            "viewer_id": self.viewer_id,
            "time":      round(self.time, 3),
            "paused":    self.paused,
        }
