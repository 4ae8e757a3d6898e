# store.py
"""Persistence for watch-time totals, backed by Flask-SQLAlchemy.

Every method opens its own app context so it can be called from Flask
handlers, APScheduler threads and the asyncio poller alike. Write methods
commit before returning and roll back on failure, letting the
``SQLAlchemyError`` propagate to the caller.
"""

from datetime import date

from sqlalchemy import text

from constants import PERIODS
from db import db
from models import Channel, DailyTime, ViewerTime


class Store:

    def __init__(self, app):
        self.app = app

    def _commit(self):
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    def ping(self) -> None:
        with self.app.app_context():
            db.session.execute(text("SELECT 1"))

    # ─────────────────────────────  CHANNELS  ────────────────────────────────
    def create_channel_tables(self, channel_id: str) -> None:
        with self.app.app_context():
            if db.session.get(Channel, channel_id) is None:
                db.session.add(Channel(channel_id=channel_id))
                self._commit()

    def list_channels(self) -> list[str]:
        with self.app.app_context():
            return [c.channel_id for c in Channel.query.order_by(Channel.channel_id)]

    # ─────────────────────────────  VIEWERS  ─────────────────────────────────
    def record_viewer(self, channel_id: str, viewer_id: str, display_name: str,
                      whitelisted: bool = False) -> None:
        """Insert a zeroed row for a new viewer, or refresh a known viewer's name."""
        with self.app.app_context():
            row = db.session.get(ViewerTime, (channel_id, viewer_id))
            if row is None:
                db.session.add(ViewerTime(
                    channel_id   = channel_id,
                    viewer_id    = viewer_id,
                    display_name = display_name,
                    whitelisted  = whitelisted,
                    week=0.0, month=0.0, year=0.0, all_time=0.0,
                ))
            else:
                row.display_name = display_name
            self._commit()

    def list_viewers(self, channel_id: str) -> dict:
        """``{"regular": [(id, name)], "whitelisted": [(id, name)]}``"""
        with self.app.app_context():
            rows = ViewerTime.query.filter_by(channel_id=channel_id).all()
        return {
            "regular":     [(r.viewer_id, r.display_name) for r in rows if not r.whitelisted],
            "whitelisted": [(r.viewer_id, r.display_name) for r in rows if r.whitelisted],
        }

    def move_viewer(self, channel_id: str, viewer_id: str, from_whitelisted: bool) -> None:
        with self.app.app_context():
            row = db.session.get(ViewerTime, (channel_id, viewer_id))
            if row is None:
                raise LookupError(f"no stored row for {viewer_id} on {channel_id}")
            row.whitelisted = not from_whitelisted
            self._commit()

    # ─────────────────────────────  TIME  ────────────────────────────────────
    def apply_time_delta(self, channel_id: str, viewer_id: str, whitelisted: bool,
                         week: float, month: float, year: float, all_time: float) -> None:
        with self.app.app_context():
            row = db.session.get(ViewerTime, (channel_id, viewer_id))
            if row is None:
                # Viewer row was never written (e.g. the insert failed earlier)
                row = ViewerTime(channel_id=channel_id, viewer_id=viewer_id,
                                 display_name=viewer_id, whitelisted=whitelisted,
                                 week=0.0, month=0.0, year=0.0, all_time=0.0)
                db.session.add(row)
            row.week     += week
            row.month    += month
            row.year     += year
            row.all_time += all_time
            self._commit()

    def append_daily_column(self, channel_id: str, day: date, seconds_by_viewer: dict) -> None:
        """Record one day of the graph series. Merges into an existing day."""
        with self.app.app_context():
            for viewer_id, seconds in seconds_by_viewer.items():
                row = db.session.get(DailyTime, (channel_id, viewer_id, day))
                if row is None:
                    db.session.add(DailyTime(channel_id=channel_id, viewer_id=viewer_id,
                                             day=day, seconds=seconds))
                else:
                    row.seconds += seconds
            self._commit()

    def _clear(self, period: str) -> int:
        with self.app.app_context():
            count = ViewerTime.query.update({period: 0.0})
            self._commit()
            return count

    def clear_weekly_counters(self) -> int:
        return self._clear("week")

    def clear_monthly_counters(self) -> int:
        return self._clear("month")

    def clear_yearly_counters(self) -> int:
        return self._clear("year")

    # ─────────────────────────────  QUERIES  ─────────────────────────────────
    def query_period_totals(self, channel_id: str, period: str) -> list[tuple[str, str, float]]:
        """Leaderboard for ``period``: ``(viewer_id, name, seconds)``, best first.

        Whitelisted viewers are left out.
        """
        if period not in PERIODS:
            raise ValueError(f"unknown period {period!r}")
        column = getattr(ViewerTime, period)
        with self.app.app_context():
            rows = (
                ViewerTime.query
                .filter_by(channel_id=channel_id, whitelisted=False)
                .order_by(column.desc(), ViewerTime.display_name)
                .all()
            )
            return [(r.viewer_id, r.display_name, getattr(r, period)) for r in rows]

    def query_individual_stats(self, channel_id: str, viewer_id: str,
                               whitelisted: bool = None) -> dict:
        with self.app.app_context():
            row = db.session.get(ViewerTime, (channel_id, viewer_id))
            if row is None or (whitelisted is not None and row.whitelisted != whitelisted):
                raise LookupError(f"no stats for {viewer_id} on {channel_id}")
            series = (
                DailyTime.query
                .filter_by(channel_id=channel_id, viewer_id=viewer_id)
                .order_by(DailyTime.day)
                .all()
            )
            return {
                "viewer_id":    row.viewer_id,
                "name":         row.display_name,
                "whitelisted":  row.whitelisted,
                "week":         row.week,
                "month":        row.month,
                "year":         row.year,
                "all_time":     row.all_time,
                "daily":        [{"day": str(d.day), "seconds": d.seconds} for d in series],
            }
