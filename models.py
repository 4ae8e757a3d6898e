# models.py

from db import db


class Channel(db.Model):
    """A broadcaster whose viewers are being tracked."""

    __tablename__ = 'channels'

    # String: Twitch channel id (same as the broadcaster's user id)
    channel_id = db.Column(
        db.String(50),
        primary_key=True
    )  # e.g. "23161357"

    created_at = db.Column(
        db.DateTime,
        nullable=False,
        server_default=db.func.now()
    )

    def __repr__(self):
        return f"<Channel id={self.channel_id!r}>"


class ViewerTime(db.Model):
    __tablename__ = 'viewer_times'

    channel_id = db.Column(
        db.String(50),
        db.ForeignKey('channels.channel_id'),
        primary_key=True
    )

    # String: stable Twitch user id of the viewer
    viewer_id = db.Column(
        db.String(50),
        primary_key=True
    )  # e.g. "44322889"

    # String: last seen display name, only a label
    display_name = db.Column(
        db.String(64),
        nullable=False,
        index=True
    )  # e.g. "alice"

    # Boolean: hidden from the public leaderboard
    whitelisted = db.Column(
        db.Boolean,
        nullable=False,
        default=False
    )

    # Float: watched seconds per period
    week     = db.Column(db.Float, nullable=False, default=0.0)
    month    = db.Column(db.Float, nullable=False, default=0.0)
    year     = db.Column(db.Float, nullable=False, default=0.0)
    all_time = db.Column(db.Float, nullable=False, default=0.0)

    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<ViewerTime channel={self.channel_id!r} viewer={self.display_name!r}>"


class DailyTime(db.Model):
    """One point of a viewer's daily watch-time graph."""

    __tablename__ = 'daily_times'

    channel_id = db.Column(
        db.String(50),
        db.ForeignKey('channels.channel_id'),
        primary_key=True
    )
    viewer_id = db.Column(
        db.String(50),
        primary_key=True
    )

    # Date: calendar day the seconds were watched on (rollover time zone)
    day = db.Column(
        db.Date,
        primary_key=True,
        index=True
    )  # e.g. date(2025, 6, 8)

    seconds = db.Column(
        db.Float,
        nullable=False,
        default=0.0
    )  # e.g. 5423.7

    def __repr__(self):
        return f"<DailyTime viewer={self.viewer_id!r} day={self.day!r}>"
