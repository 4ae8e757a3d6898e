import base64
import hashlib
import hmac
import time
from datetime import datetime, timezone

import jwt
import pytest
from sqlalchemy.exc import SQLAlchemyError

from db import db
from main import build_services, create_app, load_registry
from twitch_api import TwitchError

EXTENSION_SECRET = b"extension-secret-for-tests-0123456789"
EVENTSUB_SECRET  = "eventsub-secret-for-tests"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualTicker:
    """Stands in for the APScheduler ticker; jobs fire only when asked."""

    def __init__(self):
        self.jobs = {}

    def start(self, key, callback):
        self.jobs[key] = callback

    def cancel(self, key):
        self.jobs.pop(key, None)

    def fire_all(self):
        for callback in list(self.jobs.values()):
            callback()


class FakeTwitch:
    callback_url = ""

    def __init__(self):
        self.names       = {}
        self.subscribed  = []
        self.lookup_down = False

    def resolve_display_name(self, user_id):
        if self.lookup_down:
            raise TwitchError("helix unavailable")
        return self.names.get(user_id, user_id)

    def subscribe_to_live_status(self, channel_id):
        self.subscribed.append(channel_id)


def store_down(*args, **kwargs):
    raise SQLAlchemyError("database unavailable")


def make_token(user_id="alice", channel_id="abc", role="viewer", expires_in=300,
               secret=EXTENSION_SECRET):
    payload = {"channel_id": channel_id, "role": role,
               "exp": int(time.time()) + expires_in}
    if user_id is not None:
        payload["user_id"] = user_id
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(**kwargs) -> dict:
    return {"Authorization": f"Bearer {make_token(**kwargs)}"}


def eventsub_headers(body: bytes, message_id: str, message_type: str = "notification",
                     timestamp: str = None, secret: str = EVENTSUB_SECRET) -> dict:
    timestamp = timestamp or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    digest = hmac.new(secret.encode(), message_id.encode() + timestamp.encode() + body,
                      hashlib.sha256).hexdigest()
    return {
        "Twitch-Eventsub-Message-Id":        message_id,
        "Twitch-Eventsub-Message-Timestamp": timestamp,
        "Twitch-Eventsub-Message-Signature": f"sha256={digest}",
        "Twitch-Eventsub-Message-Type":      message_type,
        "Content-Type":                      "application/json",
    }


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture
def app():
    app = create_app({
        "TESTING":                 True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "EXTENSION_SECRET":        base64.b64encode(EXTENSION_SECRET).decode(),
        "EVENTSUB_SECRET":         EVENTSUB_SECRET,
        "ROLLOVER_TZ":             "UTC",
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ticker():
    return ManualTicker()


@pytest.fixture
def twitch():
    return FakeTwitch()


@pytest.fixture
def services(app, clock, ticker, twitch):
    services = build_services(app, ticker=ticker, twitch=twitch, clock=clock)
    load_registry(app, services, subscribe=False)
    return services


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def registry(services):
    return services.registry


@pytest.fixture
def session(services):
    return services.session


@pytest.fixture
def rollover(services):
    return services.rollover


@pytest.fixture
def client(app, services):
    return app.test_client()


@pytest.fixture
def channel(registry):
    registry.ensure_channel("abc")
    return "abc"


def run_for(clock, ticker, seconds: int) -> None:
    """Advance the clock one second at a time, ticking every running timer."""
    for _ in range(seconds):
        clock.advance(1.0)
        ticker.fire_all()
