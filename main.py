# main.py
import asyncio
import contextlib
import logging
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler

from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError

from board import board, subscribe_channel
from constants import ROLLOVER_TZ
from db import db
from hooks import SeenMessages, hooks
from registry import ViewerRegistry
from rollover import Rollover
from session import SessionController
from store import Store
from ticker import Ticker
from twitch_api import TwitchAPI

# Load environment variables (including DATABASE_URL)
load_dotenv()

log = logging.getLogger("main")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging() -> None:
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    log_file = os.getenv("LOG_FILE", "server.log")
    if log_file:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=int(os.getenv("LOG_MAX_BYTES", 5 * 1024 * 1024)),
            backupCount=int(os.getenv("LOG_BACKUPS", 3)),
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logging.getLogger('werkzeug').setLevel(logging.ERROR)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)


def create_app(config: dict = None, include_migrate: bool = False):
    app = Flask(__name__)

    # 1) Database configuration
    uri = os.getenv("DATABASE_URL", "sqlite:///local.db")
    if uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    app.config["SQLALCHEMY_DATABASE_URI"] = uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # 2) Twitch credentials
    app.config["EXTENSION_SECRET"]      = os.getenv("EXTENSION_SECRET", "")
    app.config["EXTENSION_CLIENT_ID"]   = os.getenv("EXTENSION_CLIENT_ID", "")
    app.config["TWITCH_CLIENT_ID"]      = os.getenv("TWITCH_CLIENT_ID", "")
    app.config["TWITCH_CLIENT_SECRET"]  = os.getenv("TWITCH_CLIENT_SECRET", "")
    app.config["EVENTSUB_SECRET"]       = os.getenv("EVENTSUB_SECRET", "")
    app.config["EVENTSUB_CALLBACK_URL"] = os.getenv("EVENTSUB_CALLBACK_URL", "")
    app.config["ROLLOVER_TZ"]           = os.getenv("ROLLOVER_TZ", ROLLOVER_TZ)

    if config:
        app.config.update(config)

    # 3) Initialize DB + migrations
    db.init_app(app)
    if include_migrate:
        from flask_migrate import Migrate
        Migrate(app, db)

    # The panel is served from Twitch's extension CDN, a different origin
    CORS(app)

    app.register_blueprint(board)
    app.register_blueprint(hooks)

    @app.route("/")
    def home():
        return "Watch-time backend is running."

    @app.cli.command("clear-year")
    def clear_year():
        """Zero every viewer's yearly counter."""
        count = Store(app).clear_yearly_counters()
        print(f"Cleared yearly counters for {count} viewer(s)")

    return app


# ─────────────────────────────────────────────────────────────────────────────
# Service wiring
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class Services:
    store:     Store
    registry:  ViewerRegistry
    session:   SessionController
    rollover:  Rollover
    twitch:    TwitchAPI
    scheduler: BackgroundScheduler
    ticker:    Ticker
    seen:      SeenMessages = field(default_factory=SeenMessages)


def build_services(app, scheduler=None, ticker=None, twitch=None, clock=time.time) -> Services:
    scheduler = scheduler or BackgroundScheduler(timezone=app.config["ROLLOVER_TZ"])
    ticker    = ticker or Ticker(scheduler)
    twitch    = twitch or TwitchAPI(
        app.config["TWITCH_CLIENT_ID"],
        app.config["TWITCH_CLIENT_SECRET"],
        callback_url=app.config["EVENTSUB_CALLBACK_URL"],
        eventsub_secret=app.config["EVENTSUB_SECRET"],
    )

    store    = Store(app)
    registry = ViewerRegistry(store, ticker, clock=clock)
    session  = SessionController(registry, store)
    rollover = Rollover(registry, session, store, tz=app.config["ROLLOVER_TZ"])

    services = Services(store, registry, session, rollover, twitch, scheduler, ticker)
    app.extensions["watchtime"] = services
    return services


def load_registry(app, services: Services, subscribe: bool = True) -> None:
    """Hydrate every known channel from the store and open the request gate.

    Raises ``SQLAlchemyError`` if the store cannot be reached.
    """
    store    = services.store
    registry = services.registry

    store.ping()
    with app.app_context():
        db.create_all()

    channels = store.list_channels()
    for channel_id in channels:
        viewers = store.list_viewers(channel_id)
        registry.load_channel(channel_id, viewers["regular"], viewers["whitelisted"])
    registry.mark_ready()

    if not subscribe:
        return
    if not services.twitch.callback_url:
        log.warning("EVENTSUB_CALLBACK_URL not set, skipping live-status subscriptions")
        return
    for channel_id in channels:
        if subscribe_channel(services, channel_id):
            registry.mark_subscribed(channel_id)


# ─────────────────────────────────────────────────────────────────────────────
# Flask (runs alongside the watcher)
# ─────────────────────────────────────────────────────────────────────────────
def run_flask(app):
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port, debug=False, use_reloader=False, threaded=True)


# ─────────────────────────────────────────────────────────────────────────────
# Watcher supervisor
# ─────────────────────────────────────────────────────────────────────────────
async def run_watcher(app, services: Services, stop_event: asyncio.Event):
    if os.getenv("RUN_WATCHER", "1") != "1":
        # Webhooks only; idle until shutdown
        await stop_event.wait()
        return

    from watcher import LiveStatusWatcher

    watcher = LiveStatusWatcher.from_credentials(
        services.session, services.registry,
        app.config["TWITCH_CLIENT_ID"], app.config["TWITCH_CLIENT_SECRET"],
    )
    watcher.start()
    try:
        await stop_event.wait()
    finally:
        await watcher.close()


# ─────────────────────────────────────────────────────────────────────────────
# Entrypoint
# ─────────────────────────────────────────────────────────────────────────────
def main():
    configure_logging()
    app      = create_app(include_migrate=True)
    services = build_services(app)

    try:
        load_registry(app, services)
    except SQLAlchemyError:
        log.critical("Store unreachable at startup, exiting", exc_info=True)
        sys.exit(1)

    services.rollover.schedule(services.scheduler)
    services.scheduler.start()

    # 1) start Flask in a background thread
    threading.Thread(target=run_flask, args=(app,), daemon=True).start()

    # 2) run the watcher on this thread's event loop
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        log.info("Signal %s received, shutting down", signum)
        loop.call_soon_threadsafe(stop_event.set)

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(ValueError, OSError):
            signal.signal(sig, _handle_signal)

    try:
        loop.run_until_complete(run_watcher(app, services, stop_event))
    finally:
        services.session.shutdown(services.rollover)
        services.scheduler.shutdown(wait=False)
        loop.run_until_complete(loop.shutdown_asyncgens())
        asyncio.set_event_loop(None)
        loop.close()


if __name__ == "__main__":
    main()
