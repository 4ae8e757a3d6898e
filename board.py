# board.py – endpoints behind the extension panel

import logging

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from auth import require_identity
from constants import PERIODS, READY_TIMEOUT_SECONDS, SESSION_PERIOD
from registry import Forbidden
from twitch_api import TwitchError

log = logging.getLogger(__name__)

board = Blueprint("board", __name__, url_prefix="/board")


def _services():
    return current_app.extensions["watchtime"]


def _flag(name: str, default: bool = False) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def subscribe_channel(services, channel_id: str) -> bool:
    try:
        services.twitch.subscribe_to_live_status(channel_id)
    except TwitchError as e:
        log.error("Failed attempt - webhook subscribe %s: %s", channel_id, e)
        services.registry.subscription_failed(channel_id)
        return False
    return True


# ───────────────────────────────────────────────────────────────────────────────
#  Errors shared by every endpoint
# ───────────────────────────────────────────────────────────────────────────────
@board.before_request
def _wait_until_ready():
    if request.method == "OPTIONS":
        return None
    if not _services().registry.wait_ready(READY_TIMEOUT_SECONDS):
        return jsonify({"error": "starting up"}), 503
    return None


@board.errorhandler(LookupError)
def _not_found(e):
    return jsonify({"error": str(e)}), 404


@board.errorhandler(Forbidden)
def _forbidden(e):
    return jsonify({"error": str(e)}), 403


@board.errorhandler(SQLAlchemyError)
def _store_down(e):
    log.error("Store unavailable during %s: %s", request.path, e)
    return jsonify({"error": "storage unavailable"}), 503


# ───────────────────────────────────────────────────────────────────────────────
#  A. Init / refresh board
# ───────────────────────────────────────────────────────────────────────────────
@board.route("/init")
@require_identity
def init_board():
    who      = g.identity
    services = _services()
    registry = services.registry
    registry.ensure_channel(who.channel_id)

    if who.is_broadcaster:
        seen = registry.observe(who.channel_id, who.user_id, "", is_broadcaster=True)
        if seen.needs_subscription:
            subscribe_channel(services, who.channel_id)
        return jsonify({
            "name":        None,
            "broadcaster": True,
            "session":     registry.session_board(who.channel_id),
        })

    try:
        display_name = services.twitch.resolve_display_name(who.user_id)
    except TwitchError as e:
        log.info("initBoard: API call - %s", e)
        return jsonify({"error": "twitch lookup failed"}), 502

    seen = registry.observe(who.channel_id, who.user_id, display_name)
    return jsonify({
        "name":        seen.display_name if seen.tracking else None,
        "broadcaster": False,
        "session":     registry.session_board(who.channel_id),
    })


# ───────────────────────────────────────────────────────────────────────────────
#  B. Leaderboard for a period
# ───────────────────────────────────────────────────────────────────────────────
@board.route("/period")
@require_identity
def period_totals():
    period   = request.args.get("period", SESSION_PERIOD)
    services = _services()

    if period == SESSION_PERIOD:
        return jsonify({"period": period,
                        "rows": services.registry.session_board(g.identity.channel_id)})
    if period not in PERIODS:
        return jsonify({"error": f"unknown period {period!r}"}), 400

    rows = services.store.query_period_totals(g.identity.channel_id, period)
    return jsonify({
        "period": period,
        "rows":   [{"viewer_id": v, "name": n, "time": round(t, 3)} for v, n, t in rows],
    })


# ───────────────────────────────────────────────────────────────────────────────
#  C. Whitelist toggle (broadcaster only)
# ───────────────────────────────────────────────────────────────────────────────
@board.route("/whitelist", methods=["POST"])
@require_identity
def toggle_whitelist():
    who = g.identity
    if not who.is_broadcaster:
        log.warning("Illegal attempt: Not Broadcaster - toggleWhitelist by %s", who.user_id)
        return jsonify({"error": "broadcaster only"}), 403

    viewer_id = request.args.get("viewer", "").strip()
    if not viewer_id:
        return jsonify({"error": "missing viewer"}), 400

    whitelisted = _services().registry.toggle_whitelist(who.channel_id, viewer_id)
    return jsonify({"viewer_id": viewer_id, "whitelisted": whitelisted})


# ───────────────────────────────────────────────────────────────────────────────
#  D. Individual stats
# ───────────────────────────────────────────────────────────────────────────────
@board.route("/stats")
@require_identity
def individual_stats():
    who       = g.identity
    services  = _services()
    viewer_id = request.args.get("viewer", "").strip() or who.user_id

    hidden  = services.registry.membership(who.channel_id, viewer_id)
    payload = services.store.query_individual_stats(who.channel_id, viewer_id, hidden)
    payload["broadcaster"] = who.is_broadcaster
    return jsonify(payload)


# ───────────────────────────────────────────────────────────────────────────────
#  E. Viewer search
# ───────────────────────────────────────────────────────────────────────────────
@board.route("/search")
@require_identity
def search_viewers():
    query = request.args.get("q", "")
    hits  = _services().registry.search(g.identity.channel_id, query)
    return jsonify([
        {"viewer_id": v, "name": n, "time": round(t, 3)} for v, n, t in hits
    ])


# ───────────────────────────────────────────────────────────────────────────────
#  F. Pause / resume own timer
# ───────────────────────────────────────────────────────────────────────────────
@board.route("/pause", methods=["POST"])
@require_identity
def toggle_tracker():
    who       = g.identity
    viewer_id = request.args.get("viewer", "").strip() or who.user_id

    timer = _services().registry.toggle_tracker(
        who.channel_id, viewer_id, who.user_id, pause=_flag("paused", True)
    )
    return jsonify(timer.to_dict())
