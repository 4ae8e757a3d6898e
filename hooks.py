# hooks.py – Twitch EventSub webhook callback
"""Receives stream.online / stream.offline deliveries from Twitch EventSub.

Twitch sends three message types to the callback:

1. ``webhook_callback_verification`` – answer with the raw challenge
2. ``notification`` – the actual event, handed to the session controller
3. ``revocation`` – the subscription is gone; logged so it can be renewed

Every delivery is HMAC-verified, checked for replay age and deduplicated by
message id before anything touches the registry.
"""

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone

from flask import Blueprint, current_app, request

from constants import (
    EVENTSUB_MAX_AGE_SECONDS,
    EVENTSUB_SEEN_LIMIT,
    STREAM_OFFLINE,
    STREAM_ONLINE,
)
from session import parse_timestamp
from twitch_api import verify_eventsub_signature

log = logging.getLogger(__name__)

MSG_TYPE_NOTIFICATION = "notification"
MSG_TYPE_CHALLENGE    = "webhook_callback_verification"
MSG_TYPE_REVOCATION   = "revocation"

hooks = Blueprint("hooks", __name__, url_prefix="/eventsub")


class SeenMessages:
    """Bounded set of delivered message ids."""

    def __init__(self, limit: int = EVENTSUB_SEEN_LIMIT):
        self._ids   = set()
        self._order = deque()
        self._limit = limit
        self._lock  = threading.Lock()

    def check_and_add(self, message_id: str) -> bool:
        """Return True if ``message_id`` was already seen, remembering it otherwise."""
        with self._lock:
            if message_id in self._ids:
                return True
            self._ids.add(message_id)
            self._order.append(message_id)
            while len(self._order) > self._limit:
                self._ids.discard(self._order.popleft())
            return False


def _is_too_old(raw: str) -> bool:
    try:
        sent = parse_timestamp(raw)
    except ValueError:
        log.debug("EventSub: could not parse timestamp %r", raw)
        return True
    return (datetime.now(timezone.utc) - sent).total_seconds() > EVENTSUB_MAX_AGE_SECONDS


@hooks.route("/callback", methods=["POST"])
def callback():
    services = current_app.extensions["watchtime"]
    raw_body = request.get_data()

    message_id   = request.headers.get("Twitch-Eventsub-Message-Id", "")
    timestamp    = request.headers.get("Twitch-Eventsub-Message-Timestamp", "")
    signature    = request.headers.get("Twitch-Eventsub-Message-Signature", "")
    message_type = request.headers.get("Twitch-Eventsub-Message-Type", "")

    if not verify_eventsub_signature(current_app.config["EVENTSUB_SECRET"],
                                     message_id, timestamp, raw_body, signature):
        log.warning("Illegal attempt - EventSub signature mismatch (id=%r, origin=%s)",
                    message_id, request.remote_addr)
        return "", 403

    if _is_too_old(timestamp):
        log.warning("EventSub: message %r too old (ts=%r)", message_id, timestamp)
        return "", 403

    try:
        data = json.loads(raw_body)
    except ValueError:
        log.warning("EventSub: body is not JSON")
        return "", 400

    subscription = data.get("subscription") or {}

    if message_type == MSG_TYPE_CHALLENGE:
        challenge = data.get("challenge", "")
        if not challenge:
            return "", 400
        log.info("Subscription success: %s", subscription.get("type"))
        return challenge, 200, {"Content-Type": "text/plain"}

    if message_type == MSG_TYPE_REVOCATION:
        log.warning("EventSub: subscription revoked: type=%r status=%r condition=%r",
                    subscription.get("type"), subscription.get("status"),
                    subscription.get("condition"))
        return "", 204

    if message_type != MSG_TYPE_NOTIFICATION:
        return "", 204

    if services.seen.check_and_add(message_id):
        log.debug("EventSub: duplicate message %r ignored", message_id)
        return "", 204

    event      = data.get("event") or {}
    sub_type   = subscription.get("type")
    channel_id = str(event.get("broadcaster_user_id") or "")
    if not channel_id:
        return "", 204

    # Handled inline so events for one channel apply in arrival order
    try:
        if sub_type == STREAM_ONLINE:
            services.session.stream_online(channel_id, event.get("started_at") or timestamp)
        elif sub_type == STREAM_OFFLINE:
            services.session.stream_offline(channel_id)
        else:
            log.debug("EventSub: no handler for %r", sub_type)
    except Exception:
        log.exception("EventSub: handling %s for %s failed", sub_type, channel_id)
    return "", 204
