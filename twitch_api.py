# twitch_api.py
# Helix / OAuth / EventSub calls made from request handlers and at startup.

import hashlib
import hmac
import logging
import threading
import time

import requests

from constants import HTTP_TIMEOUT_SECONDS, LIVE_TOPICS

log = logging.getLogger(__name__)

TWITCH_AUTH_URL    = "https://id.twitch.tv/oauth2/token"
HELIX_USERS_URL    = "https://api.twitch.tv/helix/users"
HELIX_EVENTSUB_URL = "https://api.twitch.tv/helix/eventsub/subscriptions"


class TwitchError(Exception):
    pass


class TwitchAPI:

    def __init__(self, client_id: str, client_secret: str,
                 callback_url: str = "", eventsub_secret: str = "",
                 session: requests.Session = None):
        self.client_id       = client_id
        self.client_secret   = client_secret
        self.callback_url    = callback_url
        self.eventsub_secret = eventsub_secret
        self.http            = session or requests.Session()
        self._app_token: str | None = None
        self._token_expiry: float = 0.0       # unix epoch
        self._token_lock = threading.Lock()

    # ───────────────────────  APP-TOKEN HELPER  ──────────────────────────────
    def get_app_access_token(self) -> str:
        """Return (and cache) an app access-token for helix calls."""
        with self._token_lock:
            if self._app_token and time.time() < (self._token_expiry - 60):
                return self._app_token

            payload = {
                "client_id":     self.client_id,
                "client_secret": self.client_secret,
                "grant_type":    "client_credentials",
            }
            response = self.http.post(TWITCH_AUTH_URL, data=payload, timeout=HTTP_TIMEOUT_SECONDS)
            if response.status_code != 200:
                raise TwitchError(f"Failed to get app token: {response.text}")

            js = response.json()
            self._app_token    = js["access_token"]
            self._token_expiry = time.time() + js.get("expires_in", 3600)
            log.info("App access token received")
            return self._app_token

    def _headers(self) -> dict:
        return {
            "Client-ID":     self.client_id,
            "Authorization": f"Bearer {self.get_app_access_token()}",
        }

    # ───────────────────────  USERS  ─────────────────────────────────────────
    def resolve_display_name(self, user_id: str) -> str:
        try:
            response = self.http.get(HELIX_USERS_URL, headers=self._headers(),
                                     params={"id": user_id}, timeout=HTTP_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TwitchError(f"user lookup for {user_id} failed: {e}") from e

        data = response.json().get("data") or []
        if not data:
            raise TwitchError(f"no such user {user_id}")
        return data[0]["display_name"]

    # ───────────────────────  EVENTSUB  ──────────────────────────────────────
    def subscribe_to_live_status(self, channel_id: str) -> None:
        """Ask Twitch to POST stream.online/offline for ``channel_id`` to our callback."""
        for topic in LIVE_TOPICS:
            body = {
                "type":      topic,
                "version":   "1",
                "condition": {"broadcaster_user_id": channel_id},
                "transport": {
                    "method":   "webhook",
                    "callback": self.callback_url,
                    "secret":   self.eventsub_secret,
                },
            }
            try:
                response = self.http.post(HELIX_EVENTSUB_URL, headers=self._headers(),
                                          json=body, timeout=HTTP_TIMEOUT_SECONDS)
            except requests.RequestException as e:
                raise TwitchError(f"{topic} subscription for {channel_id} failed: {e}") from e

            if response.status_code == 409:
                log.debug("%s for %s already subscribed", topic, channel_id)
            elif response.status_code >= 400:
                raise TwitchError(f"{topic} subscription for {channel_id} failed: "
                                  f"{response.status_code} {response.text}")
            else:
                log.info("Subscribed to %s for %s", topic, channel_id)


def verify_eventsub_signature(secret: str, message_id: str, timestamp: str,
                              raw_body: bytes, signature: str) -> bool:
    """HMAC-SHA256(secret, message_id + timestamp + raw_body) == signature."""
    if not signature or not signature.startswith("sha256="):
        return False
    message  = message_id.encode("utf-8") + timestamp.encode("utf-8") + raw_body
    computed = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, signature[len("sha256="):])
