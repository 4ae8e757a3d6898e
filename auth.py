# auth.py
# Verifies the JWT Twitch signs for every extension panel request.

import base64
import binascii
import logging
from dataclasses import dataclass
from functools import wraps

import jwt
from flask import current_app, g, jsonify, request

from constants import BROADCASTER_ROLE

log = logging.getLogger(__name__)


class AuthError(Exception):
    pass


@dataclass(frozen=True)
class Identity:
    user_id:    str
    channel_id: str
    role:       str

    @property
    def is_broadcaster(self) -> bool:
        return self.role == BROADCASTER_ROLE


def decode_extension_jwt(token: str, secret_b64: str) -> Identity:
    """Validate an extension JWT (HS256, base64 shared secret) and return who sent it."""
    if not token:
        raise AuthError("missing token")
    try:
        key = base64.b64decode(secret_b64)
    except (binascii.Error, TypeError) as e:
        raise AuthError("extension secret is not valid base64") from e

    try:
        payload = jwt.decode(token, key, algorithms=["HS256"],
                             options={"require": ["exp"]})
    except jwt.InvalidTokenError as e:
        raise AuthError(f"invalid token: {e}") from e

    user_id    = payload.get("user_id")
    channel_id = payload.get("channel_id")
    # Viewers who haven't shared their identity only carry an opaque id
    if not user_id or not channel_id:
        raise AuthError("token carries no user_id/channel_id")
    return Identity(str(user_id), str(channel_id), payload.get("role", ""))


def _token_from_request() -> str:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return request.headers.get("Extension-Jwt", "")


def require_identity(view):
    """Reject the request with 403 unless it carries a valid extension JWT."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        try:
            g.identity = decode_extension_jwt(
                _token_from_request(), current_app.config["EXTENSION_SECRET"]
            )
        except AuthError as e:
            log.warning("Illegal attempt on %s: %s (origin=%s)",
                        request.path, e, request.headers.get("Origin"))
            return jsonify({"error": "forbidden"}), 403
        return view(*args, **kwargs)
    return wrapper
