"""
OAuth ``state`` tokens (CSRF protection).

The state carries the user id, platform and an expiry, signed with
HMAC-SHA256 under ``config.oauth_state_secret``.  The callback recovers the
user id from the state, so it does not need the caller's bearer token.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional, Tuple

from config.settings import config
from connectors.errors import AuthExchangeError


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()[:32]


def create_state(
    user_id: str,
    platform: str,
    *,
    ttl: Optional[int] = None,
    secret: Optional[str] = None,
) -> str:
    """Create an opaque state string encoding user_id + platform + expiry."""
    payload = json.dumps(
        {
            "user_id": user_id,
            "platform": platform,
            "nonce": secrets.token_hex(8),
            "exp": int(time.time()) + (ttl if ttl is not None else config.oauth_state_ttl_seconds),
        }
    )
    raw = payload.encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw, secret or config.oauth_state_secret)


def verify_state(state: str, *, secret: Optional[str] = None) -> Tuple[str, str]:
    """Verify a state token and return ``(user_id, platform)``."""
    try:
        encoded, sig = state.split(".", 1)
        raw = urlsafe_b64decode(encoded.encode())
        payload = json.loads(raw)
    except (ValueError, TypeError) as exc:
        raise AuthExchangeError("Invalid OAuth state: bad format") from exc

    if not hmac.compare_digest(sig, _sign(raw, secret or config.oauth_state_secret)):
        raise AuthExchangeError("Invalid OAuth state: bad signature")
    if payload.get("exp", 0) < time.time():
        raise AuthExchangeError("Invalid OAuth state: expired")
    return payload["user_id"], payload["platform"]
