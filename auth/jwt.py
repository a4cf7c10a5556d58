"""
Bearer token creation and verification.

Tokens are URL-safe base64 JSON payloads (``sub`` + ``exp``) followed by an
HMAC-SHA256 signature under ``config.jwt_secret`` (env var: ``JWT_SECRET``).
They are issued by the host application's login flow; ``create_token``
exists for service-to-service calls and tests.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional

from fastapi import HTTPException, status

from config.settings import config


def _signature(raw: bytes) -> str:
    return hmac.new(config.jwt_secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(user_id: str, *, ttl: Optional[int] = None) -> str:
    """Create a signed bearer token for ``user_id``."""
    payload = {
        "sub": user_id,
        "exp": int(time.time()) + (ttl if ttl is not None else config.jwt_expiry_seconds),
    }
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return urlsafe_b64encode(raw).decode() + "." + _signature(raw)


def _unauthorized(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=f"Invalid or expired token: {reason}",
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_token(token: str) -> str:
    """
    Verify a bearer token and return the user id it was issued for.

    Raises ``HTTPException(401)`` on malformed, forged or expired tokens.
    """
    try:
        encoded, sig = token.split(".", 1)
        raw = urlsafe_b64decode(encoded.encode())
        payload = json.loads(raw)
    except (ValueError, TypeError):
        raise _unauthorized("bad format") from None

    if not hmac.compare_digest(sig, _signature(raw)):
        raise _unauthorized("bad signature")
    if payload.get("exp", 0) < time.time():
        raise _unauthorized("token expired")
    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("missing subject")
    return str(user_id)
