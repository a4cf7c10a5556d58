"""
PlatformClient — the capability set every short-video platform provides.

TikTok and Instagram implement this contract independently; nothing is
inherited.  Clients hold configuration only, never per-user state.

Shared helpers at the bottom map HTTP-level failures onto the client
signals (``AuthRequired``, ``RateLimited``, ``TransientError``).
"""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol, runtime_checkable

import httpx

from connectors.errors import AuthRequired, RateLimited, TransientError
from connectors.schemas import ContentPage, Platform, PlatformUser, TokenSet

logger = logging.getLogger(__name__)


@runtime_checkable
class PlatformClient(Protocol):
    """Contract for one external platform."""

    # ── Identity ────────────────────────────────────────────────────────
    platform: Platform
    display_name: str
    scopes: List[str]

    def is_configured(self) -> bool:
        """True when client id/secret are present."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    def get_auth_url(self, state: str) -> str:
        """Provider authorization URL for the user to visit."""
        ...

    async def exchange_code(self, code: str) -> TokenSet:
        """
        Exchange a single-use authorization code for tokens.

        Raises ``AuthExchangeError``.  Must not retry.
        """
        ...

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """
        Obtain a new access token.

        Raises ``RefreshRejected`` (terminal) or ``TransientError``.
        """
        ...

    async def revoke_token(self, access_token: str) -> bool:
        """Best-effort remote revocation. False when unsupported or failed."""
        ...

    # ── Data ────────────────────────────────────────────────────────────

    async def get_user_info(self, access_token: str) -> PlatformUser:
        ...

    async def fetch_content_page(
        self,
        access_token: str,
        cursor: Optional[str],
        page_size: int,
    ) -> ContentPage:
        """
        Fetch one page of the user's own content.

        Raises ``AuthRequired``, ``RateLimited`` or ``TransientError``.
        """
        ...


# ── Helpers ─────────────────────────────────────────────────────────────

_FOOD_KEYWORDS = (
    "recipe", "cooking", "food", "meal", "dish", "chef", "kitchen",
    "cook", "bake", "grill", "fry", "boil", "steam", "roast",
    "ingredient", "spice", "herb", "sauce", "dressing", "marinade",
    "breakfast", "lunch", "dinner", "snack", "dessert", "appetizer",
    "pasta", "pizza", "burger", "salad", "soup", "stew", "curry",
    "bread", "cake", "cookie", "pie", "ice cream", "smoothie",
    "🍕", "🍔", "🍜", "🍣", "🍱", "🥗", "🍰", "🍪", "🍩", "🍦",
    "🥘", "🍳", "🥖", "🧀", "🥩", "🍗", "🥬", "🥕", "🍅", "🥑",
)


def is_food_related(caption: Optional[str]) -> bool:
    """Keyword check on a caption; cheap pre-filter, not a classifier."""
    if not caption:
        return False
    lowered = caption.lower()
    return any(keyword in lowered for keyword in _FOOD_KEYWORDS)


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def raise_for_platform_status(response: httpx.Response, platform: Platform) -> None:
    """
    Translate transport-level HTTP failures into client signals.

    Leaves 2xx and other 4xx responses alone; callers inspect those
    bodies for platform-specific error codes.
    """
    code = response.status_code
    if code == 401:
        raise AuthRequired(f"{platform.value} rejected the access token")
    if code == 429:
        raise RateLimited(
            f"{platform.value} rate limit hit",
            retry_after=parse_retry_after(response),
        )
    if code >= 500:
        raise TransientError(f"{platform.value} returned HTTP {code}")


def transport_failure(platform: Platform, exc: httpx.HTTPError) -> TransientError:
    logger.warning("%s request failed: %s", platform.value, exc)
    return TransientError(f"{platform.value} request failed: {exc}")
