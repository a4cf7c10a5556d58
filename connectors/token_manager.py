"""
Token manager — the single path by which a stored access token reaches a
platform call.

``get_valid_access_token`` returns a token that is either non-expiring or
valid for longer than the safety margin, refreshing it first when needed.
Refreshes run without any lock held; the store's compare-and-set write
decides which of two concurrent refreshers wins.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from config.settings import config
from connectors.errors import (
    NotConnected,
    ReauthRequired,
    RefreshRejected,
    TemporarilyUnavailable,
)
from connectors.registry import PlatformRegistry
from connectors.retry import with_backoff
from connectors.schemas import ConnectionStatus, Platform, SocialConnection, utcnow
from connectors.store import CredentialStore

logger = logging.getLogger(__name__)


class TokenManager:
    """Owns the refresh-before-use rule and credential demotion."""

    def __init__(
        self,
        store: CredentialStore,
        registry: Optional[PlatformRegistry] = None,
        *,
        safety_margin: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ) -> None:
        self._store = store
        self._registry = registry or PlatformRegistry()
        self.safety_margin = timedelta(
            seconds=config.token_refresh_margin_seconds if safety_margin is None else safety_margin
        )
        self.max_retries = config.token_refresh_max_retries if max_retries is None else max_retries
        self.backoff_base = (
            config.retry_backoff_base_seconds if backoff_base is None else backoff_base
        )

    def _is_fresh(self, conn: SocialConnection, now: datetime) -> bool:
        return conn.expires_at is None or conn.expires_at > now + self.safety_margin

    async def get_valid_access_token(
        self,
        user_id: str,
        platform: Platform,
        *,
        rejected_token: Optional[str] = None,
    ) -> str:
        """
        Return a usable access token for ``user_id`` on ``platform``.

        ``rejected_token`` is the token a platform call just refused.  If the
        stored token is still that one, a refresh is forced; if it differs,
        someone else already replaced it and the stored one is used.

        Raises ``NotConnected``, ``ReauthRequired`` or
        ``TemporarilyUnavailable``.
        """
        platform = Platform(platform)
        conn = await self._store.get(user_id, platform)
        if conn is None or conn.status != ConnectionStatus.ACTIVE:
            raise NotConnected(f"No active {platform.value} connection for user {user_id}")

        now = utcnow()
        force = rejected_token is not None and rejected_token == conn.access_token
        if not force and self._is_fresh(conn, now):
            return conn.access_token

        return await self._refresh(conn)

    async def _refresh(self, conn: SocialConnection) -> str:
        platform = conn.platform
        if not conn.refresh_token:
            await self._store.mark_status(
                conn, ConnectionStatus.EXPIRED, "Token expired and no refresh token available"
            )
            raise ReauthRequired(f"{platform.value} token expired; reconnect required")

        client = self._registry.get(platform)
        try:
            token_set = await with_backoff(
                lambda: client.refresh_token(conn.refresh_token),
                what=f"{platform.value} token refresh",
                max_retries=self.max_retries,
                base_delay=self.backoff_base,
            )
        except RefreshRejected as exc:
            return await self._handle_rejected(conn, exc)

        updated = await self._store.replace_tokens(conn, token_set)
        if updated is None:
            # row was rewritten or deleted while we were refreshing
            return await self._after_lost_race(conn)

        if not self._is_fresh(updated, utcnow()):
            raise TemporarilyUnavailable(
                f"{platform.value} issued a token that expires within the safety margin"
            )
        logger.info("Refreshed %s token for user %s", platform.value, conn.user_id)
        return updated.access_token

    async def _handle_rejected(self, conn: SocialConnection, exc: RefreshRejected) -> str:
        revoked = await self._store.mark_status(
            conn, ConnectionStatus.REVOKED, f"Refresh rejected: {exc}"
        )
        if revoked is None:
            # A concurrent refresher rotated the refresh token before we used
            # the old one; the platform rejecting ours says nothing about theirs.
            return await self._after_lost_race(conn)
        logger.warning(
            "Refresh rejected for %s/%s: %s", conn.platform.value, conn.user_id, exc
        )
        raise ReauthRequired(f"{conn.platform.value} authorization revoked; reconnect required") from exc

    async def _after_lost_race(self, stale: SocialConnection) -> str:
        current = await self._store.get(stale.user_id, stale.platform)
        if current is None:
            raise NotConnected(
                f"{stale.platform.value} connection for user {stale.user_id} was removed during refresh"
            )
        if current.status != ConnectionStatus.ACTIVE:
            raise ReauthRequired(
                f"{stale.platform.value} connection is {current.status.value}; reconnect required"
            )
        if not self._is_fresh(current, utcnow()):
            raise TemporarilyUnavailable(
                f"{stale.platform.value} token changed concurrently but is still stale"
            )
        return current.access_token

    async def mark_expired(
        self,
        user_id: str,
        platform: Platform,
        reason: str,
        *,
        rejected_token: str,
    ) -> bool:
        """
        Demote the connection after the platform refused a fresh token.

        Only the row still holding ``rejected_token`` is demoted; a reconnect
        or refresh that replaced it in the meantime is left alone.  Returns
        whether the row was marked.
        """
        conn = await self._store.get(user_id, platform)
        if (
            conn is None
            or conn.status != ConnectionStatus.ACTIVE
            or conn.access_token != rejected_token
        ):
            return False
        marked = await self._store.mark_status(conn, ConnectionStatus.EXPIRED, reason)
        return marked is not None
