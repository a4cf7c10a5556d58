"""
ConnectionService — entry point for linking, unlinking and importing.

connect ─▶ platform client (code exchange, user info) ─▶ credential store
import  ─▶ import pipeline ─▶ token manager ─▶ platform client ─▶ store
"""

from __future__ import annotations

import logging
from typing import List, Optional

from connectors.errors import AuthExchangeError, PlatformSignal, RateLimited
from connectors.importer import ImportPipeline
from connectors.oauth_state import create_state, verify_state
from connectors.registry import PlatformRegistry
from connectors.schemas import (
    ConnectionStatus,
    ImportedContentItem,
    ImportResult,
    Platform,
    SocialConnection,
    utcnow,
)
from connectors.store import CredentialStore
from connectors.token_manager import TokenManager

logger = logging.getLogger(__name__)


class ConnectionService:
    def __init__(
        self,
        store: CredentialStore,
        token_manager: TokenManager,
        pipeline: ImportPipeline,
        registry: Optional[PlatformRegistry] = None,
    ) -> None:
        self._store = store
        self._token_manager = token_manager
        self._pipeline = pipeline
        self._registry = registry or PlatformRegistry()

    # ── OAuth ───────────────────────────────────────────────────────────

    def get_auth_url(self, user_id: str, platform: Platform) -> str:
        """Provider consent URL carrying a signed state for ``user_id``."""
        client = self._registry.get(platform)
        return client.get_auth_url(create_state(user_id, client.platform.value))

    async def handle_callback(
        self,
        platform: Platform,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> SocialConnection:
        """
        OAuth redirect target: verify ``state``, then ``connect``.

        A provider-reported ``error`` or a missing code/state is an
        ``AuthExchangeError``; the user has to start over.
        """
        platform = Platform(platform)
        if error:
            raise AuthExchangeError(f"{platform.value} authorization failed: {error}")
        if not code or not state:
            raise AuthExchangeError(f"{platform.value} callback missing code or state")

        user_id, state_platform = verify_state(state)
        if state_platform != platform.value:
            raise AuthExchangeError("OAuth state was issued for a different platform")
        return await self.connect(user_id, platform, code)

    async def connect(
        self,
        user_id: str,
        platform: Platform,
        authorization_code: str,
    ) -> SocialConnection:
        """
        Exchange the code, fetch the platform profile and store the
        connection as active.  Never retried: codes are single-use.
        """
        client = self._registry.get(platform)
        token_set = await client.exchange_code(authorization_code)
        try:
            user = await client.get_user_info(token_set.access_token)
        except (PlatformSignal, RateLimited) as exc:
            # the single-use code is already spent; callers restart OAuth
            raise AuthExchangeError(
                f"{client.platform.value} profile lookup failed: {exc}"
            ) from exc

        now = utcnow()
        connection = await self._store.upsert(
            SocialConnection(
                user_id=user_id,
                platform=client.platform,
                access_token=token_set.access_token,
                refresh_token=token_set.refresh_token,
                expires_at=token_set.expires_at(now),
                platform_user_id=user.platform_user_id or token_set.platform_user_id or "",
                display_name=user.display_name or user.username,
                scopes=token_set.scopes,
                status=ConnectionStatus.ACTIVE,
                connected_at=now,
            )
        )
        logger.info(
            "Connected %s for user %s as %s",
            client.platform.value,
            user_id,
            connection.display_name or connection.platform_user_id,
        )
        return connection

    async def disconnect(self, user_id: str, platform: Platform) -> None:
        """
        Remove the local connection, then try to revoke remotely.

        The local delete is authoritative: revoke failures are logged and
        never raised, and a missing row is not an error.
        """
        platform = Platform(platform)
        removed = await self._store.delete(user_id, platform)
        if removed is None:
            logger.info("Disconnect %s for user %s: nothing stored", platform.value, user_id)
            return
        logger.info("Disconnected %s for user %s", platform.value, user_id)

        try:
            client = self._registry.get(platform)
            revoked = await client.revoke_token(removed.access_token)
        except Exception:
            logger.warning(
                "Remote revoke failed for %s/%s", platform.value, user_id, exc_info=True
            )
            return
        if not revoked:
            logger.info("%s token not revoked remotely (unsupported or refused)", platform.value)

    async def list_connections(self, user_id: str) -> List[SocialConnection]:
        return await self._store.list_by_user(user_id)

    # ── Import ──────────────────────────────────────────────────────────

    async def import_content(
        self,
        user_id: str,
        platform: Platform,
        max_items: int,
    ) -> ImportResult:
        return await self._pipeline.import_content(user_id, platform, max_items)

    async def list_imported_content(
        self,
        user_id: str,
        platform: Optional[Platform] = None,
    ) -> List[ImportedContentItem]:
        return await self._pipeline.list_imported_content(user_id, platform)


def build_connection_service(
    registry: Optional[PlatformRegistry] = None,
    store: Optional[CredentialStore] = None,
) -> ConnectionService:
    """Wire the default service graph."""
    registry = registry or PlatformRegistry()
    store = store or CredentialStore()
    token_manager = TokenManager(store, registry)
    pipeline = ImportPipeline(token_manager, store, registry)
    return ConnectionService(store, token_manager, pipeline, registry)
