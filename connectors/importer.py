"""
Import pipeline — pages through a platform's content for a user and stores
every item not seen before.

Dedup key: (user_id, platform, platform_content_id), backed by a unique
constraint.  The pre-check below only avoids pointless writes; the actual
guarantee is ``INSERT … ON CONFLICT DO NOTHING RETURNING``, which lets
exactly one of several concurrent imports claim an item.

Each page is one transaction (claimed rows plus their recipe hand-off), so
a crash or cancellation never leaves half a page behind, and pages that
were already committed stay committed.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from connectors.base import PlatformClient
from connectors.errors import AuthRequired, RateLimited, ReauthRequired
from connectors.registry import PlatformRegistry
from connectors.retry import with_backoff
from connectors.schemas import (
    ContentItem,
    ContentPage,
    ImportedContentItem,
    ImportResult,
    Platform,
    StopReason,
    as_utc,
    utcnow,
)
from connectors.store import CredentialStore
from connectors.token_manager import TokenManager
from database.helpers import create_recipe_from_content, dialect_insert
from database.models import ImportedContentRow
from database.session import async_session_factory

logger = logging.getLogger(__name__)

# (session, user_id, platform, item) -> local recipe id
ContentSink = Callable[[AsyncSession, str, Platform, ContentItem], Awaitable[uuid.UUID]]

_table = ImportedContentRow.__table__
_columns = tuple(_table.c)


def _to_item(row: Any, local_recipe_id: Optional[uuid.UUID] = None) -> ImportedContentItem:
    return ImportedContentItem(
        content_id=row.content_id,
        user_id=row.user_id,
        platform=Platform(row.platform),
        platform_content_id=row.platform_content_id,
        local_recipe_id=local_recipe_id or row.local_recipe_id,
        content_type=row.content_type,
        source_url=row.source_url,
        thumbnail_url=row.thumbnail_url,
        caption=row.caption,
        engagement_metrics=dict(row.engagement_metrics or {}),
        imported_at=as_utc(row.imported_at),
    )


class ImportPipeline:
    """Drives pagination, dedup and per-page persistence."""

    def __init__(
        self,
        token_manager: TokenManager,
        store: CredentialStore,
        registry: Optional[PlatformRegistry] = None,
        *,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        content_sink: ContentSink = create_recipe_from_content,
        page_size: Optional[int] = None,
        max_items_cap: Optional[int] = None,
        max_pages: Optional[int] = None,
        food_only: Optional[bool] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ) -> None:
        self._token_manager = token_manager
        self._store = store
        self._registry = registry or PlatformRegistry()
        self._session_factory = session_factory
        self._content_sink = content_sink
        self.page_size = page_size or config.import_page_size
        self.max_items_cap = max_items_cap or config.import_max_items
        self.max_pages = max_pages or config.import_max_pages
        self.food_only = config.import_food_only if food_only is None else food_only
        self.max_retries = config.token_refresh_max_retries if max_retries is None else max_retries
        self.backoff_base = (
            config.retry_backoff_base_seconds if backoff_base is None else backoff_base
        )

    # ── Import ──────────────────────────────────────────────────────────

    async def import_content(
        self,
        user_id: str,
        platform: Platform,
        max_items: int,
    ) -> ImportResult:
        """
        Import up to ``max_items`` new items.

        Stops on ``max_items``, end of the remote collection, a rate limit
        (returned as a partial success) or the page-count bound.  Raises
        ``NotConnected``, ``ReauthRequired`` or ``TemporarilyUnavailable``.
        """
        platform = Platform(platform)
        if max_items <= 0:
            raise ValueError("max_items must be positive")
        max_items = min(max_items, self.max_items_cap)

        client = self._registry.get(platform)
        token = await self._token_manager.get_valid_access_token(user_id, platform)

        imported: List[ImportedContentItem] = []
        cursor: Optional[str] = None
        seen_cursors: Set[str] = set()
        pages = 0
        retry_after: Optional[float] = None

        while True:
            if pages >= self.max_pages:
                logger.warning(
                    "%s import for user %s hit the %d-page bound",
                    platform.value, user_id, self.max_pages,
                )
                reason = StopReason.PAGE_LIMIT
                break

            remaining = max_items - len(imported)
            try:
                page, token = await self._fetch_page(
                    client, user_id, token, cursor, min(self.page_size, remaining)
                )
            except RateLimited as exc:
                logger.info(
                    "%s import for user %s rate limited after %d items (retry after %s)",
                    platform.value, user_id, len(imported), exc.retry_after,
                )
                reason = StopReason.RATE_LIMITED
                retry_after = exc.retry_after
                break
            pages += 1

            candidates = page.items
            if self.food_only:
                candidates = [item for item in candidates if item.is_food_related]
            imported.extend(
                await self._persist_page(user_id, platform, candidates, remaining)
            )

            if len(imported) >= max_items:
                reason = StopReason.MAX_ITEMS
                break
            if page.next_cursor is None:
                reason = StopReason.EXHAUSTED
                break
            if page.next_cursor == cursor or page.next_cursor in seen_cursors:
                logger.warning(
                    "%s returned a repeated cursor for user %s; stopping",
                    platform.value, user_id,
                )
                reason = StopReason.PAGE_LIMIT
                break
            seen_cursors.add(page.next_cursor)
            cursor = page.next_cursor

        await self._store.touch_last_synced(user_id, platform)
        logger.info(
            "Imported %d %s items for user %s (%s, %d pages)",
            len(imported), platform.value, user_id, reason.value, pages,
        )
        return ImportResult(
            platform=platform,
            items=imported,
            stopped_reason=reason,
            retry_after=retry_after,
            pages_fetched=pages,
        )

    async def _fetch_page(
        self,
        client: PlatformClient,
        user_id: str,
        token: str,
        cursor: Optional[str],
        page_size: int,
    ) -> Tuple[ContentPage, str]:
        """
        Fetch one page, re-acquiring the token at most once on AuthRequired.

        Returns the page and the token that worked.
        """
        platform = client.platform

        async def fetch(access_token: str) -> ContentPage:
            return await with_backoff(
                lambda: client.fetch_content_page(access_token, cursor, page_size),
                what=f"{platform.value} content fetch",
                max_retries=self.max_retries,
                base_delay=self.backoff_base,
            )

        try:
            return await fetch(token), token
        except AuthRequired:
            logger.info(
                "%s rejected the access token for user %s mid-import; re-acquiring",
                platform.value, user_id,
            )

        token = await self._token_manager.get_valid_access_token(
            user_id, platform, rejected_token=token
        )
        try:
            return await fetch(token), token
        except AuthRequired as exc:
            await self._token_manager.mark_expired(
                user_id,
                platform,
                "Access token rejected after re-acquisition",
                rejected_token=token,
            )
            raise ReauthRequired(
                f"{platform.value} keeps rejecting the access token; reconnect required"
            ) from exc

    async def _persist_page(
        self,
        user_id: str,
        platform: Platform,
        items: List[ContentItem],
        limit: int,
    ) -> List[ImportedContentItem]:
        """Claim and store up to ``limit`` new items of one page atomically."""
        if not items or limit <= 0:
            return []

        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    select(_table.c.platform_content_id).where(
                        _table.c.user_id == user_id,
                        _table.c.platform == platform.value,
                        _table.c.platform_content_id.in_(
                            [item.platform_content_id for item in items]
                        ),
                    )
                )
                known = set(result.scalars())

                created: List[ImportedContentItem] = []
                for item in items:
                    if len(created) >= limit:
                        break
                    if item.platform_content_id in known:
                        continue
                    known.add(item.platform_content_id)

                    row = await self._claim(session, user_id, platform, item)
                    if row is None:
                        logger.debug(
                            "%s item %s claimed by a concurrent import",
                            platform.value, item.platform_content_id,
                        )
                        continue
                    recipe_id = await self._content_sink(session, user_id, platform, item)
                    await session.execute(
                        update(_table)
                        .where(_table.c.content_id == row.content_id)
                        .values(local_recipe_id=recipe_id)
                    )
                    created.append(_to_item(row, recipe_id))

                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return created

    @staticmethod
    async def _claim(
        session: AsyncSession,
        user_id: str,
        platform: Platform,
        item: ContentItem,
    ) -> Optional[Any]:
        stmt = (
            dialect_insert(session, _table)
            .values(
                content_id=uuid.uuid4(),
                user_id=user_id,
                platform=platform.value,
                platform_content_id=item.platform_content_id,
                content_type=item.content_type,
                source_url=item.source_url,
                thumbnail_url=item.thumbnail_url,
                caption=item.caption or None,
                engagement_metrics=dict(item.engagement_metrics),
                imported_at=utcnow(),
            )
            .on_conflict_do_nothing(
                index_elements=["user_id", "platform", "platform_content_id"]
            )
            .returning(*_columns)
        )
        return (await session.execute(stmt)).one_or_none()

    # ── Queries ─────────────────────────────────────────────────────────

    async def list_imported_content(
        self,
        user_id: str,
        platform: Optional[Platform] = None,
    ) -> List[ImportedContentItem]:
        """Stored imports for a user, newest first."""
        stmt = select(*_columns).where(_table.c.user_id == user_id)
        if platform is not None:
            stmt = stmt.where(_table.c.platform == Platform(platform).value)
        stmt = stmt.order_by(_table.c.imported_at.desc())
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [_to_item(r) for r in rows]
