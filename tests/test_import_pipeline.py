"""
Tests for ImportPipeline — pagination, dedup, partial success on rate
limits, one-shot token re-acquisition and per-page atomicity.
"""

import asyncio

import pytest
from sqlalchemy import func, select

from connectors.errors import (
    AuthRequired,
    NotConnected,
    RateLimited,
    ReauthRequired,
    RefreshRejected,
    TemporarilyUnavailable,
    TransientError,
)
from connectors.importer import ImportPipeline
from connectors.schemas import ConnectionStatus, ContentPage, Platform, StopReason
from connectors.store import CredentialStore
from connectors.token_manager import TokenManager
from database.models import ImportedContentRow, Recipe
from conftest import USER, SerializedSessions, seed_connection


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestPaging:
    @pytest.mark.asyncio
    async def test_max_items_respected(self, store, pipeline, session_factory, fake_client):
        # 15 remote items, pages of 10 + 5
        await seed_connection(store)

        result = await pipeline.import_content(USER, Platform.TIKTOK, 10)

        assert result.imported_count == 10
        assert result.stopped_reason == StopReason.MAX_ITEMS
        assert [i.platform_content_id for i in result.items] == [f"v{i}" for i in range(10)]
        assert await _count(session_factory, ImportedContentRow) == 10

    @pytest.mark.asyncio
    async def test_exhausts_remote_collection(self, store, pipeline, fake_client):
        await seed_connection(store)

        result = await pipeline.import_content(USER, Platform.TIKTOK, 50)

        assert result.imported_count == 15
        assert result.stopped_reason == StopReason.EXHAUSTED
        assert result.pages_fetched == 2
        assert [c[1] for c in fake_client.fetch_calls] == [None, "10"]

    @pytest.mark.asyncio
    async def test_page_size_shrinks_to_remaining(self, store, pipeline, fake_client):
        await seed_connection(store)
        await pipeline.import_content(USER, Platform.TIKTOK, 4)
        assert fake_client.fetch_calls[0][2] == 4

    @pytest.mark.asyncio
    async def test_second_import_creates_nothing(self, store, pipeline):
        await seed_connection(store)
        first = await pipeline.import_content(USER, Platform.TIKTOK, 50)
        second = await pipeline.import_content(USER, Platform.TIKTOK, 50)

        assert first.imported_count == 15
        assert second.imported_count == 0
        assert second.stopped_reason == StopReason.EXHAUSTED

    @pytest.mark.asyncio
    async def test_resumes_past_known_items(self, store, pipeline):
        await seed_connection(store)
        await pipeline.import_content(USER, Platform.TIKTOK, 5)
        result = await pipeline.import_content(USER, Platform.TIKTOK, 5)
        assert [i.platform_content_id for i in result.items] == ["v5", "v6", "v7", "v8", "v9"]

    @pytest.mark.asyncio
    async def test_rejects_non_positive_max_items(self, store, pipeline):
        await seed_connection(store)
        with pytest.raises(ValueError):
            await pipeline.import_content(USER, Platform.TIKTOK, 0)

    @pytest.mark.asyncio
    async def test_repeated_cursor_stops(self, store, pipeline, fake_client):
        await seed_connection(store)

        async def stuck_page(access_token, cursor, page_size):
            fake_client.fetch_calls.append((access_token, cursor, page_size))
            n = len(fake_client.fetch_calls)
            return ContentPage(items=fake_client.remote[n - 1:n], next_cursor="same")

        fake_client.fetch_content_page = stuck_page

        result = await pipeline.import_content(USER, Platform.TIKTOK, 50)

        assert result.stopped_reason == StopReason.PAGE_LIMIT
        assert len(fake_client.fetch_calls) == 2

    @pytest.mark.asyncio
    async def test_max_pages_bound(self, store, token_manager, registry, session_factory, fake_client):
        await seed_connection(store)
        bounded = ImportPipeline(
            token_manager, store, registry,
            session_factory=session_factory, page_size=2, max_pages=3, backoff_base=0,
        )

        result = await bounded.import_content(USER, Platform.TIKTOK, 50)

        assert result.stopped_reason == StopReason.PAGE_LIMIT
        assert result.imported_count == 6

    @pytest.mark.asyncio
    async def test_updates_last_synced(self, store, pipeline):
        await seed_connection(store)
        await pipeline.import_content(USER, Platform.TIKTOK, 1)
        assert (await store.get(USER, Platform.TIKTOK)).last_synced_at is not None


class TestFailures:
    @pytest.mark.asyncio
    async def test_rate_limit_is_partial_success(self, store, token_manager, registry, session_factory, fake_client):
        await seed_connection(store)
        small_pages = ImportPipeline(
            token_manager, store, registry,
            session_factory=session_factory, page_size=3, backoff_base=0,
        )
        fake_client.fetch_errors = [None, RateLimited(retry_after=30)]

        result = await small_pages.import_content(USER, Platform.TIKTOK, 10)

        assert result.imported_count == 3
        assert result.stopped_reason == StopReason.RATE_LIMITED
        assert result.retry_after == 30
        assert await _count(session_factory, ImportedContentRow) == 3

    @pytest.mark.asyncio
    async def test_revoked_refresh_token_imports_nothing(self, store, pipeline, session_factory, fake_client):
        await seed_connection(store, expires_in=20)
        fake_client.refresh_errors = [RefreshRejected("invalid_grant")]

        with pytest.raises(ReauthRequired):
            await pipeline.import_content(USER, Platform.TIKTOK, 10)

        assert (await store.get(USER, Platform.TIKTOK)).status == ConnectionStatus.REVOKED
        assert fake_client.fetch_calls == []
        assert await _count(session_factory, ImportedContentRow) == 0

    @pytest.mark.asyncio
    async def test_not_connected(self, pipeline):
        with pytest.raises(NotConnected):
            await pipeline.import_content(USER, Platform.TIKTOK, 10)

    @pytest.mark.asyncio
    async def test_auth_required_reacquires_once(self, store, pipeline, fake_client):
        await seed_connection(store)
        fake_client.rejected_tokens = {"access-0"}

        result = await pipeline.import_content(USER, Platform.TIKTOK, 10)

        assert result.imported_count == 10
        assert [c[0] for c in fake_client.fetch_calls] == ["access-0", "access-1"]
        assert fake_client.refresh_calls == ["refresh-0"]

    @pytest.mark.asyncio
    async def test_second_auth_required_is_fatal(self, store, pipeline, fake_client):
        await seed_connection(store)
        fake_client.rejected_tokens = {"access-0", "access-1"}

        with pytest.raises(ReauthRequired):
            await pipeline.import_content(USER, Platform.TIKTOK, 10)

        assert len(fake_client.fetch_calls) == 2
        assert (await store.get(USER, Platform.TIKTOK)).status == ConnectionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_reconnect_during_failing_import_stays_active(self, store, pipeline, fake_client):
        await seed_connection(store)

        async def rejecting_page(access_token, cursor, page_size):
            fake_client.fetch_calls.append((access_token, cursor, page_size))
            if len(fake_client.fetch_calls) == 2:
                await seed_connection(store, access_token="access-NEW", refresh_token="refresh-NEW")
            raise AuthRequired("token rejected")

        fake_client.fetch_content_page = rejecting_page

        with pytest.raises(ReauthRequired):
            await pipeline.import_content(USER, Platform.TIKTOK, 10)

        conn = await store.get(USER, Platform.TIKTOK)
        assert conn.access_token == "access-NEW"
        assert conn.status == ConnectionStatus.ACTIVE
        assert len(await store.list_by_user(USER)) == 1

    @pytest.mark.asyncio
    async def test_transient_fetch_errors_retried(self, store, pipeline, fake_client):
        await seed_connection(store)
        fake_client.fetch_errors = [TransientError("502")]

        result = await pipeline.import_content(USER, Platform.TIKTOK, 10)
        assert result.imported_count == 10

    @pytest.mark.asyncio
    async def test_transient_exhaustion_keeps_committed_pages(self, store, pipeline, session_factory, fake_client):
        await seed_connection(store)
        fake_client.fetch_errors = [None] + [TransientError("down")] * 3

        with pytest.raises(TemporarilyUnavailable):
            await pipeline.import_content(USER, Platform.TIKTOK, 50)

        assert await _count(session_factory, ImportedContentRow) == 10

    @pytest.mark.asyncio
    async def test_failure_mid_page_rolls_back_that_page_only(self, store, token_manager, registry, session_factory):
        await seed_connection(store)

        async def failing_sink(session, user_id, platform, item):
            if item.platform_content_id == "v12":
                raise RuntimeError("recipe store down")
            session.add(Recipe(creator_id=user_id, title=item.caption))
            await session.flush()
            return None

        crashing = ImportPipeline(
            token_manager, store, registry,
            session_factory=session_factory, content_sink=failing_sink, page_size=10, backoff_base=0,
        )

        with pytest.raises(RuntimeError):
            await crashing.import_content(USER, Platform.TIKTOK, 50)

        assert await _count(session_factory, ImportedContentRow) == 10
        assert await _count(session_factory, Recipe) == 10


class TestDedupAndHandOff:
    @pytest.mark.asyncio
    async def test_recipe_created_per_item(self, store, pipeline, session_factory):
        await seed_connection(store)

        result = await pipeline.import_content(USER, Platform.TIKTOK, 3)

        async with session_factory() as session:
            recipes = (await session.execute(select(Recipe))).scalars().all()
        assert len(recipes) == 3
        assert {r.recipe_id for r in recipes} == {i.local_recipe_id for i in result.items}
        assert recipes[0].creator_id == USER
        assert recipes[0].source_platform == "tiktok"
        assert recipes[0].title.startswith("One-pot pasta recipe")

    @pytest.mark.asyncio
    async def test_item_claimed_elsewhere_is_skipped(self, store, token_manager, registry, session_factory):
        """A row appearing after the pre-check loses on the unique key, not on the pre-check."""
        await seed_connection(store)

        async def sink_racing_v1(session, user_id, platform, item):
            if item.platform_content_id == "v0":
                session.add(ImportedContentRow(user_id=user_id, platform=platform.value, platform_content_id="v1"))
                await session.flush()
            return None

        racing = ImportPipeline(
            token_manager, store, registry,
            session_factory=session_factory, content_sink=sink_racing_v1, page_size=3, backoff_base=0,
        )

        result = await racing.import_content(USER, Platform.TIKTOK, 3)

        assert [i.platform_content_id for i in result.items] == ["v0", "v2", "v3"]
        listed = await racing.list_imported_content(USER, Platform.TIKTOK)
        assert sorted(i.platform_content_id for i in listed) == ["v0", "v1", "v2", "v3"]

    @pytest.mark.asyncio
    async def test_concurrent_imports_never_duplicate(self, registry, session_factory):
        serialized = SerializedSessions(session_factory)
        store = CredentialStore(serialized)
        await seed_connection(store)
        token_manager = TokenManager(store, registry, backoff_base=0)
        racing = ImportPipeline(
            token_manager, store, registry,
            session_factory=serialized, page_size=4, backoff_base=0,
        )

        results = await asyncio.gather(
            *(racing.import_content(USER, Platform.TIKTOK, 50) for _ in range(3))
        )

        assert sum(r.imported_count for r in results) == 15
        async with session_factory() as session:
            ids = (await session.execute(select(ImportedContentRow.platform_content_id))).scalars().all()
        assert len(ids) == len(set(ids)) == 15
        assert await _count(session_factory, Recipe) == 15

    @pytest.mark.asyncio
    async def test_food_only_filter(self, store, token_manager, registry, session_factory, fake_client):
        await seed_connection(store)
        fake_client.remote[1].is_food_related = False
        food = ImportPipeline(
            token_manager, store, registry,
            session_factory=session_factory, food_only=True, page_size=10, backoff_base=0,
        )

        result = await food.import_content(USER, Platform.TIKTOK, 3)

        assert [i.platform_content_id for i in result.items] == ["v0", "v2", "v3"]

    @pytest.mark.asyncio
    async def test_list_imported_filters_by_platform(self, store, pipeline):
        await seed_connection(store)
        await pipeline.import_content(USER, Platform.TIKTOK, 2)

        assert len(await pipeline.list_imported_content(USER)) == 2
        assert await pipeline.list_imported_content(USER, Platform.INSTAGRAM) == []
        assert await pipeline.list_imported_content("someone-else") == []
