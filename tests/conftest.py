"""
Shared fixtures: a SQLite-backed session factory, an in-memory fake
platform client and the wired service graph.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional, Set

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from connectors.errors import AuthExchangeError, AuthRequired
from connectors.importer import ImportPipeline
from connectors.registry import PlatformRegistry
from connectors.schemas import (
    ConnectionStatus,
    ContentItem,
    ContentPage,
    Platform,
    PlatformUser,
    SocialConnection,
    TokenSet,
    utcnow,
)
from connectors.service import ConnectionService
from connectors.store import CredentialStore
from connectors.token_manager import TokenManager
from database.models import Base

USER = "user-1"


class FakeClient:
    """Scriptable stand-in for a platform client; pages by integer offset."""

    display_name = "Fake"
    scopes = ["video.list"]

    def __init__(self, platform: Platform = Platform.TIKTOK, items: int = 0):
        self.platform = platform
        self.remote: List[ContentItem] = [
            ContentItem(
                platform_content_id=f"v{i}",
                caption=f"One-pot pasta recipe #{i}",
                source_url=f"https://video.example/v{i}",
                is_food_related=True,
            )
            for i in range(items)
        ]
        self.expires_in: Optional[int] = 3600
        self.issue_refresh_token = True
        self.refresh_errors: List[Exception] = []
        self.fetch_errors: List[Optional[Exception]] = []
        self.rejected_tokens: Set[str] = set()
        self.on_refresh = None
        self.revoke_error: Optional[Exception] = None
        self.exchange_calls: List[str] = []
        self.refresh_calls: List[str] = []
        self.fetch_calls: List[tuple] = []
        self.revoked: List[str] = []
        self._issued = 0

    def is_configured(self) -> bool:
        return True

    def get_auth_url(self, state: str) -> str:
        return f"https://fake.example/authorize?state={state}"

    async def exchange_code(self, code: str) -> TokenSet:
        self.exchange_calls.append(code)
        if code == "bad-code":
            raise AuthExchangeError("code expired")
        return TokenSet(
            access_token="access-0",
            refresh_token="refresh-0" if self.issue_refresh_token else None,
            expires_in=self.expires_in,
            scopes=list(self.scopes),
        )

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        self.refresh_calls.append(refresh_token)
        if self.on_refresh is not None:
            await self.on_refresh()
        if self.refresh_errors:
            raise self.refresh_errors.pop(0)
        self._issued += 1
        return TokenSet(
            access_token=f"access-{self._issued}",
            refresh_token=f"refresh-{self._issued}",
            expires_in=self.expires_in,
        )

    async def revoke_token(self, access_token: str) -> bool:
        self.revoked.append(access_token)
        if self.revoke_error is not None:
            raise self.revoke_error
        return True

    async def get_user_info(self, access_token: str) -> PlatformUser:
        return PlatformUser(platform_user_id="remote-42", display_name="Chef Remote")

    async def fetch_content_page(self, access_token, cursor, page_size) -> ContentPage:
        self.fetch_calls.append((access_token, cursor, page_size))
        await asyncio.sleep(0)
        if self.fetch_errors:
            error = self.fetch_errors.pop(0)
            if error is not None:
                raise error
        if access_token in self.rejected_tokens:
            raise AuthRequired("token rejected")
        start = int(cursor or 0)
        chunk = self.remote[start:start + page_size]
        end = start + len(chunk)
        return ContentPage(
            items=chunk,
            next_cursor=str(end) if end < len(self.remote) else None,
        )


class SerializedSessions:
    """Session factory wrapper letting one transaction at a time reach SQLite."""

    def __init__(self, factory: async_sessionmaker[AsyncSession]):
        self._factory = factory
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def __call__(self):
        async with self._lock:
            async with self._factory() as session:
                yield session


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'social.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient(Platform.TIKTOK, items=15)


@pytest.fixture
def registry(fake_client):
    PlatformRegistry.reset()
    reg = PlatformRegistry()
    reg.register(fake_client)
    yield reg
    PlatformRegistry.reset()


@pytest.fixture
def store(session_factory) -> CredentialStore:
    return CredentialStore(session_factory)


@pytest.fixture
def token_manager(store, registry) -> TokenManager:
    return TokenManager(store, registry, safety_margin=60, max_retries=2, backoff_base=0)


@pytest.fixture
def pipeline(token_manager, store, registry, session_factory) -> ImportPipeline:
    return ImportPipeline(
        token_manager,
        store,
        registry,
        session_factory=session_factory,
        page_size=10,
        max_items_cap=100,
        max_pages=50,
        food_only=False,
        max_retries=2,
        backoff_base=0,
    )


@pytest.fixture
def service(store, token_manager, pipeline, registry) -> ConnectionService:
    return ConnectionService(store, token_manager, pipeline, registry)


async def seed_connection(
    store: CredentialStore,
    *,
    platform: Platform = Platform.TIKTOK,
    user_id: str = USER,
    access_token: str = "access-0",
    refresh_token: Optional[str] = "refresh-0",
    expires_in: Optional[int] = 3600,
    status: ConnectionStatus = ConnectionStatus.ACTIVE,
) -> SocialConnection:
    """Store a connection directly, bypassing the OAuth flow."""
    expires_at = utcnow() + timedelta(seconds=expires_in) if expires_in is not None else None
    return await store.upsert(
        SocialConnection(
            user_id=user_id,
            platform=platform,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            platform_user_id="remote-42",
            status=status,
        )
    )
