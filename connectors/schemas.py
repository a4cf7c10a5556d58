"""
Pydantic schemas shared by the platform clients, the credential store,
the token manager and the import pipeline.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field


class Platform(str, Enum):
    TIKTOK = "tiktok"
    INSTAGRAM = "instagram"


class ConnectionStatus(str, Enum):
    """Lifecycle states of a stored platform connection."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    DISCONNECTED = "disconnected"


class StopReason(str, Enum):
    """Why an import run stopped paging."""

    MAX_ITEMS = "max_items"
    EXHAUSTED = "exhausted"
    RATE_LIMITED = "rate_limited"
    PAGE_LIMIT = "page_limit"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# Platform client payloads
# ═══════════════════════════════════════════════════════════════════════════════


class TokenSet(BaseModel):
    """Tokens returned by a code exchange or a refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scopes: List[str] = Field(default_factory=list)
    platform_user_id: Optional[str] = None

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return (now or utcnow()) + timedelta(seconds=self.expires_in)


class PlatformUser(BaseModel):
    platform_user_id: str
    display_name: str = ""
    username: Optional[str] = None
    avatar_url: Optional[str] = None


class ContentItem(BaseModel):
    """One piece of remote content, normalised across platforms."""

    platform_content_id: str
    content_type: str = "video"
    caption: str = ""
    source_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    engagement_metrics: Dict[str, int] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    is_food_related: bool = False


class ContentPage(BaseModel):
    items: List[ContentItem] = Field(default_factory=list)
    next_cursor: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Stored records
# ═══════════════════════════════════════════════════════════════════════════════


class SocialConnection(BaseModel):
    """Decrypted snapshot of a ``social_connections`` row."""

    connection_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str
    platform: Platform
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    platform_user_id: str = ""
    display_name: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    token_version: int = 0
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    connected_at: datetime = Field(default_factory=utcnow)
    last_refreshed_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def effective_status(self, now: Optional[datetime] = None) -> ConnectionStatus:
        """An active row whose token has lapsed is reported as expired."""
        if (
            self.status == ConnectionStatus.ACTIVE
            and self.expires_at is not None
            and self.expires_at <= (now or utcnow())
        ):
            return ConnectionStatus.EXPIRED
        return self.status

    def public_view(self) -> Dict[str, Any]:
        """Connection info safe to return to clients (no tokens)."""
        return {
            "connection_id": str(self.connection_id),
            "platform": self.platform.value,
            "platform_user_id": self.platform_user_id,
            "display_name": self.display_name,
            "status": self.effective_status().value,
            "scopes": self.scopes,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "error_message": self.error_message,
        }


class ImportedContentItem(BaseModel):
    content_id: uuid.UUID
    user_id: str
    platform: Platform
    platform_content_id: str
    local_recipe_id: Optional[uuid.UUID] = None
    content_type: str = "video"
    source_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    caption: Optional[str] = None
    engagement_metrics: Dict[str, int] = Field(default_factory=dict)
    imported_at: datetime


class ImportResult(BaseModel):
    """Outcome of one import run. A rate-limited run is still a success."""

    platform: Platform
    items: List[ImportedContentItem] = Field(default_factory=list)
    stopped_reason: StopReason
    retry_after: Optional[float] = None
    pages_fetched: int = 0

    @computed_field
    @property
    def imported_count(self) -> int:
        return len(self.items)
