"""
SQLAlchemy ORM models for social connections, imported content and the
recipe records imports are handed off to.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
_JSON = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class SocialConnectionRow(Base):
    __tablename__ = "social_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_social_connections_user_platform"),
    )

    connection_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False)
    platform = Column(String(32), nullable=False)
    platform_user_id = Column(String(256), nullable=False, default="")
    display_name = Column(String(256))
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    scopes = Column(_JSON, default=list)
    token_version = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="active")
    connected_at = Column(DateTime(timezone=True), default=_utcnow)
    last_refreshed_at = Column(DateTime(timezone=True))
    last_synced_at = Column(DateTime(timezone=True))
    error_message = Column(Text)


class ImportedContentRow(Base):
    __tablename__ = "imported_content"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "platform",
            "platform_content_id",
            name="uq_imported_content_dedup_key",
        ),
        Index("ix_imported_content_user_platform", "user_id", "platform"),
    )

    content_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False)
    platform = Column(String(32), nullable=False)
    platform_content_id = Column(String(256), nullable=False)
    local_recipe_id = Column(Uuid)
    content_type = Column(String(32), nullable=False, default="video")
    source_url = Column(Text)
    thumbnail_url = Column(Text)
    caption = Column(Text)
    engagement_metrics = Column(_JSON, default=dict)
    imported_at = Column(DateTime(timezone=True), default=_utcnow)


class Recipe(Base):
    __tablename__ = "recipes"

    recipe_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    creator_id = Column(String(64), nullable=False)
    title = Column(String(256), nullable=False)
    description = Column(Text)
    video_url = Column(Text)
    image_url = Column(Text)
    source_platform = Column(String(32))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
