"""
Database helper functions — dialect-aware upserts and the hand-off of
imported content to the recipe store.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.schemas import ContentItem, Platform
from database.models import Recipe

logger = logging.getLogger(__name__)

_TITLE_MAX = 120


def dialect_insert(session: AsyncSession, table):
    """
    ``INSERT`` construct supporting ``ON CONFLICT`` for the session's backend.

    PostgreSQL in production, SQLite (aiosqlite) in tests.
    """
    name = session.bind.dialect.name
    if name == "postgresql":
        return pg_insert(table)
    if name == "sqlite":
        return sqlite_insert(table)
    raise RuntimeError(f"ON CONFLICT upserts not supported on dialect '{name}'")


def _title_from_caption(caption: str, platform: Platform) -> str:
    first_line = caption.strip().splitlines()[0] if caption.strip() else ""
    if not first_line:
        return f"Imported {platform.value} recipe"
    if len(first_line) > _TITLE_MAX:
        return first_line[: _TITLE_MAX - 1].rstrip() + "…"
    return first_line


async def create_recipe_from_content(
    session: AsyncSession,
    user_id: str,
    platform: Platform,
    item: ContentItem,
) -> uuid.UUID:
    """
    Create a draft ``Recipe`` for an imported item and return its id.

    Runs inside the caller's transaction; the import pipeline commits it
    together with the ``imported_content`` row.
    """
    recipe = Recipe(
        recipe_id=uuid.uuid4(),
        creator_id=user_id,
        title=_title_from_caption(item.caption, platform),
        description=item.caption or None,
        video_url=item.source_url if item.content_type == "video" else None,
        image_url=item.thumbnail_url,
        source_platform=platform.value,
    )
    session.add(recipe)
    await session.flush()
    logger.debug("Recipe %s created from %s item %s", recipe.recipe_id, platform.value, item.platform_content_id)
    return recipe.recipe_id
