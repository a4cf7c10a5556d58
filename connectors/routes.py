"""
Social connection API routes — OAuth connect/callback, list connections,
disconnect, import and imported-content listing.

Route prefix: /api/v1/social
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from auth.dependencies import get_current_user_id
from config.settings import config
from connectors.errors import SocialSyncError
from connectors.registry import PlatformRegistry
from connectors.schemas import ImportResult, Platform
from connectors.service import ConnectionService, build_connection_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["social"])

_service: Optional[ConnectionService] = None


def get_connection_service() -> ConnectionService:
    """Process-wide service instance (overridden in tests)."""
    global _service
    if _service is None:
        _service = build_connection_service()
    return _service


class ImportRequest(BaseModel):
    max_items: int = Field(default=config.import_default_count, gt=0)


def _settings_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"{config.oauth_settings_redirect}?{urlencode(params)}",
        status_code=302,
    )


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/platforms")
async def list_platforms() -> List[Dict[str, Any]]:
    """Configured platforms. No auth required."""
    return PlatformRegistry().list_platforms()


@router.get("/connections")
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> List[Dict[str, Any]]:
    """All platform connections for the authenticated user (no tokens)."""
    connections = await service.list_connections(user_id)
    return [c.public_view() for c in connections]


@router.get("/{platform}/auth-url")
async def get_auth_url(
    platform: Platform,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> Dict[str, str]:
    """OAuth authorization URL; the frontend redirects the user there."""
    return {"auth_url": service.get_auth_url(user_id, platform), "platform": platform.value}


@router.get("/{platform}/callback")
async def oauth_callback(
    platform: Platform,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    service: ConnectionService = Depends(get_connection_service),
) -> RedirectResponse:
    """
    Provider redirect target.  The user is identified by the signed state,
    then sent back to the settings page with a success or error flag.
    """
    try:
        connection = await service.handle_callback(platform, code, state, error)
    except SocialSyncError as exc:
        logger.error("%s OAuth callback failed: %s", platform.value, exc)
        return _settings_redirect(error=f"{platform.value}_connection_failed")

    logger.info(
        "OAuth connected: user=%s platform=%s account=%s",
        connection.user_id,
        platform.value,
        connection.platform_user_id,
    )
    return _settings_redirect(success=f"{platform.value}_connected")


@router.delete("/connections/{platform}")
async def delete_connection(
    platform: Platform,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> Dict[str, Any]:
    """Disconnect; always succeeds once the local row is gone."""
    await service.disconnect(user_id, platform)
    return {"status": "disconnected", "platform": platform.value}


@router.post("/{platform}/import")
async def import_content(
    platform: Platform,
    body: ImportRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> ImportResult:
    return await service.import_content(user_id, platform, body.max_items)


@router.get("/imported")
async def list_imported(
    platform: Optional[Platform] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> List[Dict[str, Any]]:
    items = await service.list_imported_content(user_id, platform)
    return [item.model_dump(mode="json") for item in items]
