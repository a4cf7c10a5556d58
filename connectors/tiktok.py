"""
TikTokClient — OAuth2 + video listing against the TikTok v2 Open API.

TikTok issues rotating refresh tokens (the response to a refresh may carry
a new refresh token) and supports remote revocation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.base import (
    is_food_related,
    parse_retry_after,
    raise_for_platform_status,
    transport_failure,
)
from connectors.errors import (
    AuthExchangeError,
    AuthRequired,
    RateLimited,
    RefreshRejected,
    TransientError,
)
from connectors.schemas import ContentItem, ContentPage, Platform, PlatformUser, TokenSet

logger = logging.getLogger(__name__)

# TikTok v2 endpoints
_TT_AUTH_URL = "https://www.tiktok.com/v2/auth/authorize/"
_TT_TOKEN_URL = "https://open.tiktokapis.com/v2/oauth/token/"
_TT_REVOKE_URL = "https://open.tiktokapis.com/v2/oauth/revoke/"
_TT_USER_URL = "https://open.tiktokapis.com/v2/user/info/"
_TT_VIDEO_LIST_URL = "https://open.tiktokapis.com/v2/video/list/"

_USER_FIELDS = "open_id,union_id,avatar_url,display_name,username"
_VIDEO_FIELDS = (
    "id,title,video_description,cover_image_url,share_url,create_time,"
    "like_count,comment_count,share_count,view_count"
)
_MAX_PAGE_SIZE = 20

# error codes in the {"error": {"code": ...}} envelope of data endpoints
_AUTH_ERROR_CODES = {"access_token_invalid", "scope_not_authorized", "scope_permission_missed"}
_RATE_LIMIT_CODES = {"rate_limit_exceeded"}
# OAuth error strings on the token endpoint that mean the grant is dead
_DEAD_GRANT_ERRORS = {"invalid_grant", "invalid_token", "access_denied"}

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Cache-Control": "no-cache",
}


class TikTokClient:
    """Platform client for TikTok."""

    platform = Platform.TIKTOK
    display_name = "TikTok"
    scopes: List[str] = ["user.info.basic", "video.list"]

    def __init__(
        self,
        *,
        client_key: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client_key = client_key if client_key is not None else config.tiktok_client_key
        self._client_secret = (
            client_secret if client_secret is not None else config.tiktok_client_secret
        )
        self._redirect_uri = redirect_uri or (
            f"{config.oauth_redirect_base}/api/v1/social/tiktok/callback"
        )
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self._client_key and self._client_secret)

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=config.http_timeout_seconds,
            transport=self._transport,
        )

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_key": self._client_key,
            "scope": ",".join(self.scopes),
            "response_type": "code",
            "redirect_uri": self._redirect_uri,
            "state": state,
        }
        return f"{_TT_AUTH_URL}?{urlencode(params)}"

    # ── Tokens ──────────────────────────────────────────────────────────

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange auth code for tokens. Any failure is an AuthExchangeError."""
        try:
            async with self._http() as client:
                resp = await client.post(
                    _TT_TOKEN_URL,
                    data={
                        "client_key": self._client_key,
                        "client_secret": self._client_secret,
                        "code": code,
                        "grant_type": "authorization_code",
                        "redirect_uri": self._redirect_uri,
                    },
                    headers=_FORM_HEADERS,
                )
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AuthExchangeError(f"TikTok token exchange failed: {exc}") from exc

        if resp.status_code >= 400 or "error" in data or "access_token" not in data:
            raise AuthExchangeError(
                f"TikTok OAuth error: {data.get('error_description') or data.get('error') or resp.status_code}"
            )
        return self._token_set(data)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        try:
            async with self._http() as client:
                resp = await client.post(
                    _TT_TOKEN_URL,
                    data={
                        "client_key": self._client_key,
                        "client_secret": self._client_secret,
                        "grant_type": "refresh_token",
                        "refresh_token": refresh_token,
                    },
                    headers=_FORM_HEADERS,
                )
        except httpx.HTTPError as exc:
            raise transport_failure(self.platform, exc) from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(f"TikTok refresh returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientError("TikTok refresh returned a non-JSON body") from exc

        error = data.get("error")
        if error in _DEAD_GRANT_ERRORS or resp.status_code in (400, 401):
            raise RefreshRejected(
                f"TikTok rejected refresh token: {data.get('error_description') or error}"
            )
        if error or "access_token" not in data:
            raise TransientError(f"TikTok refresh error: {error or 'missing access_token'}")
        return self._token_set(data)

    async def revoke_token(self, access_token: str) -> bool:
        try:
            async with self._http() as client:
                resp = await client.post(
                    _TT_REVOKE_URL,
                    data={
                        "client_key": self._client_key,
                        "client_secret": self._client_secret,
                        "token": access_token,
                    },
                    headers=_FORM_HEADERS,
                )
                return resp.status_code == 200
        except httpx.HTTPError:
            logger.warning("TikTok token revocation failed", exc_info=True)
            return False

    @staticmethod
    def _token_set(data: Dict[str, Any]) -> TokenSet:
        scope = data.get("scope") or ""
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scopes=[s for s in scope.split(",") if s],
            platform_user_id=data.get("open_id"),
        )

    # ── Data ────────────────────────────────────────────────────────────

    async def get_user_info(self, access_token: str) -> PlatformUser:
        try:
            async with self._http() as client:
                resp = await client.get(
                    _TT_USER_URL,
                    params={"fields": _USER_FIELDS},
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as exc:
            raise transport_failure(self.platform, exc) from exc

        body = self._checked_body(resp)
        user = body.get("data", {}).get("user", {})
        return PlatformUser(
            platform_user_id=user.get("open_id", ""),
            display_name=user.get("display_name", ""),
            username=user.get("username"),
            avatar_url=user.get("avatar_url"),
        )

    async def fetch_content_page(
        self,
        access_token: str,
        cursor: Optional[str],
        page_size: int,
    ) -> ContentPage:
        payload: Dict[str, Any] = {"max_count": max(1, min(page_size, _MAX_PAGE_SIZE))}
        if cursor is not None:
            payload["cursor"] = int(cursor)

        try:
            async with self._http() as client:
                resp = await client.post(
                    _TT_VIDEO_LIST_URL,
                    params={"fields": _VIDEO_FIELDS},
                    json=payload,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as exc:
            raise transport_failure(self.platform, exc) from exc

        data = self._checked_body(resp).get("data", {})
        items = [self._content_item(video) for video in data.get("videos") or []]
        next_cursor = None
        if data.get("has_more") and data.get("cursor") is not None:
            next_cursor = str(data["cursor"])
        return ContentPage(items=items, next_cursor=next_cursor)

    def _checked_body(self, resp: httpx.Response) -> Dict[str, Any]:
        """Raise the matching signal for a failed data-endpoint response."""
        raise_for_platform_status(resp, self.platform)
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransientError("TikTok returned a non-JSON body") from exc

        error = body.get("error") or {}
        code = error.get("code", "ok")
        if code == "ok" and resp.status_code < 400:
            return body
        if code in _AUTH_ERROR_CODES:
            raise AuthRequired(f"TikTok: {error.get('message') or code}")
        if code in _RATE_LIMIT_CODES:
            raise RateLimited("TikTok rate limit hit", retry_after=parse_retry_after(resp))
        raise TransientError(f"TikTok API error {code}: {error.get('message', '')}")

    @staticmethod
    def _content_item(video: Dict[str, Any]) -> ContentItem:
        caption = video.get("video_description") or video.get("title") or ""
        created = video.get("create_time")
        return ContentItem(
            platform_content_id=str(video["id"]),
            content_type="video",
            caption=caption,
            source_url=video.get("share_url"),
            thumbnail_url=video.get("cover_image_url"),
            engagement_metrics={
                "likes": video.get("like_count") or 0,
                "comments": video.get("comment_count") or 0,
                "shares": video.get("share_count") or 0,
                "views": video.get("view_count") or 0,
            },
            created_at=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
            is_food_related=is_food_related(caption),
        )
