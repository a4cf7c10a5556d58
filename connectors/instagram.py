"""
InstagramClient — OAuth2 + media listing via the Instagram Basic Display
flow (api.instagram.com for OAuth, graph.instagram.com for data).

This flow issues no refresh token: when the access token lapses the user
has to re-authorise, so ``refresh_token`` always raises ``RefreshRejected``.
There is no revocation endpoint either.
"""

from __future__ import annotations

import logging
from datetime import datetime
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

_IG_AUTH_URL = "https://api.instagram.com/oauth/authorize"
_IG_TOKEN_URL = "https://api.instagram.com/oauth/access_token"
_IG_GRAPH = "https://graph.instagram.com"

_USER_FIELDS = "id,username,account_type,media_count"
_MEDIA_FIELDS = (
    "id,caption,media_type,media_url,thumbnail_url,permalink,"
    "like_count,comments_count,timestamp"
)
_MAX_PAGE_SIZE = 100

# Graph API error codes
_INVALID_TOKEN_CODES = {102, 190}
_THROTTLE_CODES = {4, 17, 32, 613}


class InstagramClient:
    """Platform client for Instagram."""

    platform = Platform.INSTAGRAM
    display_name = "Instagram"
    scopes: List[str] = ["user_profile", "user_media"]

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client_id = client_id if client_id is not None else config.instagram_client_id
        self._client_secret = (
            client_secret if client_secret is not None else config.instagram_client_secret
        )
        self._redirect_uri = redirect_uri or (
            f"{config.oauth_redirect_base}/api/v1/social/instagram/callback"
        )
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=config.http_timeout_seconds,
            transport=self._transport,
        )

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "scope": ",".join(self.scopes),
            "response_type": "code",
            "state": state,
        }
        return f"{_IG_AUTH_URL}?{urlencode(params)}"

    # ── Tokens ──────────────────────────────────────────────────────────

    async def exchange_code(self, code: str) -> TokenSet:
        try:
            async with self._http() as client:
                resp = await client.post(
                    _IG_TOKEN_URL,
                    data={
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "grant_type": "authorization_code",
                        "redirect_uri": self._redirect_uri,
                        "code": code,
                    },
                )
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AuthExchangeError(f"Instagram token exchange failed: {exc}") from exc

        if resp.status_code >= 400 or "access_token" not in data:
            raise AuthExchangeError(
                f"Instagram OAuth error: {data.get('error_message') or resp.status_code}"
            )
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=None,
            expires_in=data.get("expires_in"),
            scopes=list(self.scopes),
            platform_user_id=str(data["user_id"]) if data.get("user_id") else None,
        )

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        raise RefreshRejected(
            "Instagram does not support token refresh; the user must re-authenticate"
        )

    async def revoke_token(self, access_token: str) -> bool:
        return False

    # ── Data ────────────────────────────────────────────────────────────

    async def get_user_info(self, access_token: str) -> PlatformUser:
        try:
            async with self._http() as client:
                resp = await client.get(
                    f"{_IG_GRAPH}/me",
                    params={"fields": _USER_FIELDS, "access_token": access_token},
                )
        except httpx.HTTPError as exc:
            raise transport_failure(self.platform, exc) from exc

        user = self._checked_body(resp)
        return PlatformUser(
            platform_user_id=str(user.get("id", "")),
            display_name=user.get("username", ""),
            username=user.get("username"),
        )

    async def fetch_content_page(
        self,
        access_token: str,
        cursor: Optional[str],
        page_size: int,
    ) -> ContentPage:
        params: Dict[str, Any] = {
            "fields": _MEDIA_FIELDS,
            "access_token": access_token,
            "limit": max(1, min(page_size, _MAX_PAGE_SIZE)),
        }
        if cursor is not None:
            params["after"] = cursor

        try:
            async with self._http() as client:
                resp = await client.get(f"{_IG_GRAPH}/me/media", params=params)
        except httpx.HTTPError as exc:
            raise transport_failure(self.platform, exc) from exc

        body = self._checked_body(resp)
        items = [self._content_item(post) for post in body.get("data") or []]
        paging = body.get("paging") or {}
        next_cursor = None
        if paging.get("next"):
            next_cursor = (paging.get("cursors") or {}).get("after")
        return ContentPage(items=items, next_cursor=next_cursor)

    def _checked_body(self, resp: httpx.Response) -> Dict[str, Any]:
        raise_for_platform_status(resp, self.platform)
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransientError("Instagram returned a non-JSON body") from exc

        error = body.get("error")
        if not error and resp.status_code < 400:
            return body
        error = error or {}
        code = error.get("code")
        # throttling also arrives typed as OAuthException
        if code in _THROTTLE_CODES:
            raise RateLimited("Instagram rate limit hit", retry_after=parse_retry_after(resp))
        if code in _INVALID_TOKEN_CODES or error.get("type") == "OAuthException":
            raise AuthRequired(f"Instagram: {error.get('message', 'invalid access token')}")
        raise TransientError(f"Instagram API error {code}: {error.get('message', '')}")

    @staticmethod
    def _content_item(post: Dict[str, Any]) -> ContentItem:
        caption = post.get("caption") or ""
        media_type = (post.get("media_type") or "IMAGE").lower()
        return ContentItem(
            platform_content_id=str(post["id"]),
            content_type=media_type,
            caption=caption,
            source_url=post.get("permalink") or post.get("media_url"),
            thumbnail_url=post.get("thumbnail_url") or post.get("media_url"),
            engagement_metrics={
                "likes": post.get("like_count") or 0,
                "comments": post.get("comments_count") or 0,
            },
            created_at=_parse_timestamp(post.get("timestamp")),
            is_food_related=is_food_related(caption),
        )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    # Graph API format: 2017-08-31T18:10:00+0000
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")
    except ValueError:
        return None
