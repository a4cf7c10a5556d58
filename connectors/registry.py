"""
PlatformRegistry — discovers and provides access to all platform clients.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

from connectors.base import PlatformClient
from connectors.errors import PlatformNotConfigured
from connectors.instagram import InstagramClient
from connectors.schemas import Platform
from connectors.tiktok import TikTokClient

logger = logging.getLogger(__name__)


def _default_clients() -> List[PlatformClient]:
    return [
        TikTokClient(),
        InstagramClient(),
    ]


class PlatformRegistry:
    """Singleton registry for all platform clients."""

    _instance: Optional["PlatformRegistry"] = None

    def __new__(cls) -> "PlatformRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._clients = {}
            cls._instance._discovered = False
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests)."""
        cls._instance = None

    def discover(self) -> None:
        """Register all configured platform clients."""
        if self._discovered:
            return
        for client in _default_clients():
            if client.is_configured():
                self.register(client)
            else:
                logger.warning(
                    "Platform %s skipped — not configured (missing client id/secret)",
                    client.platform.value,
                )
        self._discovered = True

    def register(self, client: PlatformClient) -> None:
        self._clients[client.platform] = client
        logger.info(
            "Platform registered: %s (%s)", client.display_name, client.platform.value
        )

    def get(self, platform: Union[Platform, str]) -> PlatformClient:
        """Get a client by platform; raises ``PlatformNotConfigured``."""
        try:
            key = Platform(platform)
        except ValueError:
            raise PlatformNotConfigured(f"Unknown platform '{platform}'") from None
        client = self._clients.get(key)
        if client is None:
            raise PlatformNotConfigured(f"Platform '{key.value}' is not configured")
        return client

    def list_platforms(self) -> List[Dict[str, object]]:
        """Return info about all registered platforms."""
        return [
            {
                "platform": c.platform.value,
                "display_name": c.display_name,
                "scopes": list(c.scopes),
            }
            for c in self._clients.values()
        ]
