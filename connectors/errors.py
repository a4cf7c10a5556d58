"""
Error taxonomy for social account linking and content import.

Caller-facing errors derive from ``SocialSyncError``.  The three
``PlatformSignal`` subclasses are raised by platform clients and are
normally handled inside the token manager / import pipeline; they only
reach a caller wrapped in one of the caller-facing errors.
"""

from __future__ import annotations

from typing import Optional


class SocialSyncError(Exception):
    """Base class for every error raised by the connectors package."""


class AuthExchangeError(SocialSyncError):
    """The authorization code was rejected; the user must restart OAuth."""


class ReauthRequired(SocialSyncError):
    """The stored credential is dead; the user must reconnect the platform."""


class TemporarilyUnavailable(SocialSyncError):
    """The platform kept failing transiently; safe to retry later."""


class NotConnected(SocialSyncError):
    """No active connection exists for this user + platform."""


class PlatformNotConfigured(SocialSyncError):
    """Unknown platform, or one without client credentials."""


class RateLimited(SocialSyncError):
    """The platform throttled us. ``retry_after`` is in seconds, when known."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


# ── Platform client signals ─────────────────────────────────────────────


class PlatformSignal(SocialSyncError):
    pass


class RefreshRejected(PlatformSignal):
    """The refresh token itself is invalid or revoked. Terminal."""


class TransientError(PlatformSignal):
    """Network failure or 5xx. Retryable with backoff."""


class AuthRequired(PlatformSignal):
    """The access token was rejected by the platform."""
