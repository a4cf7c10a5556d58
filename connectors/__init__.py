"""
connectors — social platform linking and content import.

Provides:
  • OAuth2 auth-URL generation with signed state
  • Callback handling (code → token exchange → stored connection)
  • Per-user token storage with refresh-before-use
  • Fernet encryption of tokens at rest
  • Paged, deduplicated import of TikTok / Instagram content
  • Disconnect with best-effort remote revocation

Each platform (TikTok, Instagram) is a standalone client satisfying the
``PlatformClient`` protocol in ``connectors.base``.
"""
