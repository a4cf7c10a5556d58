"""
Token encryption — encrypt / decrypt platform OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The key is read from ``config.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``).

Without a key, encryption is **disabled** and tokens are stored as
plaintext (with a startup warning).  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config.settings import config

logger = logging.getLogger(__name__)

_fernet: Optional[Fernet] = None
_initialised = False


def _init_fernet() -> None:
    """Lazy-initialise the Fernet cipher once."""
    global _fernet, _initialised

    _initialised = True
    key = config.token_encryption_key
    if not key:
        logger.warning(
            "TOKEN_ENCRYPTION_KEY not set — platform tokens will be stored as plaintext"
        )
        _fernet = None
        return

    try:
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
        logger.info("Token encryption enabled (Fernet/AES-128-CBC)")
    except (ValueError, TypeError) as exc:
        logger.error("Failed to initialise Fernet with provided key: %s", exc)
        _fernet = None


def reset_cipher() -> None:
    """Forget the cached cipher so the next call re-reads the key."""
    global _fernet, _initialised
    _fernet = None
    _initialised = False


def encrypt_token(plaintext: Optional[str]) -> Optional[str]:
    """
    Encrypt a token string for database storage.

    ``None`` passes through (platforms without refresh tokens).
    Returns plaintext unchanged when encryption is disabled.
    """
    if plaintext is None:
        return None
    if not _initialised:
        _init_fernet()
    if _fernet is None:
        return plaintext
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: Optional[str]) -> Optional[str]:
    """
    Decrypt a token string read from the database.

    Tokens written before encryption was enabled are not valid Fernet
    tokens and are returned as-is.
    """
    if ciphertext is None:
        return None
    if not _initialised:
        _init_fernet()
    if _fernet is None:
        return ciphertext
    try:
        return _fernet.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.debug("Stored token is not Fernet ciphertext; treating as plaintext")
        return ciphertext


def is_encryption_enabled() -> bool:
    """Check whether token encryption is active."""
    if not _initialised:
        _init_fernet()
    return _fernet is not None
