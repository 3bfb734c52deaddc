"""
Encryption utilities for broker tokens stored at rest.

Uses Fernet symmetric encryption (AES-128-CBC with HMAC-SHA256).
Encryption is optional: without ENCRYPTION_KEY tokens are stored as given,
and values that don't look like Fernet tokens are read back unchanged.
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

from tradedesk.config import settings

logger = logging.getLogger(__name__)

_fernet = None


def _get_fernet() -> Fernet:
    """Get or create the Fernet instance from the configured encryption key."""
    global _fernet
    if _fernet is None:
        key = settings.encryption_key
        if not key:
            raise RuntimeError("ENCRYPTION_KEY not set in .env")
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
    return _fernet


def encryption_enabled() -> bool:
    return bool(settings.encryption_key)


def encrypt_value(plaintext: str) -> str:
    """Encrypt a plaintext string and return the Fernet token as a string."""
    if not plaintext:
        return plaintext
    f = _get_fernet()
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a Fernet token string and return the plaintext."""
    if not ciphertext:
        return ciphertext
    f = _get_fernet()
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error("Failed to decrypt value: invalid token or wrong encryption key")
        raise


def is_encrypted(value: str) -> bool:
    """Check if a value appears to already be encrypted (Fernet tokens start with 'gAAAAA')."""
    if not value:
        return False
    return value.startswith("gAAAAA")


def seal(value: str) -> str:
    """Encrypt for storage when a key is configured."""
    if value and encryption_enabled() and not is_encrypted(value):
        return encrypt_value(value)
    return value


def unseal(value: str) -> str:
    """Read a stored value, decrypting it if it was sealed."""
    if value and is_encrypted(value):
        return decrypt_value(value)
    return value
