"""
Token encryption for stored Gmail credentials (Fernet).
"""

from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet

from config import settings


class EncryptionKeyMissing(ValueError):
    """Raised when ENCRYPTION_KEY is not configured."""


def generate_key() -> str:
    """New Fernet key suitable for ENCRYPTION_KEY."""
    return Fernet.generate_key().decode()


@lru_cache(maxsize=4)
def _cipher_for(key: str) -> Fernet:
    return Fernet(key.encode())


def _cipher(key: Optional[str] = None) -> Fernet:
    key = key or settings.ENCRYPTION_KEY
    if not key:
        raise EncryptionKeyMissing(
            "ENCRYPTION_KEY not configured; generate one with utils.encryption.generate_key()"
        )
    return _cipher_for(key)


def encrypt_token(token: str, key: Optional[str] = None) -> str:
    """
    Encrypt an OAuth token for storage.

    Example:
        >>> encrypt_token("ya29.secret")
        'gAAAAABh...'
    """
    return _cipher(key).encrypt(token.encode()).decode()


def decrypt_token(encrypted: str, key: Optional[str] = None) -> str:
    """
    Decrypt a stored token.

    Raises:
        cryptography.fernet.InvalidToken: If the token was not produced with this key
    """
    return _cipher(key).decrypt(encrypted.encode()).decode()
