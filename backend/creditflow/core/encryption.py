"""Symmetric encryption for connector credentials stored at rest.

Uses Fernet (AES-128-CBC with HMAC-SHA256 authentication). The key is
derived from ``INTEGRATION_ENCRYPTION_KEY``, or ``SECRET_KEY`` when no
dedicated key is configured.
"""

import base64
import hashlib
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from creditflow.core.config import settings


def _derive_key(key: str) -> bytes:
    """Derive a Fernet-compatible key from the configuration key.

    Args:
        key: The raw encryption key string

    Returns:
        bytes: A 32-byte URL-safe base64-encoded key for Fernet
    """
    key_bytes = hashlib.sha256(key.encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


@lru_cache(maxsize=1)
def get_fernet() -> Fernet:
    return Fernet(_derive_key(settings.INTEGRATION_ENCRYPTION_KEY or settings.SECRET_KEY))


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a credential value.

    Raises:
        ValueError: If plaintext is empty
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret")
    return get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_secret(ciphertext: str) -> Optional[str]:
    """Decrypt a credential value, returning None if it cannot be read."""
    if not ciphertext:
        return None
    try:
        return get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        return None
