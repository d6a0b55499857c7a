"""Encryption of OAuth credentials at rest.

Access and refresh tokens of calendar connections are encrypted with Fernet
before they reach the database.

## Key Derivation

The Fernet key is derived from SECRET_KEY with PBKDF2-HMAC-SHA256:
- Salt: ENCRYPTION_SALT (derived from SECRET_KEY when unset)
- Iterations: 480,000
- Key length: 32 bytes

Changing SECRET_KEY or ENCRYPTION_SALT makes stored tokens unreadable;
affected connections have to be re-linked.
"""

from __future__ import annotations

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 480_000

# Cipher derived on first use
_fernet: Fernet | None = None


def _get_fernet() -> Fernet:
    global _fernet

    if _fernet is None:
        from family_sync.config import get_settings

        settings = get_settings()
        _fernet = create_fernet(settings.secret_key, settings.encryption_salt)

    return _fernet


def create_fernet(secret_key: str, salt: str) -> Fernet:
    """Derive a Fernet cipher from a secret and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode("utf-8")))
    return Fernet(key)


def encrypt_token(plaintext: str | None) -> str | None:
    """Encrypt a token for storage. Empty values are stored as NULL."""
    if not plaintext:
        return None
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_token(ciphertext: str | None) -> str | None:
    """Decrypt a stored token.

    Raises:
        ValueError: If the ciphertext was produced with another key
    """
    if not ciphertext:
        return None
    try:
        return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        logger.error("Failed to decrypt token: invalid token or key")
        raise ValueError("Failed to decrypt token") from e
