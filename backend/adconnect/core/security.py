"""
Token encryption for credentials at rest.

Implements:
- Fernet encryption (AES-128-CBC + HMAC-SHA256, random IV per token)
- Read support for the legacy ``iv_hex:cipher_hex`` AES-256-CBC format

The key is derived once from ``settings.encryption_key`` with SHA-256, so any
secret string can be configured.

SECURITY CRITICAL: This module handles sensitive operations.
"""

import base64
import binascii
import hashlib
from functools import lru_cache
from typing import Optional

import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from adconnect.config import settings

logger = structlog.get_logger()

LEGACY_IV_BYTES = 16


def derive_fernet_key(secret: str) -> bytes:
    """Derive a 32-byte url-safe base64 Fernet key from an arbitrary secret."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def derive_legacy_key(secret: str) -> bytes:
    """Key used by rows written before the Fernet migration."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.b64encode(digest)[:32]


class TokenCipher:
    """
    Symmetric cipher for OAuth access/refresh tokens.

    ``decrypt`` never raises: undecryptable input yields None so that a
    corrupted or foreign value degrades to "reconnect your account" rather
    than crashing the caller.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Encryption secret must not be empty")
        self._fernet = Fernet(derive_fernet_key(secret))
        self._legacy_key = derive_legacy_key(secret)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a token for storage.

        Args:
            plaintext: Plain text token

        Returns:
            Fernet token (url-safe base64 text)
        """
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored token.

        Args:
            ciphertext: Value read from storage

        Returns:
            Decrypted token string, or None if decryption fails
        """
        if not ciphertext:
            return None

        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, UnicodeError, ValueError):
            pass

        if ":" in ciphertext:
            return self._decrypt_legacy(ciphertext)

        logger.warning("token_decrypt_failed", length=len(ciphertext))
        return None

    def _decrypt_legacy(self, ciphertext: str) -> Optional[str]:
        iv_hex, _, body_hex = ciphertext.partition(":")
        try:
            iv = bytes.fromhex(iv_hex)
            body = bytes.fromhex(body_hex)
            if len(iv) != LEGACY_IV_BYTES or not body:
                raise ValueError("malformed legacy token")

            decryptor = Cipher(algorithms.AES(self._legacy_key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(body) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, binascii.Error, UnicodeError):
            logger.warning("legacy_token_decrypt_failed")
            return None


@lru_cache
def get_cipher() -> TokenCipher:
    """Process-wide cipher built from settings."""
    return TokenCipher(settings.encryption_key)
