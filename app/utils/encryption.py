"""Fernet symmetric encryption for webhook signing secrets.

Webhook signing secrets must be recoverable (every delivery is signed with
them) so they are stored encrypted rather than hashed.

FERNET_KEY holds one or more comma-separated keys generated with
`Fernet.generate_key()`. The first key encrypts; every key is tried when
decrypting, so a new key can be prepended, stored secrets re-encrypted with
`EncryptionService.rotate`, and the old key dropped afterwards.

Usage:
    from app.utils.encryption import get_encryption_service

    service = get_encryption_service()
    encrypted = service.encrypt(secret)
    secret = service.decrypt(encrypted, context="webhook:abc")

Security Notes:
    - NEVER log or expose encrypted values or plaintext secrets
"""

import os
from typing import ClassVar

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


class EncryptionKeyMissing(Exception):
    """Raised when FERNET_KEY is not set or contains an invalid key."""

    pass


class DecryptionError(Exception):
    """Raised when no configured key can decrypt a stored value.

    Attributes:
        context: Identifier of the record whose secret failed to decrypt
            (e.g. a webhook endpoint id). Never the ciphertext itself.
    """

    def __init__(self, message: str, context: str | None = None) -> None:
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            return f"{super().__str__()} (context={self.context})"
        return super().__str__()


def _load_keys(raw: str | None) -> list[Fernet]:
    keys = [part.strip() for part in (raw or "").split(",") if part.strip()]
    if not keys:
        raise EncryptionKeyMissing(
            "FERNET_KEY environment variable is required. "
            "Generate a key with cryptography.fernet.Fernet.generate_key()"
        )
    ciphers = []
    for position, key in enumerate(keys, start=1):
        try:
            ciphers.append(Fernet(key.encode()))
        except ValueError as e:
            # Position only; the key material never reaches the message
            raise EncryptionKeyMissing(
                f"Invalid FERNET_KEY format (key {position}): Fernet key must be 32 "
                "url-safe base64-encoded bytes"
            ) from e
    return ciphers


class EncryptionService:
    """Process-wide encryption service, initialized lazily from FERNET_KEY.

    Example:
        >>> service = get_encryption_service()
        >>> token = service.encrypt("whsec_...")
        >>> service.decrypt(token)
        'whsec_...'
    """

    _instance: ClassVar["EncryptionService | None"] = None
    _cipher: MultiFernet
    key_count: int

    def __new__(cls) -> "EncryptionService":
        if cls._instance is None:
            instance = super().__new__(cls)
            ciphers = _load_keys(os.environ.get("FERNET_KEY"))
            instance._cipher = MultiFernet(ciphers)
            instance.key_count = len(ciphers)
            cls._instance = instance
        return cls._instance

    def encrypt(self, plaintext: str) -> bytes:
        """Encrypt with the primary (first) key."""
        return self._cipher.encrypt(plaintext.encode())

    def decrypt(self, ciphertext: bytes, context: str | None = None) -> str:
        """Decrypt with any configured key.

        Raises:
            DecryptionError: If no key matches or the value is corrupted.
        """
        try:
            return self._cipher.decrypt(ciphertext).decode()
        except InvalidToken as e:
            raise DecryptionError(
                "Decryption failed: invalid encryption key or corrupted data",
                context=context,
            ) from e
        except (TypeError, UnicodeDecodeError) as e:
            raise DecryptionError(
                f"Decryption failed: {type(e).__name__}",
                context=context,
            ) from e

    def rotate(self, ciphertext: bytes, context: str | None = None) -> bytes:
        """Re-encrypt a stored value under the primary key.

        Raises:
            DecryptionError: If no configured key can read the value.
        """
        try:
            return self._cipher.rotate(ciphertext)
        except InvalidToken as e:
            raise DecryptionError(
                "Rotation failed: invalid encryption key or corrupted data",
                context=context,
            ) from e

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the cached instance so the next call rereads FERNET_KEY (tests, rotation)."""
        cls._instance = None


def get_encryption_service() -> EncryptionService:
    """Get the process-wide EncryptionService.

    Raises:
        EncryptionKeyMissing: If FERNET_KEY is not set or invalid.
    """
    return EncryptionService()
