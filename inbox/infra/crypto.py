# inbox/infra/crypto.py
"""
Fernet encryption for channel-connection credentials.

Provider access tokens and webhook secrets are stored in
``channel_connections.credentials_encrypted`` as a Fernet token whose JSON
payload also carries the (tenant_id, channel) pair it was sealed for.
Opening the blob under any other pair fails, so a ciphertext copied to
another tenant's row is useless.

Usage:
    crypto = get_crypto()
    blob = crypto.seal_credentials(
        {"access_token": "EAAG...", "app_secret": "abc"},
        tenant_id="t1",
        channel="whatsapp",
    )
    creds = crypto.open_credentials(blob, tenant_id="t1", channel="whatsapp")
"""
from __future__ import annotations

import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from inbox.infra.logging_config import get_logger

logger = get_logger(__name__)

_CTX_TENANT_KEY = "__ctx_tenant_id"
_CTX_CHANNEL_KEY = "__ctx_channel"


class CryptoError(Exception):
    """Raised when encryption/decryption fails."""


class CryptoNotConfiguredError(CryptoError):
    """Raised when encryption key is not configured."""


class CryptoContextMismatchError(CryptoError):
    """Raised when the sealed (tenant, channel) doesn't match the one requested."""


class FernetCrypto:
    """Fernet-based encryption for credential blobs."""

    def __init__(self, key: str | bytes):
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except Exception as exc:
            raise CryptoError(f"Invalid Fernet key: {exc}") from exc

    def seal_credentials(
        self,
        credentials: dict[str, Any],
        *,
        tenant_id: str,
        channel: str,
    ) -> bytes:
        """Encrypt credentials bound to (tenant_id, channel)."""
        bound = {
            _CTX_TENANT_KEY: tenant_id,
            _CTX_CHANNEL_KEY: channel,
            **credentials,
        }
        try:
            return self._fernet.encrypt(json.dumps(bound, ensure_ascii=False).encode("utf-8"))
        except Exception as exc:
            raise CryptoError(f"Encryption failed: {exc}") from exc

    def open_credentials(
        self,
        ciphertext: bytes | memoryview,
        *,
        tenant_id: str,
        channel: str,
    ) -> dict[str, Any]:
        """
        Decrypt credentials and verify the embedded binding.

        Raises:
            CryptoContextMismatchError: sealed for another tenant/channel
            CryptoError: wrong key, corrupted data, or invalid JSON
        """
        if isinstance(ciphertext, memoryview):
            ciphertext = bytes(ciphertext)
        try:
            data = json.loads(self._fernet.decrypt(ciphertext))
        except InvalidToken:
            raise CryptoError("Decryption failed: invalid token (wrong key or corrupted data)")
        except json.JSONDecodeError as exc:
            raise CryptoError(f"Decryption succeeded but JSON parsing failed: {exc}") from exc

        stored_tenant = data.pop(_CTX_TENANT_KEY, None)
        stored_channel = data.pop(_CTX_CHANNEL_KEY, None)
        if stored_tenant != tenant_id or stored_channel != channel:
            raise CryptoContextMismatchError(
                "Credential context mismatch: the ciphertext was sealed "
                "for a different tenant/channel pair"
            )
        return data

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key (set it as TENANT_ENCRYPTION_KEY)."""
        return Fernet.generate_key().decode("ascii")


_crypto: FernetCrypto | None = None


def get_crypto() -> FernetCrypto:
    """
    Get the global FernetCrypto singleton, built from settings.tenant_encryption_key.

    Raises:
        CryptoNotConfiguredError: If TENANT_ENCRYPTION_KEY is not set
    """
    global _crypto
    if _crypto is None:
        from inbox.config import settings

        if not settings.tenant_encryption_key:
            raise CryptoNotConfiguredError(
                "TENANT_ENCRYPTION_KEY is not configured. "
                "Generate one with FernetCrypto.generate_key() and set it in .env"
            )
        _crypto = FernetCrypto(settings.tenant_encryption_key)
        logger.info("Fernet crypto initialized")

    return _crypto


def reset_crypto() -> None:
    """Reset the global crypto singleton (for testing)."""
    global _crypto
    _crypto = None
