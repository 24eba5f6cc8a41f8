"""
Credential vault for copier agent keys.

Stored credentials use the ``iv:authTag:ciphertext`` hex layout (16-byte IV,
16-byte GCM tag) so rows written by the relationship dashboard decrypt here
unchanged.
"""

import os
import re
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import VaultConfig, settings
from .exceptions import ConfigurationError, DecryptionError

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_IV_BYTES = 16
_TAG_BYTES = 16


class CredentialVault:
    """AES-256-GCM encryption for credentials at rest."""

    def __init__(self, key_hex: str):
        if not key_hex or not _HEX_KEY_RE.match(key_hex):
            raise ConfigurationError(
                "Encryption key must be a 64-character hex string",
                error_code="invalid_encryption_key",
            )
        self._cipher = AESGCM(bytes.fromhex(key_hex))

    @classmethod
    def from_config(cls, config: Optional[VaultConfig] = None) -> "CredentialVault":
        """Build a vault from settings."""
        config = config or settings.vault
        if not config.encryption_key:
            raise ConfigurationError(
                "VAULT__ENCRYPTION_KEY is not set",
                error_code="missing_encryption_key",
            )
        return cls(config.encryption_key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a credential into ``iv:authTag:ciphertext`` hex."""
        iv = os.urandom(_IV_BYTES)
        sealed = self._cipher.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """
        Decrypt a credential produced by :meth:`encrypt`.

        Raises:
            DecryptionError: malformed token, wrong key or tampered data
        """
        parts = str(token or "").split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted text format")

        try:
            iv = bytes.fromhex(parts[0])
            tag = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
            plaintext = self._cipher.decrypt(iv, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (ValueError, InvalidTag) as e:
            raise DecryptionError(
                "Failed to decrypt credential",
                context={"reason": type(e).__name__},
            ) from e
