"""Token encryption using AES-GCM.

Provides secure encryption for OAuth tokens at rest.
Uses AES-256-GCM for authenticated encryption.
"""

import base64
import json
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


def generate_encryption_key() -> str:
    """Generate a new 256-bit encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for AES-256
    """
    key = secrets.token_bytes(32)
    return base64.b64encode(key).decode('utf-8')


@dataclass
class EncryptedToken:
    """Encrypted token with metadata."""
    ciphertext: str      # Base64-encoded encrypted data (GCM tag appended)
    nonce: str           # Base64-encoded nonce/IV
    created_at: str      # ISO timestamp
    integration_id: str  # Bound as associated data
    key_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "created_at": self.created_at,
            "integration_id": self.integration_id,
            "key_version": self.key_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedToken":
        return cls(
            ciphertext=data["ciphertext"],
            nonce=data["nonce"],
            created_at=data["created_at"],
            integration_id=data["integration_id"],
            key_version=data.get("key_version", 1),
        )


class TokenEncryption:
    """AES-256-GCM encryption for OAuth tokens.

    Security properties:
    - Confidentiality: AES-256 encryption
    - Integrity: GCM authentication tag
    - Binding: the integration id is authenticated data, so a token blob
      copied to another integration fails to decrypt

    Usage:
        enc = TokenEncryption(generate_encryption_key())
        encrypted = enc.encrypt({"access_token": "...", "refresh_token": "..."}, integration_id="acme")
        tokens = enc.decrypt(encrypted)
    """

    def __init__(self, encryption_key: str):
        """Initialize with base64-encoded encryption key.

        Args:
            encryption_key: Base64-encoded 32-byte key (from generate_encryption_key())

        Raises:
            ValueError: If the key is not valid base64 or not 32 bytes
        """
        try:
            self._key = base64.b64decode(encryption_key, validate=True)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key: {e}") from e
        if len(self._key) != 32:
            raise ValueError("Invalid encryption key: key must be 32 bytes (256 bits)")

        self._aesgcm = AESGCM(self._key)

    def encrypt(
        self,
        token_data: Dict[str, Any],
        integration_id: str,
        key_version: int = 1,
    ) -> EncryptedToken:
        """Encrypt token data.

        Args:
            token_data: Dictionary containing tokens (access_token, refresh_token, etc.)
            integration_id: Integration the tokens belong to
            key_version: Key version for rotation support

        Returns:
            EncryptedToken with encrypted data and metadata
        """
        plaintext = json.dumps(token_data).encode('utf-8')

        # 96-bit nonce, unique per encryption
        nonce = os.urandom(12)
        aad = integration_id.encode('utf-8')

        ciphertext = self._aesgcm.encrypt(nonce, plaintext, aad)

        return EncryptedToken(
            ciphertext=base64.b64encode(ciphertext).decode('utf-8'),
            nonce=base64.b64encode(nonce).decode('utf-8'),
            created_at=datetime.now(timezone.utc).isoformat(),
            integration_id=integration_id,
            key_version=key_version,
        )

    def decrypt(self, encrypted: EncryptedToken) -> Dict[str, Any]:
        """Decrypt token data.

        Args:
            encrypted: EncryptedToken from encrypt()

        Returns:
            Original token data dictionary

        Raises:
            ValueError: If decryption fails (wrong key, tampered data, wrong integration)
        """
        try:
            ciphertext = base64.b64decode(encrypted.ciphertext)
            nonce = base64.b64decode(encrypted.nonce)
            aad = encrypted.integration_id.encode('utf-8')

            plaintext = self._aesgcm.decrypt(nonce, ciphertext, aad)
        except (InvalidTag, ValueError) as e:
            raise ValueError(f"Token decryption failed: {e!r}") from e

        return json.loads(plaintext.decode('utf-8'))
