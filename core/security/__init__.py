"""Security module - encryption, token management, secrets."""

from core.security.encryption import (
    TokenEncryption,
    EncryptedToken,
    generate_encryption_key,
)
from core.security.token_store import (
    TokenStore,
    StoredToken,
    InMemoryTokenStore,
    FileTokenStore,
)

__all__ = [
    "TokenEncryption",
    "EncryptedToken",
    "generate_encryption_key",
    "TokenStore",
    "StoredToken",
    "InMemoryTokenStore",
    "FileTokenStore",
]
