"""Secure token storage backends.

Provides different storage backends for encrypted OAuth tokens:
- InMemoryTokenStore: For development/testing
- FileTokenStore: For single-server deployments
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.observability.logging import get_logger
from core.security.encryption import EncryptedToken

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class StoredToken:
    """Token record with metadata."""
    integration_id: str
    connector_type: str  # e.g., "accounting_api"
    encrypted_token: EncryptedToken
    tenant_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    refreshed_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "connector_type": self.connector_type,
            "encrypted_token": self.encrypted_token.to_dict(),
            "tenant_id": self.tenant_id,
            "scopes": self.scopes,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat(),
            "refreshed_at": self.refreshed_at.isoformat() if self.refreshed_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredToken":
        return cls(
            integration_id=data["integration_id"],
            connector_type=data["connector_type"],
            encrypted_token=EncryptedToken.from_dict(data["encrypted_token"]),
            tenant_id=data.get("tenant_id"),
            scopes=data.get("scopes", []),
            expires_at=_parse_dt(data.get("expires_at")),
            created_at=_parse_dt(data.get("created_at")) or _utcnow(),
            refreshed_at=_parse_dt(data.get("refreshed_at")),
            last_used_at=_parse_dt(data.get("last_used_at")),
        )


class TokenStore(ABC):
    """Abstract base class for token storage."""

    @abstractmethod
    async def store(self, token: StoredToken) -> None:
        """Store an encrypted token."""
        pass

    @abstractmethod
    async def get(self, integration_id: str) -> Optional[StoredToken]:
        """Retrieve a stored token."""
        pass

    @abstractmethod
    async def delete(self, integration_id: str) -> bool:
        """Delete a stored token."""
        pass

    @abstractmethod
    async def list_integrations(self) -> List[str]:
        """List all integration IDs with stored tokens."""
        pass

    async def update_last_used(self, integration_id: str) -> None:
        """Update the last_used_at timestamp."""
        token = await self.get(integration_id)
        if token:
            token.last_used_at = _utcnow()
            await self.store(token)


class InMemoryTokenStore(TokenStore):
    """In-memory token storage for development/testing.

    WARNING: Tokens are lost on restart. Use only for development.
    """

    def __init__(self):
        self._tokens: Dict[str, StoredToken] = {}
        self._lock = threading.Lock()

    async def store(self, token: StoredToken) -> None:
        with self._lock:
            self._tokens[token.integration_id] = token

    async def get(self, integration_id: str) -> Optional[StoredToken]:
        with self._lock:
            return self._tokens.get(integration_id)

    async def delete(self, integration_id: str) -> bool:
        with self._lock:
            return self._tokens.pop(integration_id, None) is not None

    async def list_integrations(self) -> List[str]:
        with self._lock:
            return list(self._tokens)


class FileTokenStore(TokenStore):
    """File-based token storage.

    Stores encrypted tokens as JSON files, one per integration.
    Suitable for single-server deployments.

    Directory structure:
        {base_path}/
            {integration_id}.json
    """

    def __init__(self, base_path: str = ".tokens"):
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        try:
            os.chmod(self._base_path, 0o700)
        except OSError:
            logger.debug("Could not restrict token directory permissions")

    def _token_path(self, integration_id: str) -> Path:
        safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in integration_id)
        return self._base_path / f"{safe_id}.json"

    async def store(self, token: StoredToken) -> None:
        path = self._token_path(token.integration_id)
        tmp_path = path.with_suffix(".json.tmp")

        with self._lock:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(token.to_dict(), f, indent=2)
            try:
                os.chmod(tmp_path, 0o600)
            except OSError:
                logger.debug("Could not restrict token file permissions")
            os.replace(tmp_path, path)

    async def get(self, integration_id: str) -> Optional[StoredToken]:
        path = self._token_path(integration_id)

        with self._lock:
            if not path.exists():
                return None
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                return StoredToken.from_dict(data)
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(
                    "Unreadable token file",
                    extra_fields={"path": str(path), "error": str(e)},
                )
                return None

    async def delete(self, integration_id: str) -> bool:
        path = self._token_path(integration_id)

        with self._lock:
            if path.exists():
                path.unlink()
                return True
            return False

    async def list_integrations(self) -> List[str]:
        integrations = []
        for path in self._base_path.glob("*.json"):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                integrations.append(data.get("integration_id", path.stem))
            except json.JSONDecodeError:
                continue
        return integrations
