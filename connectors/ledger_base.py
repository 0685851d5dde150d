"""Abstract Remote Ledger Interface.

This module defines the interface every ledger connector implements. It is
intentionally ledger-agnostic - no wire formats or vendor field names here.

Connectors implement this interface to:
1. List records page by page, optionally only those modified since a time
2. Fetch, create and update single records
3. Exchange a refresh token for a new access token

Key Design Principles:
- Records cross this interface as CANONICAL dicts (see core/models/canonical.py)
  carrying ``remote_id`` and ``updated_at``; reference fields (contact_id,
  invoice_id) hold REMOTE ids
- The sync engine depends ONLY on this interface
- Ledger-specific implementations live in connector subfolders
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


# =============================================================================
# Errors
# =============================================================================

class LedgerError(Exception):
    """Base exception for ledger API errors."""
    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class TransientNetworkError(LedgerError):
    """Timeout, dropped connection or 5xx. Safe to retry."""
    pass


class RateLimitError(LedgerError):
    """Rate limit exceeded (429)."""
    def __init__(self, message: str, retry_after: float = 60):
        super().__init__(message, 429)
        self.retry_after = retry_after


class AuthError(LedgerError):
    """Authentication failed or the refresh token was rejected (401/403, invalid_grant)."""
    pass


class LedgerValidationError(LedgerError):
    """The ledger rejected the payload (400)."""
    def __init__(self, message: str, status_code: int = 400, response_body: str = "",
                 messages: Optional[List[str]] = None):
        super().__init__(message, status_code, response_body)
        self.messages = messages or []


class NotFoundError(LedgerError):
    """Resource not found (404)."""
    pass


# =============================================================================
# Tokens and Pages
# =============================================================================

@dataclass
class TokenSet:
    """OAuth2 token pair with absolute expiry."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    token_type: str = "Bearer"
    scope: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any], now: Optional[datetime] = None) -> "TokenSet":
        """Build from an OAuth2 token endpoint response."""
        now = now or datetime.now(timezone.utc)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=now + timedelta(seconds=int(data.get("expires_in", 1800))),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope"),
        )

    def expires_within(self, delta: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now + delta >= self.expires_at

    @property
    def is_expired(self) -> bool:
        return self.expires_within(timedelta(0))

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenSet":
        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope"),
        )


@dataclass
class LedgerPage:
    """One page of a remote listing."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    total: Optional[int] = None


@dataclass
class LedgerConfig:
    """Configuration for a ledger connector.

    Generic configuration that can be extended by specific connectors.
    """
    connector_type: str                     # "accounting_api", "memory"
    base_url: Optional[str] = None          # Ledger API endpoint
    token_url: Optional[str] = None         # OAuth2 token endpoint
    tenant_id: Optional[str] = None         # Organisation the connection targets
    client_id: str = ""
    client_secret: str = ""
    page_size: int = 100
    timeout_seconds: int = 30
    custom_settings: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Connector Interface
# =============================================================================

class RemoteLedgerClient(ABC):
    """Abstract base class for ledger connectors.

    Implementations:
    - connectors/accounting_api/accounting_connector.py
    - connectors/memory.py (in-process ledger for development and tests)
    """

    connector_type = "abstract"

    def __init__(self, config: Optional[LedgerConfig] = None):
        self.config = config or LedgerConfig(connector_type=self.connector_type)
        self._token: Optional[TokenSet] = None

    def set_access_token(self, token: TokenSet) -> None:
        """Install the credential used for subsequent calls."""
        self._token = token

    @abstractmethod
    async def list_entities(
        self,
        entity_type: str,
        cursor: Optional[str] = None,
        modified_since: Optional[datetime] = None,
    ) -> LedgerPage:
        """List one page of records.

        Args:
            entity_type: "contact", "invoice" or "payment"
            cursor: Opaque cursor from the previous page (None for first page)
            modified_since: Only return records modified at or after this time

        Returns:
            LedgerPage whose next_cursor is None on the last page
        """
        pass

    @abstractmethod
    async def get_entity(self, entity_type: str, remote_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one record, or None if it does not exist."""
        pass

    @abstractmethod
    async def create_entity(self, entity_type: str, payload: Dict[str, Any]) -> str:
        """Create a record and return its remote id."""
        pass

    @abstractmethod
    async def update_entity(self, entity_type: str, remote_id: str, payload: Dict[str, Any]) -> None:
        """Apply a partial update to an existing record."""
        pass

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """Exchange a refresh token for a new token set.

        Raises:
            AuthError: The refresh token was rejected
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None

    async def __aenter__(self) -> "RemoteLedgerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


# =============================================================================
# Connector Factory
# =============================================================================

_connector_registry: Dict[str, type] = {}


def register_connector(connector_type: str):
    """Decorator to register a connector implementation."""
    def decorator(cls):
        cls.connector_type = connector_type
        _connector_registry[connector_type] = cls
        return cls
    return decorator


def create_ledger_client(config: LedgerConfig) -> RemoteLedgerClient:
    """Create a connector instance from configuration.

    Args:
        config: LedgerConfig with connector_type specified

    Returns:
        Configured connector instance

    Raises:
        ValueError: If connector_type is not registered
    """
    connector_type = config.connector_type.lower()

    if connector_type not in _connector_registry:
        available = list(_connector_registry.keys())
        raise ValueError(
            f"Unknown connector type: {connector_type}. "
            f"Available: {available}"
        )

    connector_class = _connector_registry[connector_type]
    return connector_class(config)


def list_available_connectors() -> List[str]:
    """List all registered connector types."""
    return list(_connector_registry.keys())
