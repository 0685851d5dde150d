"""Ledger Connectors - Pluggable remote ledger integrations.

This package contains the abstract ledger interface and concrete
implementations. The sync engine depends only on RemoteLedgerClient.

This package handles:
- OAuth2 token refresh
- Wire format <-> canonical record translation
- API communication, pagination and error mapping
- Retrying transient failures

To add a new ledger:
1. Create a new folder (e.g., quickbooks/)
2. Implement RemoteLedgerClient
3. Register using @register_connector decorator
"""

from connectors.ledger_base import (
    # Core interface
    RemoteLedgerClient,
    LedgerConfig,
    LedgerPage,
    TokenSet,

    # Errors
    LedgerError,
    TransientNetworkError,
    RateLimitError,
    AuthError,
    LedgerValidationError,
    NotFoundError,

    # Factory functions
    create_ledger_client,
    register_connector,
    list_available_connectors,
)
from connectors.retry import RetryConfig, RetryingLedgerClient
from connectors.memory import InMemoryLedgerClient
from connectors.accounting_api import AccountingApiConnector

__all__ = [
    # Core interface
    "RemoteLedgerClient",
    "LedgerConfig",
    "LedgerPage",
    "TokenSet",

    # Errors
    "LedgerError",
    "TransientNetworkError",
    "RateLimitError",
    "AuthError",
    "LedgerValidationError",
    "NotFoundError",

    # Retry
    "RetryConfig",
    "RetryingLedgerClient",

    # Implementations
    "InMemoryLedgerClient",
    "AccountingApiConnector",

    # Factory
    "create_ledger_client",
    "register_connector",
    "list_available_connectors",
]
