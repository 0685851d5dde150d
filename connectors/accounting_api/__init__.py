"""Accounting API Connector Package.

Implements RemoteLedgerClient for the hosted OAuth2 accounting API.
"""

from connectors.accounting_api.accounting_connector import AccountingApiConnector
from connectors.accounting_api.accounting_client import AccountingApiClient, AccountingApiConfig
from connectors.accounting_api.accounting_auth import AccountingOAuthClient, AccountingOAuthConfig
from connectors.accounting_api.accounting_models import (
    WireContact,
    WireInvoice,
    WireLineItem,
    WirePayment,
)

__all__ = [
    # Connector
    "AccountingApiConnector",
    # HTTP
    "AccountingApiClient",
    "AccountingApiConfig",
    # OAuth
    "AccountingOAuthClient",
    "AccountingOAuthConfig",
    # Models
    "WireContact",
    "WireInvoice",
    "WireLineItem",
    "WirePayment",
]
