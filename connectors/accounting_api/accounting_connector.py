"""Accounting API connector.

Implements RemoteLedgerClient on top of AccountingApiClient, translating
between the wire models and canonical records.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from connectors.accounting_api.accounting_auth import AccountingOAuthClient, AccountingOAuthConfig
from connectors.accounting_api.accounting_client import AccountingApiClient, AccountingApiConfig
from connectors.accounting_api.accounting_models import WIRE_MODELS
from connectors.ledger_base import (
    LedgerConfig,
    LedgerPage,
    LedgerValidationError,
    RemoteLedgerClient,
    TokenSet,
    register_connector,
)
from core.observability.logging import get_logger

logger = get_logger(__name__)

# entity type -> (collection, id field)
COLLECTIONS = {
    "contact": ("Contacts", "ContactID"),
    "invoice": ("Invoices", "InvoiceID"),
    "payment": ("Payments", "PaymentID"),
}


@register_connector("accounting_api")
class AccountingApiConnector(RemoteLedgerClient):
    """Connector for the hosted accounting API.

    Cursors are page numbers rendered as strings. A short page ends the
    listing.
    """

    def __init__(self, config: LedgerConfig):
        super().__init__(config)
        self.client = AccountingApiClient(AccountingApiConfig(
            base_url=config.base_url or AccountingApiConfig.base_url,
            tenant_id=config.tenant_id,
            page_size=config.page_size,
            timeout_seconds=config.timeout_seconds,
        ))
        self.oauth = AccountingOAuthClient(AccountingOAuthConfig(
            client_id=config.client_id,
            client_secret=config.client_secret,
            token_url=config.token_url or AccountingOAuthConfig.token_url,
            timeout_seconds=config.timeout_seconds,
        ))

    def set_access_token(self, token: TokenSet) -> None:
        super().set_access_token(token)
        self.client.set_token(token)

    def _collection(self, entity_type: str):
        try:
            return COLLECTIONS[entity_type]
        except KeyError:
            raise ValueError(f"Unsupported entity type: {entity_type}")

    def _to_canonical(self, entity_type: str, item: Dict[str, Any]) -> Dict[str, Any]:
        return WIRE_MODELS[entity_type].model_validate(item).to_canonical()

    async def list_entities(
        self,
        entity_type: str,
        cursor: Optional[str] = None,
        modified_since: Optional[datetime] = None,
    ) -> LedgerPage:
        collection, _ = self._collection(entity_type)
        page = int(cursor or 1)
        items = await self.client.list_page(collection, page=page, modified_since=modified_since)
        logger.debug(
            f"Fetched {collection} page {page}",
            extra_fields={"count": len(items)},
        )
        return LedgerPage(
            items=[self._to_canonical(entity_type, item) for item in items],
            next_cursor=str(page + 1) if len(items) >= self.client.api_config.page_size else None,
        )

    async def get_entity(self, entity_type: str, remote_id: str) -> Optional[Dict[str, Any]]:
        collection, _ = self._collection(entity_type)
        item = await self.client.get_one(collection, remote_id)
        return self._to_canonical(entity_type, item) if item else None

    async def create_entity(self, entity_type: str, payload: Dict[str, Any]) -> str:
        collection, id_field = self._collection(entity_type)
        body = WIRE_MODELS[entity_type].from_canonical(payload).to_wire()
        created = await self.client.create(collection, body)
        return created[id_field]

    async def update_entity(self, entity_type: str, remote_id: str, payload: Dict[str, Any]) -> None:
        collection, id_field = self._collection(entity_type)
        if entity_type == "payment":
            # The ledger only allows deleting a payment, not editing it
            raise LedgerValidationError(
                "Payments cannot be modified in the ledger; delete and re-create instead",
                messages=["Payment is immutable"],
            )
        body = WIRE_MODELS[entity_type].from_canonical(payload).to_wire()
        body[id_field] = remote_id
        await self.client.update(collection, remote_id, body)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        return await self.oauth.refresh(refresh_token)

    async def close(self) -> None:
        await self.client.close()
