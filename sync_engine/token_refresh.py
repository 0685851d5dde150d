"""Ledger credential lifecycle.

Access tokens are short-lived. Before every run the orchestrator calls
``ensure_valid``, which refreshes the token when it expires within the
refresh threshold. Refreshes are single-flight per integration: concurrent
callers await the same task, so the refresh token (which the ledger
rotates on use) is spent exactly once.

Tokens are persisted encrypted through a TokenStore.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from connectors.ledger_base import AuthError, LedgerError, RemoteLedgerClient, TokenSet
from core.observability.logging import get_logger
from core.security.encryption import TokenEncryption
from core.security.token_store import StoredToken, TokenStore

logger = get_logger(__name__)

DEFAULT_REFRESH_THRESHOLD = timedelta(minutes=10)
# Health reports ask for a refresh a little earlier than the run does
HEALTH_REFRESH_WINDOW = timedelta(minutes=15)


class ConnectionHealth(BaseModel):
    """Token health for one integration."""
    integration_id: str
    connected: bool
    expires_at: Optional[datetime] = None
    expires_in_minutes: Optional[int] = None
    needs_refresh: bool = False
    needs_reconnect: bool = False
    tenant_id: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    last_error: Optional[str] = None


class TokenRefreshService:
    """Keeps the ledger client's access token valid."""

    def __init__(
        self,
        client: RemoteLedgerClient,
        token_store: TokenStore,
        encryption: TokenEncryption,
        refresh_threshold: timedelta = DEFAULT_REFRESH_THRESHOLD,
        connector_type: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.token_store = token_store
        self.encryption = encryption
        self.refresh_threshold = refresh_threshold
        self.connector_type = connector_type or getattr(client, "connector_type", "unknown")
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._inflight: Dict[str, asyncio.Task] = {}
        self._failures: Dict[str, str] = {}

    async def store_tokens(
        self,
        integration_id: str,
        tokens: TokenSet,
        tenant_id: Optional[str] = None,
        scopes: Optional[List[str]] = None,
    ) -> StoredToken:
        """Encrypt and persist a token set, keeping existing metadata."""
        now = self._clock()
        existing = await self.token_store.get(integration_id)
        if scopes is None:
            if tokens.scope:
                scopes = tokens.scope.split()
            else:
                scopes = existing.scopes if existing else []

        stored = StoredToken(
            integration_id=integration_id,
            connector_type=self.connector_type,
            encrypted_token=self.encryption.encrypt(tokens.to_dict(), integration_id),
            tenant_id=tenant_id or (existing.tenant_id if existing else None),
            scopes=scopes,
            expires_at=tokens.expires_at,
            created_at=existing.created_at if existing else now,
            refreshed_at=now if existing else None,
            last_used_at=existing.last_used_at if existing else None,
        )
        await self.token_store.store(stored)
        self._failures.pop(integration_id, None)
        return stored

    async def load_tokens(self, integration_id: str) -> Optional[TokenSet]:
        stored = await self.token_store.get(integration_id)
        if stored is None:
            return None
        try:
            data = self.encryption.decrypt(stored.encrypted_token)
        except ValueError as e:
            raise AuthError(f"Stored credentials for {integration_id} cannot be read: {e}") from e
        return TokenSet.from_dict(data)

    async def ensure_valid(self, integration_id: str, force: bool = False) -> TokenSet:
        """Return a token set that stays valid past the refresh threshold.

        Args:
            integration_id: Ledger connection
            force: Refresh even if the current token is still fresh

        Raises:
            AuthError: No credentials, or the refresh failed
        """
        tokens = await self.load_tokens(integration_id)
        if tokens is None:
            raise AuthError(f"No credentials stored for integration {integration_id}")

        if not force and not tokens.expires_within(self.refresh_threshold, now=self._clock()):
            self.client.set_access_token(tokens)
            await self.token_store.update_last_used(integration_id)
            return tokens

        task = self._inflight.get(integration_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(integration_id, tokens))
            self._inflight[integration_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(integration_id, None))
        return await asyncio.shield(task)

    async def _refresh(self, integration_id: str, current: TokenSet) -> TokenSet:
        if not current.refresh_token:
            self._failures[integration_id] = "no refresh token"
            raise AuthError(f"Integration {integration_id} has no refresh token; reconnect required")

        logger.info("Refreshing ledger access token", extra_fields={"integration_id": integration_id})
        try:
            fresh = await self.client.refresh_token(current.refresh_token)
        except AuthError as e:
            self._failures[integration_id] = str(e)
            logger.error(f"Token refresh rejected: {e}", extra_fields={"integration_id": integration_id})
            raise
        except LedgerError as e:
            self._failures[integration_id] = str(e)
            logger.error(f"Token refresh failed: {e}", extra_fields={"integration_id": integration_id})
            raise AuthError(f"Token refresh failed: {e}", e.status_code, e.response_body) from e

        if not fresh.refresh_token:
            fresh.refresh_token = current.refresh_token

        await self.store_tokens(integration_id, fresh)
        self.client.set_access_token(fresh)
        logger.info(
            "Ledger access token refreshed",
            extra_fields={"integration_id": integration_id, "expires_at": fresh.expires_at.isoformat()},
        )
        return fresh

    async def connection_health(self, integration_id: str) -> ConnectionHealth:
        stored = await self.token_store.get(integration_id)
        if stored is None:
            return ConnectionHealth(integration_id=integration_id, connected=False, needs_reconnect=True)

        try:
            tokens = await self.load_tokens(integration_id)
        except AuthError as e:
            return ConnectionHealth(
                integration_id=integration_id,
                connected=False,
                needs_reconnect=True,
                tenant_id=stored.tenant_id,
                last_error=str(e),
            )

        now = self._clock()
        remaining = (tokens.expires_at - now).total_seconds()
        last_error = self._failures.get(integration_id)
        needs_reconnect = last_error is not None or (remaining <= 0 and not tokens.refresh_token)

        return ConnectionHealth(
            integration_id=integration_id,
            connected=not needs_reconnect,
            expires_at=tokens.expires_at,
            expires_in_minutes=max(0, int(remaining // 60)),
            needs_refresh=not needs_reconnect and tokens.expires_within(HEALTH_REFRESH_WINDOW, now=now),
            needs_reconnect=needs_reconnect,
            tenant_id=stored.tenant_id,
            last_refreshed_at=stored.refreshed_at,
            last_error=last_error,
        )
