"""Service wiring for the API.

The lifespan handler builds one ``SyncServices`` and keeps it on
``app.state``; route handlers fetch it with ``get_services``.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Request

from connectors import LedgerConfig, RemoteLedgerClient, create_ledger_client
from connectors.retry import RetryConfig, RetryingLedgerClient
from core.config import SyncSettings
from core.observability.logging import get_logger
from core.security.encryption import TokenEncryption, generate_encryption_key
from core.security.token_store import FileTokenStore, InMemoryTokenStore, TokenStore
from storage.base import SyncStore
from storage.sqlite_store import SQLiteSyncStore
from sync_engine.audit import AuditLogger, RepositoryAuditBackend
from sync_engine.conflicts import ConflictResolver
from sync_engine.loop_guard import LoopGuard
from sync_engine.orchestrator import SyncOrchestrator
from sync_engine.progress import ProgressBus
from sync_engine.token_refresh import TokenRefreshService

logger = get_logger(__name__)


@dataclass
class SyncServices:
    """Everything the sync routes need."""
    settings: SyncSettings
    store: SyncStore
    client: RemoteLedgerClient
    token_store: TokenStore
    token_service: TokenRefreshService
    progress: ProgressBus
    audit: AuditLogger
    orchestrator: SyncOrchestrator
    resolver: ConflictResolver

    async def close(self) -> None:
        self.progress.close()
        await self.client.close()
        self.store.close()


def build_services(
    settings: SyncSettings,
    client: Optional[RemoteLedgerClient] = None,
    store: Optional[SyncStore] = None,
    token_store: Optional[TokenStore] = None,
) -> SyncServices:
    """Build the service graph from settings.

    ``client``, ``store`` and ``token_store`` override the configured ones
    (used by tests).
    """
    store = store or SQLiteSyncStore(settings.db_path)

    if client is None:
        config = LedgerConfig(
            connector_type=settings.connector,
            base_url=settings.api_base_url,
            token_url=settings.token_url,
            tenant_id=settings.tenant_id,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            page_size=settings.page_size,
        )
        client = RetryingLedgerClient(
            create_ledger_client(config),
            RetryConfig(max_retries=settings.max_retries),
        )

    key = settings.token_encryption_key
    if key is None:
        logger.warning("TOKEN_ENCRYPTION_KEY not set; using an ephemeral key and in-memory token storage")
        key = generate_encryption_key()
        token_store = token_store or InMemoryTokenStore()
    elif token_store is None:
        token_store = FileTokenStore(settings.token_store_path) if settings.token_store_path else InMemoryTokenStore()

    token_service = TokenRefreshService(
        client,
        token_store,
        TokenEncryption(key),
        refresh_threshold=timedelta(minutes=settings.token_refresh_minutes),
    )
    progress = ProgressBus()
    audit = AuditLogger(RepositoryAuditBackend(store))
    orchestrator = SyncOrchestrator(
        store,
        client,
        token_service,
        progress=progress,
        audit=audit,
        loop_guard=LoopGuard(store, window=timedelta(seconds=settings.loop_window_seconds)),
        integration_id=settings.integration_id,
        page_size=settings.page_size,
        rate_limit_budget=settings.rate_limit_budget,
    )

    return SyncServices(
        settings=settings,
        store=store,
        client=client,
        token_store=token_store,
        token_service=token_service,
        progress=progress,
        audit=audit,
        orchestrator=orchestrator,
        resolver=ConflictResolver(orchestrator),
    )


async def bootstrap_development_tokens(services: SyncServices) -> None:
    """Give the in-memory ledger a credential so runs work out of the box."""
    integration_id = services.settings.integration_id
    if services.settings.connector != "memory":
        return
    if await services.token_store.get(integration_id) is not None:
        return
    tokens = await services.client.refresh_token("development")
    await services.token_service.store_tokens(integration_id, tokens, tenant_id=services.settings.tenant_id)
    logger.info("Stored development credentials for the in-memory ledger")


def get_services(request: Request) -> SyncServices:
    return request.app.state.services
