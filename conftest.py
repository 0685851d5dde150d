"""Shared pytest fixtures.

Everything runs against the in-memory ledger and an in-memory SQLite
store; no network access is needed.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from connectors.ledger_base import TokenSet
from connectors.memory import InMemoryLedgerClient
from core.models.sync import SyncRequest
from core.security.encryption import TokenEncryption, generate_encryption_key
from core.security.token_store import InMemoryTokenStore
from storage.sqlite_store import SQLiteSyncStore
from sync_engine.conflicts import ConflictResolver
from sync_engine.orchestrator import SyncOrchestrator
from sync_engine.progress import ProgressBus
from sync_engine.token_refresh import TokenRefreshService

INTEGRATION_ID = "default"


async def _no_sleep(seconds):
    return None


def fresh_tokens(minutes: int = 60, refresh_token: str = "refresh-initial") -> TokenSet:
    return TokenSet(
        access_token="access-initial",
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=minutes),
    )


@pytest.fixture
def store():
    store = SQLiteSyncStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def ledger():
    return InMemoryLedgerClient()


@pytest.fixture
def token_store():
    return InMemoryTokenStore()


@pytest.fixture
def token_service(ledger, token_store):
    service = TokenRefreshService(ledger, token_store, TokenEncryption(generate_encryption_key()))
    asyncio.run(service.store_tokens(INTEGRATION_ID, fresh_tokens()))
    return service


@pytest.fixture
def progress():
    return ProgressBus()


@pytest.fixture
def orchestrator(store, ledger, token_service, progress):
    return SyncOrchestrator(store, ledger, token_service, progress=progress, sleep=_no_sleep)


@pytest.fixture
def resolver(orchestrator):
    return ConflictResolver(orchestrator)


@pytest.fixture
def run_sync(orchestrator):
    """Run one sync synchronously: ``run_sync(direction="both", dry_run=True)``."""
    def run(**kwargs):
        return asyncio.run(orchestrator.run(SyncRequest(**kwargs)))
    return run
