"""Ledger credential refresh."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import INTEGRATION_ID, fresh_tokens
from connectors.ledger_base import AuthError, TokenSet, TransientNetworkError
from core.models.sync import RunState
from core.security.encryption import TokenEncryption, generate_encryption_key
from core.security.token_store import InMemoryTokenStore
from sync_engine.token_refresh import TokenRefreshService


class TestEnsureValid:

    def test_fresh_token_is_used_as_is(self, ledger, token_service):
        tokens = asyncio.run(token_service.ensure_valid(INTEGRATION_ID))
        assert tokens.access_token == "access-initial"
        assert ledger.refresh_calls == 0
        assert ledger._token.access_token == "access-initial"

    def test_expiring_token_is_refreshed_and_stored(self, ledger, token_service):
        asyncio.run(token_service.store_tokens(INTEGRATION_ID, fresh_tokens(minutes=5)))

        tokens = asyncio.run(token_service.ensure_valid(INTEGRATION_ID))

        assert ledger.refresh_calls == 1
        assert tokens.access_token.startswith("access-")
        assert tokens.access_token != "access-initial"
        stored = asyncio.run(token_service.load_tokens(INTEGRATION_ID))
        assert stored.access_token == tokens.access_token
        assert stored.refresh_token == tokens.refresh_token
        assert ledger._token.access_token == tokens.access_token

    def test_force_refreshes_a_fresh_token(self, ledger, token_service):
        asyncio.run(token_service.ensure_valid(INTEGRATION_ID, force=True))
        assert ledger.refresh_calls == 1

    def test_concurrent_callers_share_one_refresh(self, ledger, token_service):
        asyncio.run(token_service.store_tokens(INTEGRATION_ID, fresh_tokens(minutes=1)))
        ledger.refresh_delay = 0.05

        async def many():
            return await asyncio.gather(*(token_service.ensure_valid(INTEGRATION_ID) for _ in range(10)))

        results = asyncio.run(many())
        assert ledger.refresh_calls == 1
        assert len({t.access_token for t in results}) == 1

    def test_missing_credentials(self, ledger):
        service = TokenRefreshService(ledger, InMemoryTokenStore(), TokenEncryption(generate_encryption_key()))
        with pytest.raises(AuthError):
            asyncio.run(service.ensure_valid(INTEGRATION_ID))

    def test_rejected_refresh_token(self, ledger, token_service):
        asyncio.run(token_service.store_tokens(INTEGRATION_ID, fresh_tokens(minutes=1)))
        ledger.valid_refresh_tokens = {"something-else"}

        with pytest.raises(AuthError):
            asyncio.run(token_service.ensure_valid(INTEGRATION_ID))

        health = asyncio.run(token_service.connection_health(INTEGRATION_ID))
        assert health.needs_reconnect is True
        assert health.connected is False
        assert "invalid_grant" in health.last_error

    def test_network_failure_during_refresh_is_an_auth_error(self, ledger, token_service):
        asyncio.run(token_service.store_tokens(INTEGRATION_ID, fresh_tokens(minutes=1)))
        ledger.fail_next("refresh", TransientNetworkError("token endpoint unreachable", 503))

        with pytest.raises(AuthError):
            asyncio.run(token_service.ensure_valid(INTEGRATION_ID))

    def test_refresh_without_rotation_keeps_old_refresh_token(self, ledger, token_service):
        asyncio.run(token_service.store_tokens(INTEGRATION_ID, fresh_tokens(minutes=1, refresh_token="keep-me")))
        ledger.refresh_token = AsyncMock(return_value=TokenSet(
            access_token="access-new",
            refresh_token=None,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=30),
        ))

        tokens = asyncio.run(token_service.ensure_valid(INTEGRATION_ID))

        ledger.refresh_token.assert_awaited_once_with("keep-me")
        assert tokens.refresh_token == "keep-me"
        assert asyncio.run(token_service.load_tokens(INTEGRATION_ID)).refresh_token == "keep-me"

    def test_unreadable_credentials(self, ledger, token_store, token_service):
        other_key = TokenRefreshService(ledger, token_store, TokenEncryption(generate_encryption_key()))
        with pytest.raises(AuthError):
            asyncio.run(other_key.ensure_valid(INTEGRATION_ID))


class TestConnectionHealth:

    def test_healthy_connection(self, token_service):
        health = asyncio.run(token_service.connection_health(INTEGRATION_ID))
        assert health.connected is True
        assert health.needs_refresh is False
        assert health.needs_reconnect is False
        assert 58 <= health.expires_in_minutes <= 60

    def test_refresh_due(self, token_service):
        asyncio.run(token_service.store_tokens(INTEGRATION_ID, fresh_tokens(minutes=12)))
        health = asyncio.run(token_service.connection_health(INTEGRATION_ID))
        assert health.needs_refresh is True
        assert health.connected is True

    def test_expired_without_refresh_token(self, token_service):
        expired = TokenSet(
            access_token="old", refresh_token=None,
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        asyncio.run(token_service.store_tokens(INTEGRATION_ID, expired))
        health = asyncio.run(token_service.connection_health(INTEGRATION_ID))
        assert health.needs_reconnect is True
        assert health.expires_in_minutes == 0

    def test_never_connected(self, ledger):
        service = TokenRefreshService(ledger, InMemoryTokenStore(), TokenEncryption(generate_encryption_key()))
        health = asyncio.run(service.connection_health("unknown"))
        assert health.connected is False
        assert health.needs_reconnect is True


def test_run_without_credentials_is_aborted(store, ledger, token_store, token_service, run_sync):
    asyncio.run(token_store.delete(INTEGRATION_ID))
    store.create_local("contact", {"id": "c-1", "name": "Acme"})

    result = run_sync(direction="both")

    assert result.state == RunState.ABORTED
    assert result.success is False
    assert "Cannot connect to the ledger" in result.message
    assert ledger.mutating_calls() == []
    assert store.list_logs() == []


def test_auth_failure_mid_run_aborts(store, ledger, run_sync):
    ledger.seed("contact", {"name": "Acme"})
    ledger.fail_next("list", AuthError("token revoked", 401))

    result = run_sync(direction="pull")

    assert result.state == RunState.ABORTED
    assert "token revoked" in result.message
    assert store.list_local("contact") == []
