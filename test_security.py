"""Token encryption and storage."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from core.security.encryption import EncryptedToken, TokenEncryption, generate_encryption_key
from core.security.token_store import FileTokenStore, InMemoryTokenStore, StoredToken

TOKENS = {"access_token": "a-1", "refresh_token": "r-1", "expires_at": "2030-01-01T00:00:00+00:00"}


class TestTokenEncryption:

    def test_decrypts_what_it_encrypts(self):
        enc = TokenEncryption(generate_encryption_key())
        encrypted = enc.encrypt(TOKENS, "acme")
        assert "r-1" not in encrypted.ciphertext
        assert enc.decrypt(encrypted) == TOKENS

    def test_wrong_key_fails(self):
        encrypted = TokenEncryption(generate_encryption_key()).encrypt(TOKENS, "acme")
        with pytest.raises(ValueError):
            TokenEncryption(generate_encryption_key()).decrypt(encrypted)

    def test_blob_is_bound_to_its_integration(self):
        enc = TokenEncryption(generate_encryption_key())
        encrypted = enc.encrypt(TOKENS, "acme")
        moved = EncryptedToken.from_dict({**encrypted.to_dict(), "integration_id": "other"})
        with pytest.raises(ValueError):
            enc.decrypt(moved)

    @pytest.mark.parametrize("key", ["not base64!", "c2hvcnQ="])
    def test_invalid_keys_rejected(self, key):
        with pytest.raises(ValueError):
            TokenEncryption(key)


def _stored(integration_id="acme"):
    enc = TokenEncryption(generate_encryption_key())
    return StoredToken(
        integration_id=integration_id,
        connector_type="accounting_api",
        encrypted_token=enc.encrypt(TOKENS, integration_id),
        tenant_id="tenant-1",
        scopes=["accounting.transactions", "offline_access"],
        expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
    )


class TestTokenStores:

    def test_file_store_round_trip(self, tmp_path):
        store = FileTokenStore(str(tmp_path / "tokens"))
        asyncio.run(store.store(_stored()))

        loaded = asyncio.run(store.get("acme"))
        assert loaded.tenant_id == "tenant-1"
        assert loaded.scopes == ["accounting.transactions", "offline_access"]
        assert loaded.expires_at == datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert asyncio.run(store.list_integrations()) == ["acme"]

        on_disk = json.loads((tmp_path / "tokens" / "acme.json").read_text())
        assert "r-1" not in json.dumps(on_disk)

        assert asyncio.run(store.delete("acme")) is True
        assert asyncio.run(store.get("acme")) is None
        assert asyncio.run(store.delete("acme")) is False

    def test_file_store_sanitizes_ids(self, tmp_path):
        store = FileTokenStore(str(tmp_path))
        asyncio.run(store.store(_stored("../escape")))
        assert (tmp_path / "___escape.json").exists()

    def test_corrupt_file_reads_as_missing(self, tmp_path):
        store = FileTokenStore(str(tmp_path))
        (tmp_path / "acme.json").write_text("{not json")
        assert asyncio.run(store.get("acme")) is None

    def test_update_last_used(self):
        store = InMemoryTokenStore()
        asyncio.run(store.store(_stored()))
        asyncio.run(store.update_last_used("acme"))
        assert asyncio.run(store.get("acme")).last_used_at is not None
