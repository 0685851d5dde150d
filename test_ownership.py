"""Field ownership table, payload masking and reference translation."""

import pytest

from core.models.canonical import RECORD_MODELS
from core.models.sync import EntityType, SyncDirection
from sync_engine.errors import UnresolvedReferenceError
from sync_engine.ownership import (
    OWNERSHIP_TABLE,
    FieldOwner,
    FieldOwnershipResolver,
    LinkResolver,
)

SYSTEM_FIELDS = {"id", "remote_id", "updated_at"}


class TestOwnershipTable:

    @pytest.mark.parametrize("entity_type", list(EntityType))
    def test_every_record_field_has_one_owner(self, entity_type):
        rule = OWNERSHIP_TABLE[entity_type]
        assert not (rule.shared & rule.remote_owned)
        assert not (rule.shared & rule.local_owned)
        assert not (rule.remote_owned & rule.local_owned)

        fields = set(RECORD_MODELS[entity_type.value].model_fields) - SYSTEM_FIELDS
        if rule.marker_field not in rule.shared:
            fields.discard(rule.marker_field)
        owned = rule.shared | rule.remote_owned | rule.local_owned
        assert fields == owned

    def test_owner_lookup(self):
        resolver = FieldOwnershipResolver()
        assert resolver.owner("invoice", "total_amount") == FieldOwner.REMOTE
        assert resolver.owner("invoice", "notes") == FieldOwner.LOCAL
        assert resolver.owner("invoice", "due_date") == FieldOwner.SHARED
        assert resolver.owner("invoice", "unknown") is None

    def test_marker_fields(self):
        resolver = FieldOwnershipResolver()
        assert resolver.marker_field("contact") == "contact_number"
        assert resolver.marker_field("invoice") == "reference"
        assert resolver.marker_field("payment") == "reference"


class TestMasking:

    @pytest.fixture
    def resolver(self):
        return FieldOwnershipResolver()

    def test_push_sends_shared_fields_only(self, resolver):
        local = {
            "id": "c-1",
            "name": "Acme",
            "email": "ap@acme.test",
            "notes": "local only",
            "balance": "99.00",
            "tax_number": "123",
        }
        masked = resolver.mask_for_direction("contact", SyncDirection.PUSH, local)
        assert masked == {"name": "Acme", "email": "ap@acme.test"}

    def test_pull_brings_shared_and_remote_owned(self, resolver):
        remote = {
            "remote_id": "r-1",
            "name": "Acme",
            "balance": "99.00",
            "notes": "should never arrive",
        }
        masked = resolver.mask_for_direction("contact", "pull", remote)
        assert masked == {"name": "Acme", "balance": "99.00"}

    def test_line_items_masked_per_direction(self, resolver):
        invoice = {
            "invoice_number": "INV-1",
            "total_amount": "330.00",
            "line_items": [
                {"description": "Work", "quantity": "1", "unit_price": "300", "line_amount": "300.00", "tax_amount": "30.00"},
            ],
        }
        pushed = resolver.mask_for_direction("invoice", "push", invoice)
        assert pushed == {
            "invoice_number": "INV-1",
            "line_items": [{"description": "Work", "quantity": "1", "unit_price": "300"}],
        }
        pulled = resolver.mask_for_direction("invoice", "pull", invoice)
        assert pulled["total_amount"] == "330.00"
        assert pulled["line_items"][0]["line_amount"] == "300.00"

    def test_newer_counterpart_keeps_its_shared_fields(self, resolver):
        source = {"name": "Old name", "balance": "10.00", "updated_at": "2024-01-01T00:00:00Z"}
        counterpart = {"name": "New name", "updated_at": "2024-02-01T00:00:00Z"}
        masked = resolver.mask_for_direction("contact", "pull", source, counterpart=counterpart)
        assert masked == {"balance": "10.00"}

    def test_force_ignores_counterpart_age(self, resolver):
        source = {"name": "Old name", "updated_at": "2024-01-01T00:00:00Z"}
        counterpart = {"name": "New name", "updated_at": "2024-02-01T00:00:00Z"}
        masked = resolver.mask_for_direction("contact", "push", source, counterpart=counterpart, force=True)
        assert masked == {"name": "Old name"}

    def test_both_is_not_a_mask_direction(self, resolver):
        with pytest.raises(ValueError):
            resolver.mask_for_direction("contact", SyncDirection.BOTH, {"name": "x"})


class TestLinkResolver:

    def test_translates_through_remote_links(self, store):
        store.create_local("contact", {"id": "c-1", "name": "Acme", "remote_id": "rc-1"})
        links = LinkResolver(store)

        assert links.to_remote("invoice", {"contact_id": "c-1", "invoice_number": "A"}) == {
            "contact_id": "rc-1", "invoice_number": "A",
        }
        assert links.to_local("invoice", {"contact_id": "rc-1"}) == {"contact_id": "c-1"}

    def test_unlinked_reference_raises_when_strict(self, store):
        links = LinkResolver(store)
        with pytest.raises(UnresolvedReferenceError) as exc:
            links.to_remote("payment", {"invoice_id": "i-missing"})
        assert exc.value.target_type == "invoice"
        assert links.to_remote("payment", {"invoice_id": "i-missing"}, strict=False) == {"invoice_id": None}

    def test_provisional_links(self, store):
        links = LinkResolver(store)
        links.remember_provisional("contact", "c-2", "dry-run:c-2")
        assert links.to_remote("invoice", {"contact_id": "c-2"}) == {"contact_id": "dry-run:c-2"}
        assert links.local_id_for("contact", "dry-run:c-2") == "c-2"
        links.reset()
        assert links.remote_id_for("contact", "c-2") is None

    def test_natural_match_is_case_insensitive(self, store):
        store.create_local("contact", {"id": "c-1", "name": "Acme", "email": "AP@Acme.test"})
        links = LinkResolver(store)
        match = links.match_unlinked_local("contact", {"name": "Acme Ltd", "email": "ap@acme.test "})
        assert match["id"] == "c-1"

    def test_natural_match_requires_a_unique_unlinked_record(self, store):
        store.create_local("contact", {"id": "c-1", "name": "Dup"})
        store.create_local("contact", {"id": "c-2", "name": "Dup"})
        store.create_local("contact", {"id": "c-3", "name": "Linked", "remote_id": "r-3"})
        links = LinkResolver(store)
        assert links.match_unlinked_local("contact", {"name": "Dup"}) is None
        assert links.match_unlinked_local("contact", {"name": "Linked"}) is None

    def test_payments_have_no_natural_key(self, store):
        store.create_local("payment", {"id": "p-1", "amount": "10.00", "reference": "R1"})
        links = LinkResolver(store)
        assert links.match_unlinked_local("payment", {"amount": "10.00", "reference": "R1"}) is None
