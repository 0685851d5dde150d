"""Accounting API connector: wire mapping, HTTP client calls, retries."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from connectors.accounting_api.accounting_client import AccountingApiClient, AccountingApiConfig, idempotency_key
from connectors.accounting_api.accounting_connector import AccountingApiConnector
from connectors.accounting_api.accounting_models import (
    WireContact,
    WireInvoice,
    WirePayment,
    parse_ledger_error,
)
from connectors.ledger_base import (
    LedgerConfig,
    LedgerValidationError,
    RateLimitError,
    TransientNetworkError,
    create_ledger_client,
)
from connectors.memory import InMemoryLedgerClient
from connectors.retry import RetryConfig, RetryingLedgerClient
from core.models.canonical import parse_timestamp

WIRE_CONTACT = {
    "ContactID": "5b96e86b-418e-48e8-8949-308c14aec278",
    "ContactNumber": "CUST-1 [sync:run-1]",
    "Name": "Acme Pty Ltd",
    "FirstName": "Jo",
    "LastName": "Bloggs",
    "EmailAddress": "ap@acme.test",
    "IsCustomer": True,
    "Phones": [
        {"PhoneType": "MOBILE", "PhoneNumber": "0400 000 000"},
        {"PhoneType": "DEFAULT", "PhoneNumber": "555 0100", "PhoneAreaCode": "02"},
    ],
    "Addresses": [{"AddressType": "POBOX", "AddressLine1": "PO Box 1", "City": "Sydney", "PostalCode": "2000"}],
    "Balances": {"AccountsReceivable": {"Outstanding": 120.5, "Overdue": 0}},
    "TaxNumber": "12 345 678 901",
    "UpdatedDateUTC": "/Date(1700000000000+0000)/",
}

WIRE_INVOICE = {
    "InvoiceID": "243216c5-369e-4056-ac67-05388f86dc81",
    "InvoiceNumber": "INV-0042",
    "Type": "ACCPAY",
    "Contact": {"ContactID": "5b96e86b-418e-48e8-8949-308c14aec278", "Name": "Acme Pty Ltd"},
    "Status": "AUTHORISED",
    "Date": "/Date(1700000000000+0000)/",
    "CurrencyCode": "AUD",
    "Reference": "PO 42",
    "LineItems": [{"Description": "Widgets", "Quantity": 2, "UnitAmount": 50, "LineAmount": 100, "TaxAmount": 10}],
    "SubTotal": 100,
    "TotalTax": 10,
    "Total": 110,
    "AmountDue": 110,
    "AmountPaid": 0,
    "UpdatedDateUTC": "2024-03-01T10:00:00",
}


class TestWireModels:

    def test_contact_to_canonical(self):
        record = WireContact.model_validate(WIRE_CONTACT).to_canonical()

        assert record["remote_id"] == WIRE_CONTACT["ContactID"]
        assert record["name"] == "Acme Pty Ltd"
        assert record["phone"] == "02 555 0100"
        assert record["address_line1"] == "PO Box 1"
        assert record["city"] == "Sydney"
        assert record["contact_person"] == "Jo Bloggs"
        assert record["is_customer"] is True
        assert record["balance"] == "120.5"
        assert record["contact_number"] == "CUST-1 [sync:run-1]"
        assert parse_timestamp(record["updated_at"]) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_contact_from_canonical_sends_only_given_fields(self):
        body = WireContact.from_canonical({"name": "Acme", "phone": "555 0100"}).to_wire()

        assert body["Name"] == "Acme"
        assert body["Phones"] == [{"PhoneType": "DEFAULT", "PhoneNumber": "555 0100"}]
        assert "EmailAddress" not in body
        assert "TaxNumber" not in body
        assert "IsCustomer" not in body

    def test_invoice_to_canonical(self):
        record = WireInvoice.model_validate(WIRE_INVOICE).to_canonical()

        assert record["kind"] == "payable"
        assert record["status"] == "SENT"
        assert record["contact_id"] == WIRE_CONTACT["ContactID"]
        assert record["issue_date"] == "2023-11-14"
        assert record["total_amount"] == "110"
        assert record["line_items"][0]["unit_price"] == "50"
        assert record["line_items"][0]["tax_amount"] == "10"

    def test_invoice_from_canonical(self):
        body = WireInvoice.from_canonical({
            "invoice_number": "INV-1",
            "kind": "receivable",
            "contact_id": "remote-contact",
            "status": "SENT",
            "reference": None,
            "line_items": [{"description": "Work", "quantity": "2", "unit_price": "100", "tax_type": "OUTPUT"}],
        }).to_wire()

        assert body["Type"] == "ACCREC"
        assert body["Status"] == "AUTHORISED"
        assert body["Contact"] == {"ContactID": "remote-contact"}
        assert body["Reference"] == ""
        assert body["LineAmountTypes"] == "Exclusive"
        assert body["LineItems"] == [
            {"Description": "Work", "Quantity": 2.0, "UnitAmount": 100.0, "TaxType": "OUTPUT"}
        ]

    def test_payment_currency_comes_from_invoice(self):
        record = WirePayment.model_validate({
            "PaymentID": "p-1",
            "Invoice": {"InvoiceID": "i-1", "CurrencyCode": "NZD"},
            "Amount": 25.5,
            "Status": "AUTHORISED",
        }).to_canonical()
        assert record["invoice_id"] == "i-1"
        assert record["currency"] == "NZD"
        assert record["amount"] == "25.5"

    def test_validation_messages(self):
        body = {"Elements": [{"ValidationErrors": [{"Message": "Email address must be valid."}]}]}
        assert parse_ledger_error(body) == ["Email address must be valid."]
        assert parse_ledger_error({"Message": "A validation exception occurred"}) == ["A validation exception occurred"]
        assert parse_ledger_error({}) == []


@pytest.fixture
def connector():
    return create_ledger_client(LedgerConfig(
        connector_type="accounting_api", tenant_id="tenant-1", client_id="id", client_secret="secret", page_size=2,
    ))


class TestConnector:

    def test_registry_builds_connector(self, connector):
        assert isinstance(connector, AccountingApiConnector)
        assert connector.client.api_config.tenant_id == "tenant-1"

    def test_full_page_has_a_next_cursor(self, connector):
        connector.client.list_page = AsyncMock(return_value=[WIRE_CONTACT, WIRE_CONTACT])

        page = asyncio.run(connector.list_entities("contact"))

        assert page.next_cursor == "2"
        assert page.items[0]["name"] == "Acme Pty Ltd"
        connector.client.list_page.assert_awaited_once_with("Contacts", page=1, modified_since=None)

    def test_short_page_ends_listing(self, connector):
        connector.client.list_page = AsyncMock(return_value=[WIRE_INVOICE])
        page = asyncio.run(connector.list_entities("invoice", cursor="3"))
        assert page.next_cursor is None
        connector.client.list_page.assert_awaited_once_with("Invoices", page=3, modified_since=None)

    def test_create_returns_remote_id(self, connector):
        connector.client.create = AsyncMock(return_value={"ContactID": "new-id"})

        remote_id = asyncio.run(connector.create_entity("contact", {"name": "Acme"}))

        assert remote_id == "new-id"
        collection, body = connector.client.create.await_args.args
        assert collection == "Contacts"
        assert body["Name"] == "Acme"

    def test_update_carries_id(self, connector):
        connector.client.update = AsyncMock(return_value={})
        asyncio.run(connector.update_entity("invoice", "inv-1", {"reference": "PO 9"}))
        collection, remote_id, body = connector.client.update.await_args.args
        assert (collection, remote_id) == ("Invoices", "inv-1")
        assert body == {"InvoiceID": "inv-1", "Reference": "PO 9"}

    def test_payments_are_immutable(self, connector):
        with pytest.raises(LedgerValidationError):
            asyncio.run(connector.update_entity("payment", "p-1", {"amount": "10"}))

    def test_missing_record(self, connector):
        connector.client.get_one = AsyncMock(return_value=None)
        assert asyncio.run(connector.get_entity("contact", "gone")) is None


class TestApiClient:

    def test_create_is_idempotent_per_body(self):
        client = AccountingApiClient(AccountingApiConfig())
        client._request = AsyncMock(return_value={"Contacts": [{"ContactID": "c-1", "Name": "Acme"}]})

        created = asyncio.run(client.create("Contacts", {"Name": "Acme"}))

        assert created["ContactID"] == "c-1"
        headers = client._request.await_args.kwargs["headers"]
        assert headers["Idempotency-Key"] == idempotency_key("Contacts", {"Name": "Acme"})
        assert idempotency_key("Contacts", {"Name": "Acme"}) != idempotency_key("Contacts", {"Name": "Beta"})

    def test_item_level_validation_errors(self):
        client = AccountingApiClient(AccountingApiConfig())
        client._request = AsyncMock(return_value={"Invoices": [{
            "HasValidationErrors": True,
            "ValidationErrors": [{"Message": "Account code '999' is not a valid code"}],
        }]})

        with pytest.raises(LedgerValidationError) as exc_info:
            asyncio.run(client.update("Invoices", "i-1", {"InvoiceID": "i-1"}))
        assert exc_info.value.messages == ["Account code '999' is not a valid code"]

    def test_modified_since_header(self):
        client = AccountingApiClient(AccountingApiConfig(page_size=50))
        client._request = AsyncMock(return_value={"Contacts": []})

        asyncio.run(client.list_page("Contacts", page=2, modified_since=datetime(2024, 3, 1, tzinfo=timezone.utc)))

        kwargs = client._request.await_args.kwargs
        assert kwargs["params"] == {"page": "2", "pageSize": "50"}
        assert kwargs["headers"]["If-Modified-Since"] == "Fri, 01 Mar 2024 00:00:00 GMT"


class TestRetryingClient:

    @staticmethod
    def _client(inner, **config):
        pauses = []

        async def record_pause(seconds):
            pauses.append(seconds)

        return RetryingLedgerClient(inner, RetryConfig(**config), sleep=record_pause), pauses

    def test_transient_failures_are_retried_with_backoff(self):
        inner = InMemoryLedgerClient()
        remote_id = inner.seed("contact", {"name": "Acme"})
        inner.fail_next("get", TransientNetworkError("connection reset"), times=2)
        client, pauses = self._client(inner, max_retries=3)

        record = asyncio.run(client.get_entity("contact", remote_id))

        assert record["name"] == "Acme"
        assert pauses == [1.0, 2.0]

    def test_gives_up_after_max_retries(self):
        inner = InMemoryLedgerClient()
        inner.fail_next("list", TransientNetworkError("ledger down", 503), times=3)
        client, pauses = self._client(inner, max_retries=2)

        with pytest.raises(TransientNetworkError):
            asyncio.run(client.list_entities("contact"))
        assert len(pauses) == 2

    def test_rate_limits_pass_through(self):
        inner = InMemoryLedgerClient()
        inner.fail_next("create", RateLimitError("slow down", retry_after=5))
        client, pauses = self._client(inner)

        with pytest.raises(RateLimitError):
            asyncio.run(client.create_entity("contact", {"name": "Acme"}))
        assert pauses == []

    def test_backoff_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0)
        assert [config.get_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_token_refresh_is_attempted_once(self):
        inner = InMemoryLedgerClient()
        inner.fail_next("refresh", TransientNetworkError("connection reset"), times=2)
        client, pauses = self._client(inner, max_retries=3)

        with pytest.raises(TransientNetworkError):
            asyncio.run(client.refresh_token("rt-1"))
        assert inner.refresh_calls == 1
        assert pauses == []
