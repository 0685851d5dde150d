"""Correlated logging."""

import json
import logging

from core.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    get_logger,
    redact,
    with_correlation,
)


def test_credentials_are_masked():
    fields = {"integration_id": "acme", "refresh_token": "rt-secret", "response": {"access_token": "at-secret"}}
    assert redact(fields) == {"integration_id": "acme", "refresh_token": "***", "response": {"access_token": "***"}}


def test_records_carry_redacted_extra_fields(caplog):
    logger = get_logger("sync_engine.test")

    with caplog.at_level(logging.INFO, logger="sync_engine.test"):
        logger.info("Stored tokens", extra_fields={"access_token": "at-secret", "expires_in": 1800})

    [record] = caplog.records
    assert record.extra_fields == {"access_token": "***", "expires_in": 1800}


def test_json_output_includes_correlation_context():
    record = logging.LogRecord("sync_engine.applier", logging.INFO, "", 0, "Pushed invoice", (), None)
    record.extra_fields = {"remote_id": "r-1"}

    with with_correlation(correlation_id="c0ffee", entity_type="invoice", dry_run=True):
        payload = json.loads(StructuredFormatter().format(record))
        line = HumanReadableFormatter().format(record)

    assert payload["correlation_id"] == "c0ffee"
    assert payload["entity_type"] == "invoice"
    assert payload["remote_id"] == "r-1"
    assert payload["message"] == "Pushed invoice"
    assert "[c0ffee/invoice/dry-run]" in line
    assert line.endswith("remote_id=r-1")


def test_context_is_restored_after_block():
    record = logging.LogRecord("core", logging.INFO, "", 0, "outside", (), None)
    with with_correlation(correlation_id="run-1"):
        pass
    assert "correlation_id" not in json.loads(StructuredFormatter().format(record))
