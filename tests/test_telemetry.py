from __future__ import annotations

import logging

import pytest

from link_ingest.core.config import Settings
from link_ingest.core.telemetry import (
    ROLE_ATTRIBUTE,
    configure_logging,
    current_trace_ids,
    ingestion_span,
    parse_otlp_headers,
    setup_telemetry,
    shutdown_telemetry,
)
from link_ingest.worker import next_error_delay


def test_setup_telemetry_disabled_is_noop() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False), role="api")

    assert runtime.enabled is False
    assert runtime.provider is None
    assert runtime.role == "api"
    shutdown_telemetry(runtime)


def test_setup_telemetry_without_endpoint_keeps_spans_local(monkeypatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)

    runtime = setup_telemetry(Settings(otel_enabled=True, otel_service_name="link-ingest-test"), role="worker")
    try:
        assert runtime.enabled is True
        assert runtime.provider is not None
        attributes = runtime.provider.resource.attributes
        assert attributes["service.name"] == "link-ingest-test"
        assert attributes[ROLE_ATTRIBUTE] == "worker"
    finally:
        shutdown_telemetry(runtime)


def test_parse_otlp_headers_skips_malformed_entries() -> None:
    assert parse_otlp_headers(None) == {}
    assert parse_otlp_headers("") == {}
    assert parse_otlp_headers(" api-key = secret ,broken, =orphan,x-tenant=links") == {
        "api-key": "secret",
        "x-tenant": "links",
    }


def test_log_records_carry_trace_fields() -> None:
    configure_logging()
    record = logging.getLogRecordFactory()("test", logging.INFO, __file__, 1, "message", (), None)

    assert hasattr(record, "trace_id")
    assert hasattr(record, "span_id")
    assert len(record.trace_id) == 32
    assert len(record.span_id) == 16


def test_trace_ids_are_zero_outside_a_span() -> None:
    assert current_trace_ids() == ("0" * 32, "0" * 16)


def test_ingestion_span_propagates_errors() -> None:
    with pytest.raises(RuntimeError, match="boom"):
        with ingestion_span("fetch", **{"source.url": "https://linktr.ee/someartist", "profile.id": None}):
            raise RuntimeError("boom")


def test_worker_error_delay_grows_to_ceiling() -> None:
    settings = Settings(poll_interval_seconds=2.0, max_backoff_seconds=15.0)

    first = next_error_delay(settings.poll_interval_seconds, settings)
    assert 4.0 <= first <= 5.0
    assert next_error_delay(14.0, settings) == 15.0
