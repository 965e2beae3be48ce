"""
Tests for structured logging, payload redaction and telemetry fan-out.
"""

import logging

import pytest

from recall.core.telemetry import BATCH_COMPLETED, ITEM_FAILED, JOB_SUMMARY, EventRecorder, TelemetryEmitter
from util.logging import StructuredLogger, audit_event, sanitize_payload


def test_log_operation_format(caplog):
    logger = StructuredLogger("recall.test")
    with caplog.at_level(logging.INFO, logger="recall.test"):
        logger.log_operation("vector.upsert", "success", {"record_id": "m1"})

    assert "Operation: vector.upsert, Status: success, Details: {'record_id': 'm1'}" in caplog.text


def test_log_search_does_not_include_query(caplog):
    logger = StructuredLogger("recall.test")
    with caplog.at_level(logging.INFO, logger="recall.test"):
        logger.log_search("secret project kickoff", 3, 12.3456)

    assert "secret" not in caplog.text
    assert "'query_length': 22" in caplog.text
    assert "'elapsed_ms': 12.35" in caplog.text


def test_sanitize_payload_redacts_content():
    payload = {"item_id": "m1", "text": "private words", "nested": {"snippet": "more"}, "count": 3}

    sanitized = sanitize_payload(payload)

    assert sanitized == {"item_id": "m1", "text": "[REDACTED]", "nested": {"snippet": "[REDACTED]"}, "count": 3}
    assert sanitize_payload(payload, reveal_sensitive=True)["text"] == "private words"


def test_sanitize_payload_truncates():
    assert sanitize_payload("x" * 150) == "x" * 100 + "..."
    assert sanitize_payload(list(range(30)))[-1] == "..."


def test_audit_event(caplog):
    with caplog.at_level(logging.INFO, logger="recall"):
        audit_event("content.delete", {"item_id": "m1"}, {"text": "private"})

    assert "Operation: content_delete, Status: audit" in caplog.text
    assert "private" not in caplog.text


class TestTelemetry:
    def test_listeners_receive_events(self):
        telemetry = TelemetryEmitter(StructuredLogger("recall.test"))
        recorder = EventRecorder()
        telemetry.subscribe(recorder)

        telemetry.emit(BATCH_COMPLETED, batch_size=2, failed=0)

        assert recorder.events == [(BATCH_COMPLETED, {"batch_size": 2, "failed": 0})]
        assert telemetry.counts()[BATCH_COMPLETED] == 1

    def test_unsubscribe(self):
        telemetry = TelemetryEmitter(StructuredLogger("recall.test"))
        recorder = EventRecorder()
        unsubscribe = telemetry.subscribe(recorder)
        unsubscribe()

        telemetry.emit(BATCH_COMPLETED)
        assert recorder.events == []

    def test_unknown_event(self):
        with pytest.raises(ValueError):
            TelemetryEmitter().emit("somethingElse")

    def test_failing_listener_does_not_break_emit(self):
        telemetry = TelemetryEmitter(StructuredLogger("recall.test"))
        recorder = EventRecorder()

        def broken(event, payload):
            raise RuntimeError("listener down")

        telemetry.subscribe(broken)
        telemetry.subscribe(recorder)
        telemetry.emit(ITEM_FAILED, item_id="m1", reason="boom")

        assert len(recorder.named(ITEM_FAILED)) == 1

    def test_item_failed_logged_as_warning_without_text(self, caplog):
        telemetry = TelemetryEmitter(StructuredLogger("recall.test"))
        with caplog.at_level(logging.INFO, logger="recall.test"):
            telemetry.emit(ITEM_FAILED, item_id="m1", text="private", reason="boom")

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert "pipeline.itemFailed" in record.getMessage()
        assert "private" not in record.getMessage()

    def test_job_summary_logged_as_maintenance_run(self, caplog):
        telemetry = TelemetryEmitter(StructuredLogger("recall.test"))
        with caplog.at_level(logging.INFO, logger="recall.test"):
            telemetry.emit(JOB_SUMMARY, operation="backfill", run_id="r1", processed=3, failed=0)

        assert "Operation: maintenance.backfill, Status: success" in caplog.text
