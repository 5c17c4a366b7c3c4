from __future__ import annotations

import json
import logging

import pytest

from press3 import metrics
from press3.errors import PartialCommit, StalePlan, ValidationError
from press3.structured_logging import configure_structured_logging, log_event


def test_log_event_emits_one_json_line(caplog: pytest.LogCaptureFixture) -> None:
    log = logging.getLogger("press3.test")
    with caplog.at_level(logging.INFO, logger="press3.test"):
        log_event(log, "blob_certified", path="/a", content_ref="ref")

    assert len(caplog.records) == 1
    doc = json.loads(caplog.records[0].getMessage())
    assert doc["event"] == "blob_certified"
    assert doc["path"] == "/a"
    assert isinstance(doc["ts_ms"], int)


def test_configure_is_idempotent(monkeypatch: pytest.MonkeyPatch) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    monkeypatch.setenv("PRESS3_LOG_LEVEL", "debug")
    try:
        configure_structured_logging()
        configure_structured_logging()
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)
        if hasattr(root, "_press3_configured"):
            delattr(root, "_press3_configured")


def test_configure_prefers_explicit_level(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PRESS3_LOG_LEVEL", "error")
    configure_structured_logging("warning")
    assert logging.getLogger().level == logging.WARNING

    configure_structured_logging()
    assert logging.getLogger().level == logging.ERROR


def test_error_strings_and_metrics() -> None:
    assert str(ValidationError(reason="empty_path")) == "validation_error:empty_path"
    assert str(PartialCommit(details="boom")) == "partial_commit:certify_failed:boom"
    assert StalePlan().mismatches == []

    metrics.inc_counter("uploads_ok")
    metrics.inc_counter("uploads_ok", 2)
    assert metrics.get_counter("uploads_ok") == 3
    assert metrics.snapshot()["counters"] == {"uploads_ok": 3}
