import json
import logging
from pathlib import Path

import pytest

from ocr_text_layer.telemetry import FailureEvent, JsonlFailureSink, LoggingFailureSink


def test_logging_sink_logs_warning(caplog: pytest.LogCaptureFixture) -> None:
    sink = LoggingFailureSink()

    with caplog.at_level(logging.WARNING, logger="ocr_text_layer.telemetry"):
        sink.emit(FailureEvent(kind="render_failed", document_id=4, page_number=2, message="boom"))

    assert "render_failed" in caplog.text
    assert "document 4 page 2" in caplog.text


def test_jsonl_sink_appends_events(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "failures.jsonl"
    sink = JsonlFailureSink(path)

    sink.emit(FailureEvent(kind="engine_failed", document_id=1, page_number=1, message="a", timestamp=1.0))
    sink.emit(FailureEvent(kind="cache_write_failed", document_id=1, page_number=2, message="b", timestamp=2.0))

    records = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [record["kind"] for record in records] == ["engine_failed", "cache_write_failed"]
    assert records[1] == {
        "kind": "cache_write_failed",
        "document_id": 1,
        "page_number": 2,
        "message": "b",
        "timestamp": 2.0,
    }
