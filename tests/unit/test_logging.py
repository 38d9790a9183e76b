from __future__ import annotations

import json
import logging

from counseling_engine.common.logging import REDACTED, JsonFormatter, TextFormatter, redact


def _record(payload: dict) -> logging.LogRecord:
    record = logging.LogRecord("counseling-engine", logging.INFO, __file__, 1, "meeting_confirmed", None, None)
    record.payload = payload
    return record


def test_redact_masks_nested_sensitive_keys() -> None:
    clean = redact({"meeting_id": "m-1", "token": "t", "items": [{"issue_description": "x"}]})
    assert clean == {"meeting_id": "m-1", "token": REDACTED, "items": [{"issue_description": REDACTED}]}


def test_json_formatter_tags_service_and_redacts() -> None:
    line = JsonFormatter("worker-reconciliation").format(_record({"meeting_id": "m-1", "token": "secret"}))
    doc = json.loads(line)
    assert doc["service"] == "worker-reconciliation"
    assert doc["msg"] == "meeting_confirmed"
    assert doc["payload"] == {"meeting_id": "m-1", "token": REDACTED}


def test_text_formatter_appends_payload() -> None:
    line = TextFormatter("api-gateway").format(_record({"meeting_id": "m-1", "feedback": "hi"}))
    assert "api-gateway" in line
    assert "meeting_id=m-1" in line
    assert "feedback=***" in line
