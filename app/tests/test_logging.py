import json
import logging
import sys

from app.core.logging import JsonFormatter


def _record(msg="Execution finished", extra=None, exc_info=None):
    record = logging.LogRecord("app.services.workflow_coordinator", logging.WARNING, __file__, 1, msg, None, exc_info)
    record.created = 1767607200.0  # 2026-01-05T10:00:00Z
    for key, value in (extra or {}).items():
        setattr(record, key, value)
    return record


def test_correlation_ids_are_top_level_and_other_context_stays_in_extra():
    line = JsonFormatter().format(
        _record(extra={"execution_id": "exec-1", "workflow_id": "wf-1", "step_index": 2, "reason": "cancelled"})
    )
    payload = json.loads(line)

    assert payload["timestamp"] == "2026-01-05T10:00:00+00:00"
    assert payload["level"] == "WARNING"
    assert payload["execution_id"] == "exec-1"
    assert payload["workflow_id"] == "wf-1"
    assert payload["step_index"] == 2
    assert payload["extra"] == {"reason": "cancelled"}


def test_no_extra_key_without_context_and_exceptions_are_rendered():
    try:
        raise ValueError("bad business hours")
    except ValueError:
        record = _record(msg="Step raised; failing execution", exc_info=sys.exc_info())

    payload = json.loads(JsonFormatter().format(record))

    assert "extra" not in payload
    assert "ValueError: bad business hours" in payload["exc_info"]
