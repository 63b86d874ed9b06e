from __future__ import annotations

import io
import json
import logging
import sys

from github_agent_workflow.logging import JsonFormatter, configure_logging
from github_agent_workflow.workflow.context import StepStatus


def _record(**extra: object) -> logging.LogRecord:
    record = logging.makeLogRecord({"name": "test", "levelname": "INFO", "msg": "Step finished"})
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_extra_fields_are_nested() -> None:
    payload = json.loads(JsonFormatter().format(_record(step="B", status=StepStatus.SKIPPED)))

    assert payload["message"] == "Step finished"
    assert payload["logger"] == "test"
    assert payload["extra"] == {"step": "B", "status": "skipped"}


def test_exception_is_included() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))

    assert "RuntimeError: boom" in payload["exception"]


def test_configure_logging_replaces_handlers() -> None:
    stream = io.StringIO()
    root = logging.getLogger()
    previous = list(root.handlers), root.level
    try:
        configure_logging("debug", stream=stream)
        configure_logging("info", stream=stream)
        logging.getLogger("github_agent_workflow.test").info("hello", extra={"run_id": "r1"})

        assert len(root.handlers) == 1
        lines = stream.getvalue().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["extra"] == {"run_id": "r1"}
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in previous[0]:
            root.addHandler(handler)
        root.setLevel(previous[1])
