from __future__ import annotations

import json
import logging

from upload_dispatcher.common.logging import (
    JsonFormatter,
    TextFormatter,
    get_dispatcher_logger,
    setup_logging,
)


def _record(payload=None) -> logging.LogRecord:
    rec = logging.LogRecord(
        name="upload-dispatcher.dispatcher",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="task_uploaded",
        args=(),
        exc_info=None,
    )
    if payload is not None:
        rec.payload = payload
    return rec


def test_json_formatter_carries_service_thread_and_payload() -> None:
    line = JsonFormatter("svc-a").format(_record({"task_id": "t1", "bytes": 10}))
    doc = json.loads(line)
    assert doc["service"] == "svc-a"
    assert doc["msg"] == "task_uploaded"
    assert doc["logger"] == "upload-dispatcher.dispatcher"
    assert doc["thread"]
    assert doc["payload"] == {"task_id": "t1", "bytes": 10}
    assert doc["ts"].endswith("Z")


def test_json_formatter_omits_empty_payload() -> None:
    doc = json.loads(JsonFormatter("svc").format(_record({})))
    assert "payload" not in doc


def test_text_formatter_appends_payload() -> None:
    line = TextFormatter().format(_record({"task_id": "t1"}))
    assert "task_uploaded" in line
    assert line.endswith("| task_id=t1")


def test_setup_logging_replaces_own_handler_only() -> None:
    root = logging.getLogger()
    foreign = logging.NullHandler()
    root.addHandler(foreign)
    try:
        first = setup_logging(level="debug", log_format="json")
        second = setup_logging(level="warning", log_format="text")

        assert first not in root.handlers
        assert second in root.handlers
        assert foreign in root.handlers
        assert isinstance(second.formatter, TextFormatter)
        assert root.level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING
    finally:
        root.removeHandler(foreign)
        for h in list(root.handlers):
            if getattr(h, "_upload_dispatcher", False):
                root.removeHandler(h)


def test_dispatcher_logger_is_child_of_project_logger() -> None:
    assert get_dispatcher_logger().name == "upload-dispatcher.dispatcher"
