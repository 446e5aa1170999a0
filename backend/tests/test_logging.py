import json
import logging
import sys

from mediablast.core.logging import JSONFormatter, setup_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("mediablast.test", logging.INFO, __file__, 1, "生成開始: %s", ("r-1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_line_carries_process_and_context():
    line = JSONFormatter("worker").format(_record(report_id=5, batch_id="b-1", unrelated="x"))

    entry = json.loads(line)
    assert entry["process"] == "worker"
    assert entry["message"] == "生成開始: r-1"
    assert entry["report_id"] == 5
    assert entry["batch_id"] == "b-1"
    assert "item_id" not in entry
    assert "unrelated" not in entry


def test_exception_is_included():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    entry = json.loads(JSONFormatter().format(record))

    assert entry["process"] == "api"
    assert "RuntimeError: boom" in entry["exception"]


def test_setup_logging_replaces_root_handlers():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging(debug=True, process="scheduler")

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert root.handlers[0].formatter.process == "scheduler"
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
