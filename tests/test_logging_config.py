import json
import logging

import pytest

from halalseq.logging_config import LogContext, StageTimer, StructuredFormatter, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(message: str = "hello", **attrs) -> logging.LogRecord:
    record = logging.LogRecord("halalseq.test", logging.INFO, __file__, 10, message, None, None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


def test_structured_formatter():
    data = json.loads(StructuredFormatter().format(_record("reads done")))
    assert data["message"] == "reads done"
    assert data["level"] == "INFO"
    assert data["logger"] == "halalseq.test"
    assert data["timestamp"].endswith("+00:00")


def test_structured_formatter_merges_fields():
    record = _record(context_fields={"sample": "beef"}, extra_fields={"stage": "classify"})
    data = json.loads(StructuredFormatter().format(record))
    assert data["sample"] == "beef"
    assert data["stage"] == "classify"


def test_setup_logging_levels():
    root = setup_logging(verbose=False)
    assert root.level == logging.INFO
    assert len(root.handlers) == 1
    assert setup_logging(verbose=True).level == logging.DEBUG


def test_setup_logging_file_handler(tmp_path):
    root = setup_logging(log_dir=tmp_path / "logs", enable_json=True)
    assert len(root.handlers) == 2
    assert all(isinstance(h.formatter, StructuredFormatter) for h in root.handlers)
    logging.getLogger("halalseq.test").info("to file")
    for handler in root.handlers:
        handler.flush()
    (log_file,) = (tmp_path / "logs").glob("halalseq_*.log")
    assert "to file" in log_file.read_text()


def test_log_context_attaches_fields():
    with LogContext(sample="pork"):
        record = logging.getLogRecordFactory()("n", logging.INFO, __file__, 1, "m", None, None)
    assert record.context_fields == {"sample": "pork"}
    after = logging.getLogRecordFactory()("n", logging.INFO, __file__, 1, "m", None, None)
    assert not hasattr(after, "context_fields")


def test_nested_log_context():
    with LogContext(sample="pork"), LogContext(stage="classify"):
        record = logging.getLogRecordFactory()("n", logging.INFO, __file__, 1, "m", None, None)
    assert record.context_fields == {"sample": "pork", "stage": "classify"}


def test_stage_timer_inside_log_context(caplog):
    timer = StageTimer()
    with caplog.at_level(logging.DEBUG, logger="halalseq.performance"):
        with LogContext(sample="beef"):
            timer.record_throughput("classify", 100, 2.0)
            timer.record("classify", 1.0)
    summary = timer.get_summary()["classify"]
    assert summary["count"] == 2
    assert summary["total_seconds"] == pytest.approx(3.0)
    assert summary["max_seconds"] == pytest.approx(2.0)
    record = caplog.records[0]
    assert record.extra_fields["items_per_second"] == pytest.approx(50.0)
    assert record.context_fields == {"sample": "beef"}
