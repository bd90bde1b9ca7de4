"""
Tests for structured logging.
"""

import io
import json
import logging

import pytest

from pool_event_indexer.config.models import LoggingConfig
from pool_event_indexer.utils.structured_logging import (
    ContextualLogger,
    LogContext,
    RunIdFilter,
    StructuredFormatter,
    current_run_id,
    run_scope,
    setup_logging,
)


@pytest.fixture
def captured():
    """A JSON handler on a private logger; yields (logger name, stream)."""
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(RunIdFilter())

    logger = logging.getLogger("tests.structured")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    yield logger.name, stream
    logger.removeHandler(handler)


def _entries(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_indexer_fields_are_top_level(captured):
    name, stream = captured
    logger = ContextualLogger(name, LogContext(domain="pools", pid=3, worker_id=1))

    logger.info("Batch done", from_block=1000, events=2)

    entry = _entries(stream)[0]
    assert entry["message"] == "Batch done"
    assert entry["level"] == "INFO"
    assert (entry["domain"], entry["pid"], entry["worker_id"]) == ("pools", 3, 1)
    assert entry["extra"] == {"from_block": 1000, "events": 2}
    assert entry["run_id"] == "-"


def test_run_scope_tags_records(captured):
    name, stream = captured
    logger = ContextualLogger(name)

    with run_scope("abc123") as run_id:
        logger.warning("inside")
    logger.warning("outside")

    inside, outside = _entries(stream)
    assert run_id == "abc123"
    assert inside["run_id"] == "abc123"
    assert outside["run_id"] == "-"
    assert current_run_id.get() is None


def test_run_scope_generates_ids():
    with run_scope() as first:
        pass
    with run_scope() as second:
        pass

    assert first != second
    assert len(first) == 12


def test_exception_and_unserializable_extra(captured):
    name, stream = captured
    logger = ContextualLogger(name)

    try:
        raise ValueError("bad log")
    except ValueError:
        logger.exception("Decode failed", payload=object())

    entry = _entries(stream)[0]
    assert entry["exception"]["type"] == "ValueError"
    assert "bad log" in entry["exception"]["traceback"]
    assert entry["extra"]["payload"].startswith("<object object")


def test_bind_adds_fields_and_overrides_worker(captured):
    name, stream = captured
    base = ContextualLogger(name, LogContext(domain="pools", pid=0, worker_id=0))

    base.bind(worker_id=2, attempt=1).info("retry")

    entry = _entries(stream)[0]
    assert entry["worker_id"] == 2
    assert entry["extra"] == {"attempt": 1}
    assert base.context.worker_id == 0


def test_disabled_level_is_skipped(captured):
    name, stream = captured
    logging.getLogger(name).setLevel(logging.INFO)

    ContextualLogger(name).debug("hidden")

    assert stream.getvalue() == ""


def test_setup_logging_replaces_handlers(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    for handler in saved_handlers:
        root.removeHandler(handler)
    stream = io.StringIO()
    log_file = tmp_path / "logs" / "indexer.log"

    try:
        setup_logging(LoggingConfig(level="warning", file=str(log_file)), stream=stream)
        setup_logging(LoggingConfig(level="warning", file=str(log_file)), stream=stream)

        assert len(root.handlers) == 2
        assert root.level == logging.WARNING
        assert logging.getLogger("apscheduler").level == logging.WARNING

        logging.getLogger("tests.setup").warning("hello")
        assert json.loads(stream.getvalue().splitlines()[-1])["message"] == "hello"
        assert log_file.exists()
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)


def test_plain_format(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    for handler in saved_handlers:
        root.removeHandler(handler)
    stream = io.StringIO()

    try:
        setup_logging(LoggingConfig(level="INFO", structured=False), stream=stream)
        with run_scope("run42"):
            logging.getLogger("tests.plain").info("plain line")

        line = stream.getvalue().splitlines()[-1]
        assert "[run42] plain line" in line
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
