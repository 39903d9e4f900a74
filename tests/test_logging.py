"""Tests for keeper log context and formatters."""

import json
import logging
import sys

from perp_keeper.logging_config import (
    JSONFormatter,
    KeeperContext,
    StructuredFormatter,
    current_context,
    setup_logging,
)


def _record(message="hello"):
    return logging.LogRecord("perp_keeper.test", logging.INFO, __file__, 10, message, None, None)


def test_context_nesting():
    assert current_context() == {}

    with KeeperContext(cycle_id="abc123"):
        with KeeperContext(market="Market111", slot_index=0):
            assert current_context() == {"cycle_id": "abc123", "market": "Market111", "slot_index": 0}
        assert current_context() == {"cycle_id": "abc123"}

    assert current_context() == {}


def test_json_formatter_includes_context():
    formatter = JSONFormatter(extra_fields={"service": "keeper"})

    with KeeperContext(market="Market111", slot_index=7):
        data = json.loads(formatter.format(_record()))

    assert data["message"] == "hello"
    assert data["level"] == "INFO"
    assert data["market"] == "Market111"
    assert data["slot_index"] == 7
    assert data["service"] == "keeper"


def test_json_formatter_exception():
    try:
        raise ValueError("bad slab")
    except ValueError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

    data = json.loads(JSONFormatter().format(record))

    assert data["exception"]["type"] == "ValueError"
    assert data["exception"]["message"] == "bad slab"


def test_structured_formatter_context():
    formatter = StructuredFormatter(use_color=False)

    with KeeperContext(cycle_id="cycle-abcdef-123", slot_index=3):
        line = formatter.format(_record("scan done"))

    assert "scan done" in line
    assert "cycle=cycle-ab" in line
    assert "slot=3" in line


def test_setup_logging_writes_json(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging(log_dir=tmp_path, level="DEBUG", console_output=False)
        logging.getLogger("perp_keeper.test").info("written")
        for handler in root.handlers:
            handler.flush()

        lines = (tmp_path / "keeper.log").read_text().splitlines()
        assert json.loads(lines[-1])["message"] == "written"
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
