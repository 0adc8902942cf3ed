import json
import logging
import sys
from logging.handlers import RotatingFileHandler

import pytest

from solscout.logging_utils import (
    JsonFormatter,
    configure_logging,
    setup_stdout_logging,
    warn_once_per,
)


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        yield root
    finally:
        for handler in list(root.handlers):
            if handler not in original_handlers:
                root.removeHandler(handler)
                try:
                    handler.close()
                except Exception:
                    pass
        for handler in original_handlers:
            if handler not in root.handlers:
                root.addHandler(handler)
        root.setLevel(original_level)


def test_setup_stdout_logging_installs_single_handler(root_logger):
    first = setup_stdout_logging(level=logging.DEBUG)
    second = setup_stdout_logging(level=logging.INFO)

    assert first is second
    assert first.stream is sys.stdout
    assert sum(1 for h in root_logger.handlers if h is first) == 1
    assert root_logger.level == logging.INFO
    assert logging.getLogger("websockets").level == logging.WARNING


def test_json_formatter_includes_extras():
    record = logging.LogRecord("solscout.test", logging.INFO, __file__, 12, "found %d", (3,), None)
    record.source = "polling"
    payload = json.loads(JsonFormatter().format(record))

    assert payload["msg"] == "found 3"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "solscout.test"
    assert payload["line"] == 12
    assert payload["source"] == "polling"
    assert payload["ts"].endswith("Z")


def test_warn_once_per_suppresses_repeats(caplog):
    logger = logging.getLogger("solscout.test.warn")
    with caplog.at_level(logging.WARNING):
        assert warn_once_per(5, "k", "gateway down: %s", "503", logger=logger)
        assert not warn_once_per(5, "k", "gateway down: %s", "503", logger=logger)
        assert warn_once_per(5, "other", "other warning", logger=logger)
    assert caplog.text.count("gateway down: 503") == 1


def test_configure_logging_with_file(root_logger, tmp_path, monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    logfile = tmp_path / "logs" / "solscout.log"

    path = configure_logging(level="debug", json_logs=True, logfile=logfile)

    assert path == logfile.resolve()
    file_handlers = [h for h in root_logger.handlers if isinstance(h, RotatingFileHandler)]
    assert len(file_handlers) == 1
    assert isinstance(file_handlers[0].formatter, JsonFormatter)
    assert root_logger.level == logging.DEBUG

    configure_logging(level="debug", json_logs=True, logfile=logfile)
    file_handlers = [h for h in root_logger.handlers if isinstance(h, RotatingFileHandler)]
    assert len(file_handlers) == 1


def test_configure_logging_reads_env(root_logger, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "warning")
    monkeypatch.setenv("LOG_JSON", "1")
    monkeypatch.delenv("LOG_FILE", raising=False)

    assert configure_logging() is None
    handler = setup_stdout_logging(level=logging.WARNING)
    assert isinstance(handler.formatter, JsonFormatter)
    assert root_logger.level == logging.WARNING
