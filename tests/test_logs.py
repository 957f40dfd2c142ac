"""Tests for logging setup."""

import json
import logging
import sys

import pytest

from clustra.logs import StructuredFormatter, log_extra, setup_logging


@pytest.fixture
def clean_logger():
    yield logging.getLogger("clustra")
    logger = logging.getLogger("clustra")
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []
    logger.setLevel(logging.NOTSET)


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_file_gets_json_lines(self, tmp_path, clean_logger):
        log_file = tmp_path / "logs" / "clustra.log"
        setup_logging(log_file, log_level="DEBUG", console_output=False)

        logging.getLogger("clustra.registry").info(
            "Allocated workspace ubuntu",
            extra=log_extra("corr-1", "workspace_allocated", index=0),
        )

        entry = json.loads(log_file.read_text().splitlines()[-1])
        assert entry["message"] == "Allocated workspace ubuntu"
        assert entry["logger"] == "clustra.registry"
        assert entry["correlation_id"] == "corr-1"
        assert entry["event"] == "workspace_allocated"
        assert entry["metadata"] == {"index": 0}

    def test_handlers_replaced_not_stacked(self, tmp_path, clean_logger):
        setup_logging(tmp_path / "a.log", console_output=True)
        setup_logging(tmp_path / "b.log", console_output=True)
        assert len(clean_logger.handlers) == 2

    def test_level(self, tmp_path, clean_logger):
        setup_logging(tmp_path / "c.log", log_level="warning", console_output=False)
        assert clean_logger.level == logging.WARNING


class TestStructuredFormatter:
    """Tests for StructuredFormatter."""

    def test_exception_included(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord(
                "clustra.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        entry = json.loads(StructuredFormatter().format(record))
        assert entry["level"] == "ERROR"
        assert "ValueError: bad" in entry["exception"]

    def test_log_extra_without_metadata(self):
        assert log_extra("corr-2", "step_started") == {"correlation_id": "corr-2", "event": "step_started"}
