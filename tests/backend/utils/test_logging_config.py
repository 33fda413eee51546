"""Unit tests for logging configuration

Tests verify that structlog is configured with:
- JSON output to logs/source_hunter.log (LOG_DIR overrides the directory)
- All log levels written to the file with their context fields
- Exception tracebacks when exc_info=True
- Automatic log directory creation
"""

import json
import logging
import os

import pytest
import structlog

from source_hunter.backend.utils.logging_config import setup_logging, get_logger


@pytest.fixture
def clean_logging():
    """Reset logging configuration after each test."""
    yield
    structlog.reset_defaults()
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()


def _entries(log_file, event):
    with open(log_file, "r") as f:
        return [json.loads(line) for line in f if event in line]


class TestSetupLogging:
    """Test setup_logging() function."""

    def test_creates_directory_and_returns_log_file(self, tmp_path, clean_logging):
        log_dir = tmp_path / "logs"

        log_file = setup_logging(log_dir=str(log_dir))
        get_logger().info("startup")

        assert log_dir.is_dir()
        assert log_file == log_dir / "source_hunter.log"
        assert log_file.is_file()

    def test_log_dir_env_var(self, tmp_path, monkeypatch, clean_logging):
        monkeypatch.setenv("LOG_DIR", str(tmp_path / "from_env"))

        log_file = setup_logging()

        assert log_file.parent == tmp_path / "from_env"

    def test_custom_log_filename(self, tmp_path, clean_logging):
        log_file = setup_logging(log_dir=str(tmp_path), log_filename="scan.log")
        get_logger().info("test_message")

        assert log_file.name == "scan.log"
        assert os.path.exists(log_file)


class TestLogOutput:
    """Entries are JSON objects carrying level, logger, timestamp and context."""

    @pytest.mark.parametrize('level', ["debug", "info", "warning", "error", "critical"])
    def test_all_levels_reach_file(self, tmp_path, clean_logging, level):
        log_file = setup_logging(log_dir=str(tmp_path))

        logger = get_logger("source_hunter.scanner")
        getattr(logger, level)(f"{level}_event", container_id="dQw4w9WgXcQ", fetched_count=42)

        entry = _entries(log_file, f"{level}_event")[0]
        assert entry["level"] == level
        assert entry["logger"] == "source_hunter.scanner"
        assert entry["container_id"] == "dQw4w9WgXcQ"
        assert entry["fetched_count"] == 42
        assert "T" in entry["timestamp"]

    def test_exception_traceback_included(self, tmp_path, clean_logging):
        log_file = setup_logging(log_dir=str(tmp_path))
        logger = get_logger("test.exception")

        try:
            raise ValueError("unexpected page shape")
        except ValueError:
            logger.error("scan_failed_unexpectedly", exc_info=True)

        entry = _entries(log_file, "scan_failed_unexpectedly")[0]
        assert "Traceback" in entry["exception"]
        assert "unexpected page shape" in entry["exception"]

    def test_no_exception_field_without_exc_info(self, tmp_path, clean_logging):
        log_file = setup_logging(log_dir=str(tmp_path))

        get_logger("test").error("scan_failed", error="Quota Exceeded")

        assert "exception" not in _entries(log_file, "scan_failed")[0]

    def test_stdlib_records_rendered_as_json(self, tmp_path, clean_logging):
        log_file = setup_logging(log_dir=str(tmp_path))

        logging.getLogger("uvicorn.error").warning("plain stdlib message")

        entry = _entries(log_file, "plain stdlib message")[0]
        assert entry["level"] == "warning"
        assert entry["logger"] == "uvicorn.error"
