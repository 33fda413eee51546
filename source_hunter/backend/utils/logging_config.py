"""Logging configuration for Source Hunter.

Every module logs through structlog with snake_case event names and keyword
context. setup_logging() routes those events through stdlib logging so that
one JSON line per event lands in the log file, and INFO and above are echoed
to stdout.

Environment:
    LOG_DIR: Overrides the log directory passed to setup_logging()
    LOG_LEVEL: Console threshold (default: INFO)

Usage:
    >>> from source_hunter.backend.utils.logging_config import setup_logging, get_logger
    >>> setup_logging()
    >>> logger = get_logger(__name__)
    >>> logger.info("scan_started", container_id="dQw4w9WgXcQ", mode="smart")
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import structlog


DEFAULT_LOG_DIR = "logs"
DEFAULT_LOG_FILENAME = "source_hunter.log"


def _console_level() -> int:
    name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(log_dir: Optional[str] = None,
                  log_filename: str = DEFAULT_LOG_FILENAME) -> Path:
    """Configure structlog with JSON output to a log file and stdout.

    Args:
        log_dir: Directory for the log file. Falls back to LOG_DIR, then "logs".
            Created if missing.
        log_filename: Name of the log file (default: "source_hunter.log")

    Returns:
        Path of the log file being written.

    Log entry format (JSON):
        {
            "event": "scan_completed",
            "level": "info",
            "timestamp": "2026-10-18T12:34:56.789Z",
            "logger": "source_hunter.scanner",
            "container_id": "dQw4w9WgXcQ",
            ...
        }

    Entries logged with exc_info=True carry an "exception" field holding the
    formatted traceback.
    """
    log_path = Path(log_dir or os.environ.get("LOG_DIR") or DEFAULT_LOG_DIR)
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / log_filename

    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Final JSON rendering happens here for both structlog and foreign records
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=shared_processors,
    )

    file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(_console_level())
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    return log_file


def get_logger(name: Optional[str] = None):
    """Return a structlog logger, typically get_logger(__name__)."""
    return structlog.get_logger(name)
