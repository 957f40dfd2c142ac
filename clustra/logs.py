"""
Logging setup for clustra.

Module loggers hang off the "clustra" logger. Records may carry
`correlation_id`, `workspace`, `event` and `metadata` through `extra=`;
the structured formatter writes them out as JSON fields.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()

EXTRA_FIELDS = ("correlation_id", "workspace", "event", "metadata")


def setup_logging(
    log_file: Path,
    log_level: str = "INFO",
    log_format: str = "pretty",
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for clustra commands.

    Args:
        log_file: Path to log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured "clustra" logger
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_file.parent.chmod(0o700)

    logger = logging.getLogger("clustra")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []

    # The file always gets JSON lines so runs can be grepped by correlation id
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(StructuredFormatter())
    logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(
                console=Console(stderr=True), rich_tracebacks=True, show_time=False
            )
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def log_extra(correlation_id: str, event: str, **metadata) -> dict:
    """Build the `extra=` mapping used by clustra log calls."""
    extra = {"correlation_id": correlation_id, "event": event}
    if metadata:
        extra["metadata"] = metadata
    return extra
