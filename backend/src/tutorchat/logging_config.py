"""
Logging configuration for TutorChat.

Configures console and rotating file logging per process context
(api, worker, cli) from the application settings.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import Optional

from tutorchat.config import settings

STANDARD_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured_context: Optional[str] = None


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class _MaxLevelFilter(logging.Filter):
    """Only pass records strictly below a level (routes INFO to stdout)."""

    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.max_level


def _formatter() -> logging.Formatter:
    if settings.log_format == "json":
        return JSONFormatter()
    return logging.Formatter(fmt=STANDARD_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(context: str = "api", force: bool = False) -> None:
    """
    Configure root logging for a process context.

    Args:
        context: Process context name, used for the log file name
        force: Reconfigure even if logging was already set up

    Raises:
        PermissionError: If the log directory cannot be created
    """
    global _configured_context

    if _configured_context is not None and not force:
        return

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = _formatter()

    if settings.log_console_enabled:
        if settings.log_to_stdout:
            stdout_handler = logging.StreamHandler(sys.stdout)
            stdout_handler.setLevel(logging.DEBUG)
            stdout_handler.addFilter(_MaxLevelFilter(logging.WARNING))
            stdout_handler.setFormatter(formatter)
            root.addHandler(stdout_handler)
        if settings.log_to_stderr:
            stderr_handler = logging.StreamHandler(sys.stderr)
            stderr_handler.setLevel(logging.WARNING)
            stderr_handler.setFormatter(formatter)
            root.addHandler(stderr_handler)

    if settings.log_file_enabled:
        log_dir = settings.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{context}.log",
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # Quiet chatty client libraries
    for noisy in ("httpx", "httpcore", "openai", "anthropic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _configured_context = context
    logging.getLogger(__name__).debug(f"Logging configured for context={context}")
