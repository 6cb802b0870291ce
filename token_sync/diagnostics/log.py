"""
Logging setup.

Writes JSON lines to a rotating file in the config directory. Logging is
best-effort: a failure to create or write the log never reaches the caller.
"""

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from token_sync.storage.files import DIR_MODE, FILE_MODE
from .errors import sanitize_context

LOG_DIR = "logs"
LOG_FILE = "token-sync.log"
MAX_LOG_BYTES = 1_000_000
MAX_LOG_FILES = 5
ROOT_LOGGER = "token_sync"

_configured_handlers = []


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, msg and context."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            payload["context"] = sanitize_context(context)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class DebugFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = f"[debug] {record.getMessage()}"
        context = getattr(record, "context", None)
        if context:
            message += " " + json.dumps(sanitize_context(context), default=str)
        return message


class BestEffortRotatingFileHandler(RotatingFileHandler):
    """Rotating file handler whose write errors are discarded."""

    def handleError(self, record: logging.LogRecord) -> None:
        return None

    def _open(self):
        stream = super()._open()
        try:
            Path(self.baseFilename).chmod(FILE_MODE)
        except OSError:
            pass
        return stream


def configure_logging(config_dir: Path, debug: bool = False) -> bool:
    """Attach the file handler (and a stderr handler in debug mode).

    Safe to call more than once; earlier handlers are replaced.

    Args:
        config_dir: Directory holding the `logs/` folder
        debug: Also print debug records to stderr

    Returns:
        True when the file handler was installed. The result is
        informational and callers normally ignore it.
    """
    root = logging.getLogger(ROOT_LOGGER)
    for handler in _configured_handlers:
        root.removeHandler(handler)
        handler.close()
    _configured_handlers.clear()

    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.propagate = False

    if debug:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(DebugFormatter())
        stderr_handler.setLevel(logging.DEBUG)
        root.addHandler(stderr_handler)
        _configured_handlers.append(stderr_handler)

    log_dir = config_dir / LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True, mode=DIR_MODE)
        file_handler = BestEffortRotatingFileHandler(
            str(log_dir / LOG_FILE),
            maxBytes=MAX_LOG_BYTES,
            backupCount=MAX_LOG_FILES,
            encoding="utf-8",
        )
    except OSError:
        return False

    file_handler.setFormatter(JsonLineFormatter())
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)
    _configured_handlers.append(file_handler)
    return True


def log_event(logger: logging.Logger, level: int, event: str, **context: Any) -> None:
    """Log a named event with structured context."""
    logger.log(level, event, extra={"context": context})
