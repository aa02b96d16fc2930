"""
Error types and error logging for tether.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import get_default_store_path


class TetherError(Exception):
    """Base class for errors raised by the tether core."""


class ValidationError(TetherError, ValueError):
    """A required field is missing or a value is invalid."""


class InvalidFieldError(TetherError, ValueError):
    """A patch targets a field outside the kind's whitelist."""

    def __init__(self, kind: str, field: str):
        self.kind = kind
        self.field = field
        super().__init__(f"Invalid field for patching {kind}: {field!r}")


class NotFoundError(TetherError, LookupError):
    """An entity or key-value id does not exist."""


class ProcessingError(TetherError):
    """Transcoding or metadata parsing failed for one input file."""


class StorageIOError(TetherError, OSError):
    """Writing or removing a managed file failed."""


ERROR_LOG_FILENAME = "tether-errors.log"


def error_log_path(store_path: Optional[Path] = None) -> Path:
    """The error log lives in the store it concerns: <store>/tether-errors.log."""
    if store_path is None:
        store_path = get_default_store_path()
    return Path(store_path).expanduser() / ERROR_LOG_FILENAME


def log_exception(
    exc: Exception,
    context: str = "",
    store_path: Optional[Path] = None,
) -> Path:
    """
    Append an exception with its full traceback to the store's error log.

    Args:
        exc: The exception that occurred
        context: What was running, e.g. the CLI command line
        store_path: Store the failure belongs to (default store if None)

    Returns:
        Path to the error log file
    """
    log_path = error_log_path(store_path)
    timestamp = datetime.now(timezone.utc).isoformat()
    header = f"[{timestamp}] {context}".rstrip()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'=' * 60}\n{header}\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
