"""Logging helpers for the installer."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Optional

LOG_FILENAME = "install.log"
STRUCTURED_LOG_FILENAME = "install.jsonl"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
FALLBACK_ROOT = Path.home() / ".fleetnode" / "logs"

# Operator notices are printed at every verbosity, including 0.
NOTICE = logging.CRITICAL + 5
logging.addLevelName(NOTICE, "NOTICE")

VERBOSITY_LEVELS = {
    0: NOTICE,
    1: logging.CRITICAL,
    2: logging.ERROR,
    3: logging.WARNING,
    4: logging.INFO,
    5: logging.DEBUG,
}
DEFAULT_VERBOSITY = 3
MASK = "<specified>"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "extra") and record.extra:
            log_entry["extra"] = record.extra
        return json.dumps(log_entry)


def level_for_verbosity(verbosity: int) -> int:
    """Translate the 0-5 CLI verbosity into a logging level."""

    if verbosity not in VERBOSITY_LEVELS:
        raise ValueError(f"verbosity must be between 0 and 5, got {verbosity}")
    return VERBOSITY_LEVELS[verbosity]


def setup_logging(
    log_dir: Path,
    verbosity: int = DEFAULT_VERBOSITY,
    structured: bool = True,
) -> Path:
    """Configure installer logging.

    The file handlers always record at DEBUG so a failed run can be diagnosed
    after the fact; the console honours ``verbosity``.

    Returns:
        Path to the primary (text) log file.
    """
    log_path = _resolve_log_path(log_dir, LOG_FILENAME)

    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(text_formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level_for_verbosity(verbosity))
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )

    logger = logging.getLogger("fleetnode")
    _reset_handlers(logger)
    logger.setLevel(logging.DEBUG)
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    if structured:
        json_path = _resolve_log_path(log_dir, STRUCTURED_LOG_FILENAME)
        json_handler = RotatingFileHandler(
            json_path,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        json_handler.setLevel(logging.DEBUG)
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

    logger.propagate = False
    return log_path


def mask(value: Optional[str]) -> str:
    """Render a secret for log output."""

    return MASK if value else ""


def _resolve_log_path(log_dir: Path, filename: str) -> Path:
    primary = log_dir / filename
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / filename
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[logging] Unable to write logs under '{log_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


__all__ = [
    "DEFAULT_VERBOSITY",
    "FALLBACK_ROOT",
    "JSONFormatter",
    "LOG_FILENAME",
    "NOTICE",
    "STRUCTURED_LOG_FILENAME",
    "level_for_verbosity",
    "mask",
    "setup_logging",
]
