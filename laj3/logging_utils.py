"""Logging helpers for the laj3 commands."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
import tempfile
from typing import Optional, Union

LOG_FILENAME = "laj3.log"
STRUCTURED_LOG_FILENAME = "laj3.jsonl"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
FALLBACK_ROOT = Path(tempfile.gettempdir()) / "laj3_runtime"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(
    log_dir: Optional[Path] = None,
    level: Union[str, int] = logging.WARNING,
    structured: bool = False,
) -> Optional[Path]:
    """Configure laj3 logging with optional structured JSON output.

    Args:
        log_dir: Directory for log files; ``None`` logs to the console only.
        level: Logging level (string name or int constant).
        structured: Whether to also write JSON lines next to the text log.

    Returns:
        Path to the primary (text) log file, if one was opened.
    """
    resolved_level = _resolve_level(level)
    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # stdout carries command output, so logs go to stderr
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(text_formatter)

    logger = logging.getLogger("laj3")
    _reset_handlers(logger)
    logger.setLevel(resolved_level)
    logger.addHandler(console_handler)
    logger.propagate = False

    if log_dir is None:
        return None

    resolved_dir = _resolve_log_dir(log_dir)
    log_path = resolved_dir / LOG_FILENAME
    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(text_formatter)
    logger.addHandler(file_handler)

    if structured:
        json_handler = RotatingFileHandler(
            resolved_dir / STRUCTURED_LOG_FILENAME,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

    return log_path


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.WARNING)
    return int(level)


def _resolve_log_dir(log_dir: Path) -> Path:
    primary = log_dir.expanduser()
    try:
        primary.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / "logs"
        fallback.mkdir(parents=True, exist_ok=True)
        print(
            f"[laj3] Unable to write logs under '{primary}'; "
            f"falling back to '{fallback}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


__all__ = [
    "setup_logging",
    "JSONFormatter",
    "LOG_FILENAME",
    "STRUCTURED_LOG_FILENAME",
    "FALLBACK_ROOT",
]
