"""Logging configuration."""

import logging
import sys
from datetime import date
from pathlib import Path
from typing import Optional

FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def setup_logging(verbose: bool = False, log_dir: Optional[Path] = None) -> None:
    """
    Configure logging for jjdag.

    Logs go to stderr, not mixed with command output. When ``log_dir`` is
    given, everything down to DEBUG is also appended to a dated file
    (``jjdag-YYYY-MM-DD.log``) so a session can be reconstructed later.

    Args:
        verbose: If True, log at DEBUG level on stderr; otherwise WARNING.
        log_dir: Optional directory for the dated log file.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(name)s: %(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    if log_dir is not None:
        log_file = get_log_file_path(log_dir)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.DEBUG)
        for existing in root.handlers:
            if existing is not handler and isinstance(existing, logging.StreamHandler):
                if not isinstance(existing, logging.FileHandler):
                    existing.setLevel(level)


def get_log_file_path(log_dir: Path, today: Optional[date] = None) -> Path:
    """
    Get the dated log file path.

    Args:
        log_dir: Directory holding log files
        today: Date to stamp (defaults to today)

    Returns:
        Path like ``log_dir/jjdag-2026-10-19.log``
    """
    stamp = (today or date.today()).strftime("%Y-%m-%d")
    return log_dir / f"jjdag-{stamp}.log"


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (e.g., "planner")

    Returns:
        Logger instance
    """
    return logging.getLogger(f"jjdag.{name}")
