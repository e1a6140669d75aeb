from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from ..config import settings
from .paths import get_log_dir


FILE_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
CONSOLE_FORMAT = "[%(levelname)s] %(message)s"


def setup_logging(name: str = "network-manager", level: Optional[str] = None) -> str:
    """Log to /var/log/dangerprep-<name>.log and stderr; returns the log file path."""
    lvl = (level or settings.log_level or "INFO").upper()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, lvl, logging.INFO))

    log_file = os.path.join(get_log_dir(), f"dangerprep-{name}.log")
    try:
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3)
    except OSError:
        fallback_dir = os.path.expanduser("~/.dangerprep/log")
        os.makedirs(fallback_dir, exist_ok=True)
        log_file = os.path.join(fallback_dir, f"dangerprep-{name}.log")
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    root.addHandler(file_handler)

    console = logging.StreamHandler(stream=sys.stderr)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)
    return log_file


def log_section(logger: logging.Logger, title: str) -> None:
    logger.info("=== %s ===", title)
