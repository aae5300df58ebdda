"""Pricing and order allocation engine for the dealer portal.

Importing the package configures the shared ``log`` used by every layer.
Records go to stderr and, when the directory is writable, to a rotating file
under ``.logs/`` at the project root. ``DEALER_ENGINE_LOG_DIR`` moves the file
and ``DEALER_ENGINE_LOG_LEVEL`` changes the threshold of both handlers.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("DEALER_ENGINE_LOG_DIR") or PROJECT_ROOT / ".logs")
LOG_FILE = LOG_DIR / "dealer_engine.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _resolve_level(name: Optional[str]) -> int:
    """Map a level name such as ``"debug"`` to its number; unknown names mean INFO."""

    level = logging.getLevelName((name or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _file_handler(formatter: logging.Formatter, level: int) -> Optional[logging.Handler]:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _resolve_level(os.environ.get("DEALER_ENGINE_LOG_LEVEL"))
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(formatter, level)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'dealer_engine' package at level %s", logging.getLevelName(log.level))
