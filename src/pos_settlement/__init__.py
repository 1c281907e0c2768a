"""Point-of-sale settlement engine.

Importing the package configures the shared ``pos_settlement`` logger used by
every module. ``POS_SETTLEMENT_LOG_DIR`` and ``POS_SETTLEMENT_LOG_LEVEL`` may
be set to move the log file or change its verbosity.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("POS_SETTLEMENT_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "pos_settlement.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _resolve_level(default: int = logging.INFO) -> int:
    name = os.environ.get("POS_SETTLEMENT_LOG_LEVEL", "").upper()
    level = logging.getLevelName(name) if name else default
    return level if isinstance(level, int) else default


def _configure_logging() -> logging.Logger:
    """Attach a rotating file handler and a stderr handler to the package logger."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _resolve_level()
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to initialize settlement log at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Settlement logger ready (version %s)", __version__)
