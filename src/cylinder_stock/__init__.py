"""Cylinder stock ledger: ledger store, stock derivation, and summaries.

Importing the package configures the ``cylinder_stock`` logger once. The log
directory and level can be overridden through ``CYLINDER_STOCK_LOG_DIR`` and
``CYLINDER_STOCK_LOG_LEVEL`` so test runs and deployments do not write into
the source tree.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("CYLINDER_STOCK_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "cylinder_stock.log"
LOG_LEVEL = os.environ.get("CYLINDER_STOCK_LOG_LEVEL", "INFO").upper()


def _configure_logging() -> logging.Logger:
    """Attach a rotating ledger log file and a stderr handler to the package logger."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

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
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to open stock ledger log '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    # Console only carries warnings so low-stock alerts and failures surface.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(max(level, logging.WARNING))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("Stock ledger logging ready (level=%s, file=%s)", logging.getLevelName(log.level), LOG_FILE)
