"""Point-of-sale ledger kept in a single Excel workbook."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "pos_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUPS = 5


def _file_handler() -> logging.Handler | None:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
    except OSError as exc:
        # Read-only checkouts still get console logging.
        sys.stderr.write(f"pos_ledger: log file disabled ({LOG_FILE}): {exc}\n")
        return None
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the rotating file handler and the stderr handler once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = [_file_handler(), logging.StreamHandler(sys.stderr)]
    for handler in handlers:
        if handler is None:
            continue
        handler.setLevel(logging.INFO)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


log = _configure_logging()
