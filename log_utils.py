"""Logging setup shared by every engine module.

Each module calls ``setup_logger(__name__)``.  All loggers write to the
console and to one shared size-rotated file, so rotation is handled by a
single handler instead of one per module.
"""

import logging
import os
from collections import deque
from logging.handlers import RotatingFileHandler

# Override with ENGINE_LOG_FILE when the working directory is read-only.
LOG_FILE = os.getenv("ENGINE_LOG_FILE", os.path.join("logs", "futures_engine.log"))
LOG_LEVEL = os.getenv("ENGINE_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_file_handlers = {}


def _shared_file_handler(formatter: logging.Formatter) -> RotatingFileHandler:
    """Return the rotating handler for ``LOG_FILE``, creating it once per path."""

    handler = _file_handlers.get(LOG_FILE)
    if handler is not None:
        return handler
    directory = os.path.dirname(LOG_FILE)
    if directory:
        os.makedirs(directory, exist_ok=True)
    # ~1 MB per file, five backups
    handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    handler.setFormatter(formatter)
    _file_handlers[LOG_FILE] = handler
    return handler


def setup_logger(name: str) -> logging.Logger:
    """Return the logger called ``name`` with console and file output attached.

    Calling it again for a configured name returns the same logger without
    adding handlers.  If the log file cannot be opened the logger keeps
    console output only.
    """

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)
    try:
        file_handler = _shared_file_handler(formatter)
    except OSError as exc:
        logger.warning("File logging disabled for %s: %s", LOG_FILE, exc)
    else:
        logger.addHandler(file_handler)
    return logger


def read_logs(tail: int = 100) -> str:
    """Return the last ``tail`` lines of the log file (all lines if ``tail <= 0``).

    A missing log file reads as an empty string.
    """

    if not os.path.exists(LOG_FILE):
        return ""
    with open(LOG_FILE, "r", encoding="utf-8") as f:
        if tail <= 0:
            return f.read()
        return "".join(deque(f, maxlen=tail))
