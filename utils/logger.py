"""
utils/logger.py
---------------
Logging setup shared by every module.
Modules call `get_logger(__name__)`; the root logger is configured once,
on first use, at the level named by LOG_LEVEL. The CLI can change the
level afterwards with `set_level`.
"""

import logging
import sys
from typing import Optional

from config import LOG_LEVEL

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# HTTP client chatter from the Telegram bot; one line per request at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "telegram")

_handler: Optional[logging.Handler] = None


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def _init_logging() -> None:
    global _handler
    if _handler is not None:
        return
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setFormatter(logging.Formatter(_LOG_FORMAT, _DATE_FORMAT))
    root = logging.getLogger()
    root.setLevel(_level(LOG_LEVEL))
    root.addHandler(_handler)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def set_level(name: str) -> None:
    """Change the root level, e.g. from a --log-level flag."""
    _init_logging()
    logging.getLogger().setLevel(_level(name))


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger instance.

    Args:
        name: Usually ``__name__`` of the calling module.
    """
    _init_logging()
    return logging.getLogger(name)
