"""
Logging utilities.

WHAT: One place that configures handlers for the marketplace backend
WHY: Workflow steps, feed channel lifecycle and swallowed refresh errors must land in the log file
HOW: stdlib logging; console at the configured level, rotating file at DEBUG
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from ..core.config import settings

CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s:%(lineno)d] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that drown out feed and workflow records at DEBUG
_NOISY_LOGGERS = ("sqlalchemy.engine", "sse_starlette", "uvicorn.access")

_HANDLER_TAG = "_sportswap_handler"


def _tagged(handler: logging.Handler, level: int, fmt: str) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))
    setattr(handler, _HANDLER_TAG, True)
    return handler


def setup_logging():
    """
    Configure application logging.

    WHAT: Attach console + file handlers to the root logger
    WHY: Called on app import and again by test sessions; must not stack handlers
    HOW: Drop handlers this function installed earlier, then add fresh ones
    """
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    log_file = Path(settings.LOG_FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if settings.DEBUG else level)
    for handler in [h for h in root_logger.handlers if getattr(h, _HANDLER_TAG, False)]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.addHandler(_tagged(logging.StreamHandler(sys.stdout), level, CONSOLE_FORMAT))
    root_logger.addHandler(_tagged(
        RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"),
        logging.DEBUG,
        FILE_FORMAT
    ))

    if not settings.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"{settings.APP_NAME} logging ready (level={settings.LOG_LEVEL}, file={log_file})")


def get_logger(name: str) -> logging.Logger:
    """Module logger; pass __name__."""
    return logging.getLogger(name)
