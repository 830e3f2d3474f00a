"""
Logging configuration for SellerCloud.

Every ``sellercloud.*`` module logs through children of the ``sellercloud``
package logger, which owns a colored stderr handler and, when ``LOG_DIR`` is
set, a rotating file handler. Settings come from the environment so logging
works before the settings object is loaded:

    LOG_LEVEL    DEBUG, INFO, ... (default INFO)
    LOG_DIR      directory for sellercloud.log; no file logging if empty
    DEBUG_MODE   "true" adds function and line number to every record
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import List, Optional

import colorlog


PACKAGE_LOGGER = "sellercloud"
LOG_FILE_NAME = "sellercloud.log"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 5
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

_configured = False


def _record_format(debug_mode: bool) -> str:
    origin = "%(name)s.%(funcName)s:%(lineno)d" if debug_mode else "%(name)s"
    return f"%(asctime)s [%(levelname)8s] {origin} - %(message)s"


def _build_handlers(log_dir: str, debug_mode: bool) -> List[logging.Handler]:
    record_format = _record_format(debug_mode)

    console = colorlog.StreamHandler(sys.stderr)
    console.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s" + record_format, datefmt=DATE_FORMAT, log_colors=LOG_COLORS
    ))
    handlers: List[logging.Handler] = [console]

    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME),
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(record_format, datefmt=DATE_FORMAT))
        handlers.append(file_handler)

    return handlers


def configure_logger(logger: logging.Logger) -> logging.Logger:
    """
    (Re)attach handlers to ``logger`` from the current environment.

    Existing handlers are closed and replaced, so calling this twice never
    duplicates output. Records still propagate to the root logger.
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = os.getenv("LOG_DIR", "")
    debug_mode = os.getenv("DEBUG_MODE", "false").lower() == "true"

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(getattr(logging, level, logging.INFO))
    for handler in _build_handlers(log_dir, debug_mode):
        logger.addHandler(handler)
    logger.propagate = True
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger instance for the given name.

    Args:
        name: Logger name. If None, uses the caller's module name.

    Returns:
        A child of the package logger for ``sellercloud.*`` names, otherwise a
        logger with its own handlers.
    """
    global _configured

    if name is None:
        name = sys._getframe(1).f_globals.get("__name__", PACKAGE_LOGGER)

    if name == PACKAGE_LOGGER or name.startswith(PACKAGE_LOGGER + "."):
        if not _configured:
            configure_logger(logging.getLogger(PACKAGE_LOGGER))
            _configured = True
        return logging.getLogger(name)

    return configure_logger(logging.getLogger(name))


def setup_logging() -> None:
    """Re-read the environment and reconfigure the package logger (CLI startup)."""
    global _configured
    logger = configure_logger(logging.getLogger(PACKAGE_LOGGER))
    _configured = True
    logger.debug(f"Logging initialized: level {logging.getLevelName(logger.level)}, "
                 f"handlers {[type(h).__name__ for h in logger.handlers]}")
