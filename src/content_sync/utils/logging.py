"""
Logging Utilities

Configures the package logger hierarchy for sync runs:
- Log level from the environment (DEBUG, INFO, WARNING, ERROR)
- Debug mode with verbose output
- Optional rotating log file

Log Format:
    %(asctime)s - %(name)s - %(levelname)s - %(message)s

Every module logs through ``logging.getLogger(__name__)``, so all of them
sit below the ``src.content_sync`` logger configured here.
"""

import logging
import logging.handlers
import os
import sys
from typing import Optional

ROOT_LOGGER_NAME = "src.content_sync"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
# 10 rolling files of 10 MB each
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 10

_LOG_LEVEL = os.getenv("CONTENT_SYNC_LOG_LEVEL", "INFO").upper()
_LOG_FILE = os.getenv("CONTENT_SYNC_LOG_FILE", None)
_DEBUG_MODE = os.getenv("CONTENT_SYNC_DEBUG", "").lower() in ("true", "1", "yes")

_root_configured = False
_root_logger = None


def _effective_level() -> int:
    if _DEBUG_MODE:
        return logging.DEBUG
    return getattr(logging, _LOG_LEVEL, logging.INFO)


def _configure_root_logger():
    """
    Configure the package root logger.

    Only runs once unless :func:`configure_logging` resets it.
    """
    global _root_configured, _root_logger

    if _root_configured:
        return

    _root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(_root_logger.handlers):
        _root_logger.removeHandler(handler)
        handler.close()
    _root_logger.setLevel(_effective_level())

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(_effective_level())
    _root_logger.addHandler(console_handler)

    if _LOG_FILE:
        try:
            os.makedirs(os.path.dirname(_LOG_FILE) or ".", exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                _LOG_FILE, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(_effective_level())
            _root_logger.addHandler(file_handler)
        except OSError as e:
            _root_logger.warning(f"Failed to create log file {_LOG_FILE}: {e}")

    _root_configured = True


def get_logger(name: str = ROOT_LOGGER_NAME, level: Optional[str] = None) -> logging.Logger:
    """
    Get a logger below the package root, configuring the root on first use.

    Args:
        name: Logger name (e.g., 'src.content_sync.cli')
        level: Optional log level override

    Returns:
        Configured logging.Logger instance
    """
    _configure_root_logger()

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger


def configure_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    debug: bool = False,
) -> logging.Logger:
    """
    Set up logging for a sync run.

    Should be called once at application startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path for a rotating log file
        debug: Enable debug mode (verbose output)

    Returns:
        Configured root logger
    """
    global _root_configured, _LOG_LEVEL, _LOG_FILE, _DEBUG_MODE

    _root_configured = False
    _LOG_LEVEL = level.upper()
    _LOG_FILE = log_file
    _DEBUG_MODE = debug

    _configure_root_logger()
    return _root_logger


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Render a secret for logs, keeping only its first characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible:
        return "*" * len(value)
    return f"{value[:visible]}****"
