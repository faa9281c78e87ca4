"""
Centralized logging for Huddle.

Logs to a file in the logs directory. Console status lines go through
ConfigManager.console_print instead, so background sessions stay quiet.
"""

import logging
import os
from pathlib import Path

# Override with HUDDLE_LOG_DIR / HUDDLE_LOG_LEVEL
LOGS_DIR = Path(os.environ.get("HUDDLE_LOG_DIR", Path.home() / ".huddle" / "logs"))

# Log file path
LOG_FILE = LOGS_DIR / "huddle.log"


class HuddleLogger:
    """Centralized logger for the Huddle package."""

    _instance = None
    _logger = None

    def __init__(self):
        """Initialize the logger (singleton)."""
        if HuddleLogger._logger is None:
            HuddleLogger._logger = self._setup_logger()

    @classmethod
    def get_logger(cls):
        """Get the singleton logger instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._logger

    def _setup_logger(self):
        """Set up the file logger with no console output."""
        logger = logging.getLogger('huddle')
        level_name = os.environ.get("HUDDLE_LOG_LEVEL", "INFO").upper()
        logger.setLevel(getattr(logging, level_name, logging.INFO))

        # Remove any existing handlers
        logger.handlers = []

        try:
            LOGS_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(LOG_FILE, mode='a', encoding='utf-8')
        except OSError:
            # Logs dir not writable: records only propagate to the root logger
            logger.addHandler(logging.NullHandler())
            return logger

        # Format: [2024-01-15 14:30:25] ERROR huddle.capture - message
        formatter = logging.Formatter(
            "[%(asctime)s] %(levelname)s %(name)s - %(message)s",
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        file_handler.setFormatter(formatter)

        logger.addHandler(file_handler)

        return logger


def get_logger(name=None):
    """Get the package logger, or a named child of it (e.g. 'capture')."""
    logger = HuddleLogger.get_logger()
    if name:
        return logger.getChild(name)
    return logger


def log_error(message, exception=None):
    """Log an error, with the traceback of exception when one is given."""
    logger = HuddleLogger.get_logger()
    if exception is None:
        logger.error(message)
        return
    logger.error(f"{message}: {exception}", exc_info=exception)


def log_exception(exception, context=""):
    """Log an unexpected exception with its traceback; context reads like 'in transcript subscriber'."""
    HuddleLogger.get_logger().error(f"Exception {context}".rstrip(), exc_info=exception)
