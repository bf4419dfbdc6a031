"""
Logging configuration for the application.

Sets up one consistent format for every module logger. Logging must not
change program behavior. Never logs request bodies or secrets.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Loggers that are chatty at INFO (one line per request or per job run).
NOISY_LOGGERS = ("uvicorn.access", "uvicorn.error", "apscheduler.executors.default")


def configure_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: The log level string (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=sys.stdout,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
