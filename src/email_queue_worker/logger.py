"""Logging utilities for the email queue worker.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is configured via ``configure_logging()`` in the
entry point to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from email_queue_worker.logger import get_logger

        logger = get_logger("EmailWorker")
        logger.info("Worker started")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "EmailQueueWorker") -> logging.Logger:
    """Retrieve a logger instance.

    This function returns a standard library logger with the specified name.
    It does not configure handlers or formatters; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "EmailQueueWorker".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the process.

    Args:
        level: Level name such as "DEBUG" or "INFO". Unknown names fall
            back to INFO.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
