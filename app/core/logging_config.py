# -*- coding: utf-8 -*-
"""
Logging configuration for the queue notifier process.

Routes logs by severity so the container platform classifies them correctly:
- DEBUG, INFO, WARNING → STDOUT
- ERROR, CRITICAL → STDERR

Records go through a QueueHandler; a QueueListener thread does the actual
stream writes so a blocked stdout never stalls the event loop mid-scan.
"""

import atexit
import logging
import os
import queue
import sys
from logging.handlers import QueueHandler, QueueListener
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class MaxLevelFilter(logging.Filter):
    """Allows only records up to max_level (inclusive)"""

    def __init__(self, max_level):
        super().__init__()
        self.max_level = max_level

    def filter(self, record):
        return record.levelno <= self.max_level


_log_listener: Optional[QueueListener] = None


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(level: Optional[str] = None) -> None:
    """
    Install the queue-backed root handler.

    Must be called before any logger is used. Calling it again replaces the
    previous listener.

    Args:
        level: Root log level name; defaults to $LOG_LEVEL or INFO
    """
    global _log_listener

    _stop_log_listener()

    root_logger = logging.getLogger()
    root_logger.setLevel(_resolve_level(level))
    root_logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    log_queue = queue.Queue()
    root_logger.addHandler(QueueHandler(log_queue))

    _log_listener = QueueListener(
        log_queue,
        stdout_handler,
        stderr_handler,
        respect_handler_level=True,
    )
    _log_listener.start()
    atexit.register(_stop_log_listener)


def _stop_log_listener():
    """Stop the queue listener, flushing pending records"""
    global _log_listener
    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None
