"""Logging setup shared by the engine, the API server and the CLI."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Deque

LOGGER_NAME = "credit_timer"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Circular buffer to store recent log entries (max 100)
log_buffer: Deque[dict] = deque(maxlen=100)


class LogBufferHandler(logging.Handler):
    """Custom logging handler that captures logs to circular buffer."""

    def emit(self, record: logging.LogRecord):
        """Capture log record to buffer with timestamp, level, and message."""
        try:
            log_entry = {
                "timestamp": datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
            }
            log_buffer.append(log_entry)
        except Exception:
            self.handleError(record)


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the package logger, or a child of it."""
    if not name:
        return logging.getLogger(LOGGER_NAME)
    if name.startswith(LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def configure_logging(level: str | int = logging.INFO, console: bool = False) -> logging.Logger:
    """Attach the buffer handler (and optionally stderr) to the package logger.

    Safe to call more than once; handlers are only added the first time.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    if not any(isinstance(h, LogBufferHandler) for h in logger.handlers):
        buffer_handler = LogBufferHandler()
        buffer_handler.setLevel(logging.DEBUG)
        buffer_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(buffer_handler)

    if console and not any(h.get_name() == "credit_timer:console" for h in logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        console_handler.set_name("credit_timer:console")
        logger.addHandler(console_handler)

    return logger


def recent_logs(limit: int = 50) -> list[dict]:
    """Most recent buffered log entries, oldest first."""
    if limit <= 0:
        return []
    return list(log_buffer)[-limit:]
