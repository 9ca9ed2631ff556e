"""Structured logging for worker events (poll, receive, callback, ack, restart)."""

import logging
import sys
from typing import Any, Dict, TextIO


def get_logger(name: str, level: int = logging.INFO, stream: TextIO | None = None) -> logging.Logger:
    """Return a logger writing one line per event; context goes in ``extra``."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
            )
        )
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger


def worker_context(topic: str, subscriber: str, **fields: Any) -> Dict[str, Any]:
    """Build the ``extra`` mapping every worker log line carries."""
    context: Dict[str, Any] = {"topic": topic, "subscriber": subscriber}
    context.update(fields)
    return context
