"""Observability for workers: structured logging and per-worker metrics."""

from subworker.observability.logger import get_logger, worker_context
from subworker.observability.metrics import Metrics

__all__ = ["get_logger", "worker_context", "Metrics"]
