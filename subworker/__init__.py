"""Polling subscriber workers for peek-lock message buses."""

from subworker.bus import BusClient, Handler
from subworker.config import PollOptions, WorkerConfig, get_options, resolve_config
from subworker.errors import (
    AckFailure,
    CallbackFailure,
    NoMessagesAvailable,
    ReceiveFailure,
    RegistrationFailure,
    WorkerConfigError,
    WorkerError,
)
from subworker.memory_bus import InMemoryBus
from subworker.message import BoxedMessage, RawMessage, box, decode
from subworker.registry import WorkerRegistry
from subworker.worker import MAX_RESTART_ATTEMPTS, CycleOutcome, Worker, WorkerState

__all__ = [
    "BusClient",
    "Handler",
    "PollOptions",
    "WorkerConfig",
    "get_options",
    "resolve_config",
    "AckFailure",
    "CallbackFailure",
    "NoMessagesAvailable",
    "ReceiveFailure",
    "RegistrationFailure",
    "WorkerConfigError",
    "WorkerError",
    "InMemoryBus",
    "BoxedMessage",
    "RawMessage",
    "box",
    "decode",
    "WorkerRegistry",
    "MAX_RESTART_ATTEMPTS",
    "CycleOutcome",
    "Worker",
    "WorkerState",
]
