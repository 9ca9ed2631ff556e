"""Worker option resolution: user options first, then environment overrides, then defaults."""

import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from subworker.errors import WorkerConfigError
from subworker.observability import get_logger

# Environment overrides (milliseconds between polls, seconds a receive may wait)
ENV_POLL_INTERVAL = "WORKER_SLEEP"
ENV_RECEIVE_TIMEOUT = "SUBSCRIBER_TIMEOUT"

DEFAULT_POLL_INTERVAL_MS = 5000
DEFAULT_RECEIVE_TIMEOUT_SECONDS = 30

_logger = get_logger("subworker.config")


@dataclass(frozen=True)
class PollOptions:
    """Options passed through to ``BusClient.receive_one``."""

    peek_lock_enabled: bool = True
    receive_timeout_seconds: int = DEFAULT_RECEIVE_TIMEOUT_SECONDS


@dataclass(frozen=True)
class WorkerConfig:
    """Effective, immutable configuration of one worker."""

    topic: str
    subscriber_name: str
    peek_lock_enabled: bool = True
    receive_timeout_seconds: int = DEFAULT_RECEIVE_TIMEOUT_SECONDS
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    serialize_cycles: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.topic, str) or not self.topic.strip():
            raise WorkerConfigError("topic is required")
        if not isinstance(self.subscriber_name, str) or not self.subscriber_name.strip():
            raise WorkerConfigError("subscriber name is required")
        if self.receive_timeout_seconds < 0:
            raise WorkerConfigError("receive_timeout_seconds must be >= 0")
        if self.poll_interval_ms <= 0:
            raise WorkerConfigError("poll_interval_ms must be > 0")

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def poll_options(self) -> PollOptions:
        return PollOptions(
            peek_lock_enabled=self.peek_lock_enabled,
            receive_timeout_seconds=self.receive_timeout_seconds,
        )


def _env_int(environ: Mapping[str, str], key: str, default: int, minimum: int) -> int:
    try:
        value = int(environ.get(key, default))
    except (ValueError, TypeError):
        _logger.warning("invalid_env_override", extra={"key": key, "value": environ.get(key)})
        return default
    if value < minimum:
        _logger.warning("invalid_env_override", extra={"key": key, "value": value})
        return default
    return value


def get_options(options: Optional[Mapping[str, Any]], environ: Optional[Mapping[str, str]] = None) -> PollOptions:
    """Resolve peek-lock mode and receive timeout from user options and the environment.

    ``non_repeatable`` turns peek-lock on or off when given; otherwise peek-lock
    is on. The receive timeout comes from ``SUBSCRIBER_TIMEOUT`` or defaults to 30s.
    """
    options = options or {}
    env = os.environ if environ is None else environ
    peek_lock = options["non_repeatable"] if options.get("non_repeatable") is not None else True
    return PollOptions(
        peek_lock_enabled=bool(peek_lock),
        receive_timeout_seconds=_env_int(env, ENV_RECEIVE_TIMEOUT, DEFAULT_RECEIVE_TIMEOUT_SECONDS, 0),
    )


def resolve_config(
    topic: str,
    subscriber: str,
    options: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> WorkerConfig:
    """Build the full WorkerConfig; read once when a worker is constructed."""
    options = options or {}
    env = os.environ if environ is None else environ
    poll = get_options(options, env)
    return WorkerConfig(
        topic=topic,
        subscriber_name=subscriber,
        peek_lock_enabled=poll.peek_lock_enabled,
        receive_timeout_seconds=poll.receive_timeout_seconds,
        poll_interval_ms=_env_int(env, ENV_POLL_INTERVAL, DEFAULT_POLL_INTERVAL_MS, 1),
        serialize_cycles=bool(options.get("serialize_cycles", False)),
    )
