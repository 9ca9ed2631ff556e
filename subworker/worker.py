"""Polling subscriber worker for one (topic, subscriber) pair.

Every ``poll_interval_ms`` the worker wakes up, asks the bus for one message,
decodes it, hands it to the async callback and, when the callback succeeds
and peek-lock is on, deletes the message from the bus.

Each tick starts its receive cycle as a separate task and does not wait for
it, so a slow callback never delays the next poll and cycles can overlap.
Pass ``serialize_cycles=True`` in the options to skip ticks while a previous
cycle is still running instead.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Set

from subworker.bus import BusClient, Handler
from subworker.config import WorkerConfig, resolve_config
from subworker.errors import (
    AckFailure,
    CallbackFailure,
    NoMessagesAvailable,
    ReceiveFailure,
    RegistrationFailure,
    WorkerError,
)
from subworker.message import RawMessage, box
from subworker.observability import Metrics, get_logger, worker_context

MAX_RESTART_ATTEMPTS = 10

COUNTERS = (
    "polls",
    "empty_polls",
    "received",
    "processed",
    "acked",
    "receive_failures",
    "callback_failures",
    "ack_failures",
    "skipped_ticks",
    "registration_failures",
)


class WorkerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class CycleOutcome(str, Enum):
    """How one receive cycle ended."""

    EMPTY = "empty"
    NO_MESSAGE = "no_message"
    PROCESSED = "processed"
    ACKED = "acked"
    RECEIVE_FAILED = "receive_failed"
    CALLBACK_FAILED = "callback_failed"
    ACK_FAILED = "ack_failed"


class Worker:
    """Polls one subscription and delivers each message to an async callback."""

    def __init__(
        self,
        topic: str,
        subscriber: str,
        callback: Optional[Handler],
        bus: BusClient,
        options: Optional[Mapping[str, Any]] = None,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        logger: Optional[logging.Logger] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._config: WorkerConfig = resolve_config(topic, subscriber, options, environ)
        self._callback = callback
        self._bus = bus
        self._loop = loop
        self._logger = logger or get_logger("subworker.worker")
        self._timer: Optional[asyncio.Task] = None
        self._state = WorkerState.IDLE
        self._in_flight: Set[asyncio.Task] = set()
        self._metrics = Metrics(counters=COUNTERS, gauges=("in_flight",))
        self._last_failure: Optional[WorkerError] = None
        self.restart_attempts = 0

    @property
    def topic(self) -> str:
        return self._config.topic

    @property
    def subscriber(self) -> str:
        return self._config.subscriber_name

    @property
    def config(self) -> WorkerConfig:
        return self._config

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._timer is not None

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def last_failure(self) -> Optional[WorkerError]:
        """Most recent classified failure, if any."""
        return self._last_failure

    @property
    def in_flight(self) -> int:
        """Number of receive cycles started by ticks that have not settled yet."""
        return len(self._in_flight)

    def __call__(self, handler: Handler) -> Handler:
        """Register ``handler`` as the callback; usable as a decorator."""
        self._callback = handler
        return handler

    # ---- Lifecycle ----

    def start(self) -> None:
        """
        Register the recurring poll timer. No-op while already running.
        A failed registration is retried on this instance until
        ``restart_attempts`` reaches MAX_RESTART_ATTEMPTS; after that the
        worker stays stopped.
        """
        if self._timer is not None:
            return
        while True:
            try:
                self._timer = self._register_timer()
            except Exception as e:
                self._fail(RegistrationFailure(self.topic, self.subscriber, e), "registration_failures")
                self.restart_attempts += 1
                if self.restart_attempts < MAX_RESTART_ATTEMPTS:
                    self._logger.info(
                        "worker_restarting",
                        extra=self._context(restart_attempts=self.restart_attempts),
                    )
                    continue
                self._state = WorkerState.STOPPED
                self._logger.critical(
                    "worker_restart_exhausted",
                    extra=self._context(restart_attempts=self.restart_attempts),
                )
                return
            self._state = WorkerState.RUNNING
            self._logger.info(
                "worker_started",
                extra=self._context(poll_interval_ms=self._config.poll_interval_ms),
            )
            return

    def stop(self) -> None:
        """Cancel the poll timer. Cycles already in flight run to completion."""
        if self._timer is None:
            return
        self._logger.info("worker_stopping", extra=self._context(in_flight=self.in_flight))
        self._timer.cancel()
        self._timer = None
        self._state = WorkerState.STOPPED

    async def wait_idle(self) -> None:
        """Wait until every in-flight receive cycle has settled."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def __aenter__(self) -> "Worker":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()
        await self.wait_idle()

    def _register_timer(self) -> asyncio.Task:
        loop = self._loop or asyncio.get_running_loop()
        ticker = self._tick_loop()
        try:
            return loop.create_task(ticker)
        except BaseException:
            ticker.close()
            raise

    async def _tick_loop(self) -> None:
        interval = self._config.poll_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self._tick()
            except Exception:
                self._logger.exception("tick_failed", extra=self._context())

    def _tick(self) -> Optional[asyncio.Task]:
        if self._config.serialize_cycles and self._in_flight:
            self._metrics.increment("skipped_ticks")
            self._logger.info("tick_skipped", extra=self._context(in_flight=self.in_flight))
            return None
        task = asyncio.get_running_loop().create_task(self._run_cycle())
        self._in_flight.add(task)
        self._metrics.set_gauge("in_flight", len(self._in_flight))
        task.add_done_callback(self._cycle_done)
        return task

    def _cycle_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._metrics.set_gauge("in_flight", len(self._in_flight))

    async def _run_cycle(self) -> Optional[CycleOutcome]:
        try:
            return await self.receive()
        except Exception:
            self._logger.exception("cycle_crashed", extra=self._context())
            return None

    # ---- Receive cycle ----

    async def receive(self) -> CycleOutcome:
        """Run one poll attempt: receive, decode, invoke callback, conditionally delete."""
        self._logger.info("worker_waking_up", extra=self._context())
        self._metrics.increment("polls")
        try:
            raw = await self._bus.receive_one(self.topic, self.subscriber, self._config.poll_options)
        except NoMessagesAvailable:
            self._metrics.increment("empty_polls")
            return CycleOutcome.EMPTY
        except Exception as e:
            self._fail(ReceiveFailure(self.topic, self.subscriber, e), "receive_failures")
            return CycleOutcome.RECEIVE_FAILED
        if raw is None or self._callback is None:
            return CycleOutcome.NO_MESSAGE
        return await self._deliver(raw)

    async def _deliver(self, raw: RawMessage) -> CycleOutcome:
        message = box(raw)
        self._metrics.increment("received")
        self._logger.info(
            "message_received",
            extra=self._context(
                payload_type=type(message.payload).__name__,
                **message.to_dict(),
            ),
        )
        try:
            await self._callback(message)
        except Exception as e:
            self._fail(
                CallbackFailure(self.topic, self.subscriber, e),
                "callback_failures",
                message_id=message.message_id,
            )
            return CycleOutcome.CALLBACK_FAILED
        self._metrics.increment("processed")
        if not self._config.peek_lock_enabled:
            self._logger.info("message_processed", extra=self._context(message_id=message.message_id))
            return CycleOutcome.PROCESSED
        self._logger.info("message_processed_deleting", extra=self._context(message_id=message.message_id))
        try:
            await self._bus.delete_message(raw)
        except Exception as e:
            self._fail(
                AckFailure(self.topic, self.subscriber, e),
                "ack_failures",
                message_id=message.message_id,
            )
            return CycleOutcome.ACK_FAILED
        self._metrics.increment("acked")
        return CycleOutcome.ACKED

    # ---- Helpers ----

    def _fail(self, failure: WorkerError, counter: str, **fields: Any) -> None:
        self._last_failure = failure
        self._metrics.increment(counter)
        self._logger.error(failure.event, extra=failure.context(**fields))

    def _context(self, **fields: Any) -> Dict[str, Any]:
        return worker_context(self.topic, self.subscriber, **fields)

    def status(self) -> Dict[str, Any]:
        """Snapshot used by the registry and the HTTP server."""
        return {
            "topic": self.topic,
            "subscriber": self.subscriber,
            "state": self._state.value,
            "restart_attempts": self.restart_attempts,
            "in_flight": self.in_flight,
            "peek_lock": self._config.peek_lock_enabled,
            "poll_interval_ms": self._config.poll_interval_ms,
            "serialize_cycles": self._config.serialize_cycles,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(topic={self.topic!r}, subscriber={self.subscriber!r}, state={self._state.value})"
