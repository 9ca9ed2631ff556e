import asyncio
import logging

import pytest

from subworker.errors import AckFailure, CallbackFailure, ReceiveFailure, RegistrationFailure
from subworker.message import RawMessage
from subworker.worker import MAX_RESTART_ATTEMPTS, CycleOutcome, Worker, WorkerState
from tests.conftest import Recorder, StubBus

FAST = {"WORKER_SLEEP": "10", "SUBSCRIBER_TIMEOUT": "0"}


def make_worker(bus, callback, options=None, environ=None, **kwargs) -> Worker:
    return Worker("orders", "billing", callback, bus, options, environ=environ or {}, **kwargs)


class FlakyLoop:
    """Event-loop stand-in whose create_task fails the first ``failures`` times."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def create_task(self, coro):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("timer registration failed")
        return asyncio.get_running_loop().create_task(coro)


# ---- Receive cycle ----

@pytest.mark.asyncio
async def test_resolved_callback_deletes_message_once(recorder):
    raw = RawMessage(body='{"a":1}', broker_properties={"id": "m1"})
    bus = StubBus([raw])
    worker = make_worker(bus, recorder)

    outcome = await worker.receive()

    assert outcome is CycleOutcome.ACKED
    assert [m.payload for m in recorder.messages] == [{"a": 1}]
    assert len(bus.deleted) == 1
    assert bus.deleted[0] is raw
    assert bus.deleted[0].broker_properties == {"id": "m1"}
    assert worker.metrics.get_counter("acked") == 1


@pytest.mark.asyncio
async def test_plain_text_body_is_delivered_unchanged(recorder):
    bus = StubBus([RawMessage(body="plain-text")])
    worker = make_worker(bus, recorder)

    await worker.receive()

    assert recorder.messages[0].payload == "plain-text"


@pytest.mark.asyncio
async def test_receive_passes_topic_subscriber_and_poll_options(recorder):
    bus = StubBus()
    worker = make_worker(bus, recorder, {"non_repeatable": False}, environ={"SUBSCRIBER_TIMEOUT": "4"})

    await worker.receive()

    topic, subscriber, options = bus.receive_calls[0]
    assert (topic, subscriber) == ("orders", "billing")
    assert options.peek_lock_enabled is False
    assert options.receive_timeout_seconds == 4


@pytest.mark.asyncio
async def test_rejected_callback_never_deletes():
    bus = StubBus([RawMessage(body="{}", broker_properties={"id": "m1"})])
    worker = make_worker(bus, Recorder(error=ValueError("boom")))

    outcome = await worker.receive()

    assert outcome is CycleOutcome.CALLBACK_FAILED
    assert bus.deleted == []
    assert isinstance(worker.last_failure, CallbackFailure)
    assert isinstance(worker.last_failure.cause, ValueError)
    assert worker.metrics.get_counter("callback_failures") == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [None, ValueError("boom")])
async def test_peek_lock_disabled_never_deletes(error):
    bus = StubBus([RawMessage(body="{}")])
    worker = make_worker(bus, Recorder(error=error), {"non_repeatable": False})

    outcome = await worker.receive()

    assert bus.deleted == []
    expected = CycleOutcome.PROCESSED if error is None else CycleOutcome.CALLBACK_FAILED
    assert outcome is expected


@pytest.mark.asyncio
async def test_empty_poll_is_silent(recorder, caplog):
    bus = StubBus()
    worker = make_worker(bus, recorder)

    with caplog.at_level(logging.INFO):
        outcome = await worker.receive()

    assert outcome is CycleOutcome.EMPTY
    assert recorder.entered == 0
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
    assert worker.last_failure is None
    assert worker.metrics.get_counter("empty_polls") == 1


@pytest.mark.asyncio
async def test_receive_failure_is_logged_with_context(recorder, caplog):
    bus = StubBus([ConnectionError("broker unreachable")])
    worker = make_worker(bus, recorder)

    with caplog.at_level(logging.INFO):
        outcome = await worker.receive()

    assert outcome is CycleOutcome.RECEIVE_FAILED
    assert recorder.entered == 0
    assert isinstance(worker.last_failure, ReceiveFailure)
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert [r.getMessage() for r in errors] == ["receive_failed"]
    assert errors[0].topic == "orders"
    assert errors[0].subscriber == "billing"
    assert errors[0].error == "broker unreachable"


@pytest.mark.asyncio
async def test_delete_failure_is_logged_and_not_retried(recorder):
    bus = StubBus([RawMessage(body="{}")])
    bus.delete_error = TimeoutError("lock lost")
    worker = make_worker(bus, recorder)

    outcome = await worker.receive()

    assert outcome is CycleOutcome.ACK_FAILED
    assert len(recorder.messages) == 1
    assert len(bus.deleted) == 1
    assert isinstance(worker.last_failure, AckFailure)
    assert worker.metrics.get_counter("processed") == 1
    assert worker.metrics.get_counter("ack_failures") == 1


@pytest.mark.asyncio
async def test_missing_message_or_callback_is_a_no_op():
    bus = StubBus([None, RawMessage(body="{}")])
    worker = make_worker(bus, None)

    assert await worker.receive() is CycleOutcome.NO_MESSAGE
    assert await worker.receive() is CycleOutcome.NO_MESSAGE
    assert bus.deleted == []


@pytest.mark.asyncio
async def test_empty_message_with_callback_set_is_a_no_op(recorder):
    bus = StubBus([None])
    worker = make_worker(bus, recorder)

    assert await worker.receive() is CycleOutcome.NO_MESSAGE
    assert recorder.entered == 0
    assert bus.deleted == []


@pytest.mark.asyncio
async def test_received_message_is_logged_with_its_payload(recorder, caplog):
    bus = StubBus([RawMessage(body='{"a":1}', broker_properties={"MessageId": "m1"})])
    worker = make_worker(bus, recorder)

    with caplog.at_level(logging.INFO):
        await worker.receive()

    received = [r for r in caplog.records if r.getMessage() == "message_received"]
    assert len(received) == 1
    assert received[0].name == "subworker.worker"
    assert received[0].topic == "orders"
    assert received[0].message_id == "m1"
    assert received[0].payload == {"a": 1}
    assert received[0].properties == {"MessageId": "m1"}


def test_workers_share_one_module_logger(stub_bus, recorder):
    first = make_worker(stub_bus, recorder)
    second = Worker("refunds", "audit", recorder, stub_bus, environ={})
    assert first._logger is second._logger
    assert first._logger.name == "subworker.worker"


@pytest.mark.asyncio
async def test_callback_can_be_registered_with_decorator():
    bus = StubBus([RawMessage(body='"hi"')])
    worker = make_worker(bus, None)
    seen = []

    @worker
    async def handle(message):
        seen.append(message.payload)

    assert await worker.receive() is CycleOutcome.ACKED
    assert seen == ["hi"]


# ---- Lifecycle ----

def test_new_worker_is_idle(stub_bus, recorder):
    worker = make_worker(stub_bus, recorder)
    assert worker.state is WorkerState.IDLE
    assert worker.restart_attempts == 0
    assert worker.is_running is False


def test_stop_without_start_is_a_no_op(stub_bus, recorder):
    worker = make_worker(stub_bus, recorder)
    worker.stop()
    assert worker.state is WorkerState.IDLE


def test_registration_gives_up_after_max_attempts(stub_bus, recorder):
    loop = FlakyLoop(failures=100)
    worker = make_worker(stub_bus, recorder, loop=loop)

    worker.start()

    assert loop.calls == MAX_RESTART_ATTEMPTS
    assert worker.restart_attempts == MAX_RESTART_ATTEMPTS
    assert worker.state is WorkerState.STOPPED
    assert worker.is_running is False
    assert isinstance(worker.last_failure, RegistrationFailure)
    assert worker.metrics.get_counter("registration_failures") == MAX_RESTART_ATTEMPTS


def test_no_automatic_retry_once_exhausted(stub_bus, recorder):
    loop = FlakyLoop(failures=100)
    worker = make_worker(stub_bus, recorder, loop=loop)
    worker.start()

    worker.start()

    assert loop.calls == MAX_RESTART_ATTEMPTS + 1
    assert worker.state is WorkerState.STOPPED


def test_start_outside_event_loop_counts_as_registration_failure(stub_bus, recorder, caplog):
    worker = make_worker(stub_bus, recorder)

    with caplog.at_level(logging.INFO):
        worker.start()

    assert worker.state is WorkerState.STOPPED
    assert worker.restart_attempts == MAX_RESTART_ATTEMPTS
    assert any(r.levelno == logging.CRITICAL and r.getMessage() == "worker_restart_exhausted" for r in caplog.records)


@pytest.mark.asyncio
async def test_registration_recovers_before_cap(stub_bus, recorder):
    loop = FlakyLoop(failures=MAX_RESTART_ATTEMPTS - 1)
    worker = make_worker(stub_bus, recorder, loop=loop)

    worker.start()
    try:
        assert loop.calls == MAX_RESTART_ATTEMPTS
        assert worker.restart_attempts == MAX_RESTART_ATTEMPTS - 1
        assert worker.state is WorkerState.RUNNING
        assert worker.is_running is True
    finally:
        worker.stop()
    assert worker.state is WorkerState.STOPPED
    assert worker.is_running is False


@pytest.mark.asyncio
async def test_start_is_idempotent_and_restartable(stub_bus, recorder):
    worker = make_worker(stub_bus, recorder, environ=FAST)
    worker.start()
    worker.start()
    assert worker.state is WorkerState.RUNNING
    worker.stop()
    worker.stop()
    assert worker.state is WorkerState.STOPPED
    worker.start()
    assert worker.state is WorkerState.RUNNING
    worker.stop()


# ---- Ticks ----

@pytest.mark.asyncio
async def test_ticks_poll_and_acknowledge(recorder):
    first = RawMessage(body='{"n": 1}', broker_properties={"id": "m1"})
    second = RawMessage(body='{"n": 2}', broker_properties={"id": "m2"})
    bus = StubBus([first, second])
    worker = make_worker(bus, recorder, environ=FAST)

    async with worker:
        await asyncio.sleep(0.15)

    assert [m.payload for m in recorder.messages] == [{"n": 1}, {"n": 2}]
    assert bus.deleted == [first, second]
    assert len(bus.receive_calls) > 2
    assert worker.in_flight == 0
    assert worker.state is WorkerState.STOPPED


@pytest.mark.asyncio
async def test_slow_callback_does_not_delay_next_poll():
    gate = asyncio.Event()
    bus = StubBus(repeat=RawMessage(body="{}"))
    handler = Recorder(gate=gate)
    worker = make_worker(bus, handler, environ=FAST)

    worker.start()
    await asyncio.sleep(0.1)
    worker.stop()

    assert handler.entered > 1
    assert worker.in_flight > 1
    gate.set()
    await worker.wait_idle()
    assert worker.in_flight == 0
    assert len(bus.deleted) == handler.entered


@pytest.mark.asyncio
async def test_serialized_cycles_skip_ticks_while_busy():
    gate = asyncio.Event()
    bus = StubBus(repeat=RawMessage(body="{}"))
    handler = Recorder(gate=gate)
    worker = make_worker(bus, handler, {"serialize_cycles": True}, environ=FAST)

    worker.start()
    await asyncio.sleep(0.1)
    worker.stop()

    assert handler.entered == 1
    assert worker.in_flight == 1
    assert worker.metrics.get_counter("skipped_ticks") > 0
    gate.set()
    await worker.wait_idle()
    assert len(bus.deleted) == 1


@pytest.mark.asyncio
async def test_stop_leaves_in_flight_cycle_running():
    gate = asyncio.Event()
    bus = StubBus([RawMessage(body="{}")])
    handler = Recorder(gate=gate)
    worker = make_worker(bus, handler, environ=FAST)

    worker.start()
    while handler.entered == 0:
        await asyncio.sleep(0.005)
    worker.stop()
    gate.set()
    await worker.wait_idle()

    assert len(bus.deleted) == 1
    assert worker.metrics.get_counter("acked") == 1


@pytest.mark.asyncio
async def test_crashing_cycle_keeps_timer_running(recorder, monkeypatch, caplog):
    bus = StubBus()
    worker = make_worker(bus, recorder, environ=FAST)

    async def explode():
        raise RuntimeError("unexpected")

    monkeypatch.setattr(worker, "receive", explode)
    with caplog.at_level(logging.INFO):
        worker.start()
        await asyncio.sleep(0.05)
        assert worker.state is WorkerState.RUNNING
        worker.stop()
        await worker.wait_idle()

    assert any(r.getMessage() == "cycle_crashed" for r in caplog.records)


def test_status_reports_configuration(stub_bus, recorder):
    worker = make_worker(stub_bus, recorder, {"non_repeatable": False}, environ={"WORKER_SLEEP": "100"})
    assert worker.status() == {
        "topic": "orders",
        "subscriber": "billing",
        "state": "idle",
        "restart_attempts": 0,
        "in_flight": 0,
        "peek_lock": False,
        "poll_interval_ms": 100,
        "serialize_cycles": False,
    }
