"""Shared stubs: a scripted bus client and handlers that record deliveries."""

import asyncio
from typing import Any, List, Optional

import pytest

from subworker.config import PollOptions
from subworker.errors import NoMessagesAvailable
from subworker.message import BoxedMessage, RawMessage


class StubBus:
    """BusClient whose receive results are scripted; an empty script means an empty poll."""

    def __init__(self, results: Optional[List[Any]] = None, repeat: Optional[RawMessage] = None) -> None:
        self.results = list(results or [])
        self.repeat = repeat
        self.receive_calls: List[tuple] = []
        self.deleted: List[RawMessage] = []
        self.delete_error: Optional[Exception] = None

    async def receive_one(self, topic: str, subscriber: str, options: PollOptions) -> Optional[RawMessage]:
        self.receive_calls.append((topic, subscriber, options))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        if self.repeat is not None:
            return self.repeat
        raise NoMessagesAvailable(topic, subscriber)

    async def delete_message(self, message: RawMessage) -> None:
        self.deleted.append(message)
        if self.delete_error is not None:
            raise self.delete_error


class Recorder:
    """Async handler that records messages and optionally fails or blocks."""

    def __init__(self, error: Optional[Exception] = None, gate: Optional[asyncio.Event] = None) -> None:
        self.error = error
        self.gate = gate
        self.messages: List[BoxedMessage] = []
        self.entered = 0

    async def __call__(self, message: BoxedMessage) -> None:
        self.entered += 1
        if self.gate is not None:
            await self.gate.wait()
        self.messages.append(message)
        if self.error is not None:
            raise self.error


@pytest.fixture
def stub_bus() -> StubBus:
    return StubBus()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
