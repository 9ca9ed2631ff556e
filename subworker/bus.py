"""Bus client contract consumed by workers.

A worker only needs two capabilities from the message bus: receive one message
for a (topic, subscriber) pair, and delete a message it received under
peek-lock. Transports (a real broker SDK, the in-memory bus) implement this
protocol and are injected into each worker.
"""

from typing import Awaitable, Callable, Optional, Protocol

from subworker.config import PollOptions
from subworker.message import BoxedMessage, RawMessage

Handler = Callable[[BoxedMessage], Awaitable[None]]


class BusClient(Protocol):
    """Receive-one / delete capability set of a peek-lock message bus."""

    async def receive_one(self, topic: str, subscriber: str, options: PollOptions) -> Optional[RawMessage]:
        """
        Receive at most one message, waiting up to ``options.receive_timeout_seconds``.
        Raises ``NoMessagesAvailable`` when the subscription is empty; any other
        exception is a real receive failure.
        """
        ...

    async def delete_message(self, message: RawMessage) -> None:
        """Acknowledge (remove) a message previously received under peek-lock."""
        ...
