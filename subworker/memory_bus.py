"""In-process peek-lock bus (no broker): topics fan out to named subscriptions."""

import asyncio
import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from subworker.config import PollOptions
from subworker.errors import NoMessagesAvailable
from subworker.message import RawMessage
from subworker.observability import get_logger

DEFAULT_LOCK_DURATION_SEC = 30.0
DEFAULT_POLL_STEP_SEC = 0.05


class SubscriptionNotFound(LookupError):
    """Receive against a (topic, subscriber) pair that was never created."""


class MessageLockLost(Exception):
    """Delete with a lock token that is unknown or whose lock already expired."""


@dataclass
class _Entry:
    body: bytes | str
    properties: Dict[str, Any]
    sequence_number: int
    delivery_count: int = 0
    lock_token: Optional[str] = None
    locked_until: float = 0.0


@dataclass
class _Subscription:
    topic: str
    name: str
    entries: List[_Entry] = field(default_factory=list)


class InMemoryBus:
    """Thread-safe in-memory bus implementing ``BusClient``.

    Peek-lock receive hides a message for ``lock_duration`` seconds; if it is
    not deleted before the lock expires it becomes visible again with a higher
    ``DeliveryCount``. Receive-and-delete removes it on receive.
    """

    def __init__(
        self,
        lock_duration: float = DEFAULT_LOCK_DURATION_SEC,
        poll_step: float = DEFAULT_POLL_STEP_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock_duration = lock_duration
        self._poll_step = poll_step
        self._clock = clock
        self._subscriptions: Dict[Tuple[str, str], _Subscription] = {}
        self._sequence = 0
        self._lock = threading.Lock()
        self._logger = get_logger("subworker.memory_bus")

    @property
    def lock_duration(self) -> float:
        return self._lock_duration

    def create_subscription(self, topic: str, subscriber: str) -> bool:
        """Create the subscription if missing. Returns True if it was created."""
        key = (topic, subscriber)
        with self._lock:
            if key in self._subscriptions:
                return False
            self._subscriptions[key] = _Subscription(topic, subscriber)
        self._logger.info("subscription_created", extra={"topic": topic, "subscriber": subscriber})
        return True

    def delete_subscription(self, topic: str, subscriber: str) -> bool:
        with self._lock:
            return self._subscriptions.pop((topic, subscriber), None) is not None

    def publish(self, topic: str, body: Any, /, **properties: Any) -> Optional[str]:
        """
        Copy a message into every subscription of ``topic``.
        Non-string bodies are JSON-encoded. Returns the message id, or None if
        the topic has no subscription (the message is dropped).
        """
        if not isinstance(body, (str, bytes)):
            body = json.dumps(body)
        message_id = str(properties.pop("MessageId", None) or uuid.uuid4().hex)
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.topic == topic]
            dropped = not targets
            if targets:
                self._sequence += 1
                base = dict(properties)
                base.update(
                    MessageId=message_id,
                    SequenceNumber=self._sequence,
                    EnqueuedTimeUtc=datetime.now(timezone.utc).isoformat(),
                )
                for subscription in targets:
                    subscription.entries.append(_Entry(body, dict(base), self._sequence))
        if dropped:
            self._logger.info("publish_dropped_no_subscription", extra={"topic": topic, "message_id": message_id})
            return None
        self._logger.info(
            "published",
            extra={"topic": topic, "message_id": message_id, "subscriber_count": len(targets)},
        )
        return message_id

    async def receive_one(self, topic: str, subscriber: str, options: PollOptions) -> Optional[RawMessage]:
        deadline = self._clock() + max(options.receive_timeout_seconds, 0)
        while True:
            message = self._take(topic, subscriber, options.peek_lock_enabled)
            if message is not None:
                return message
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise NoMessagesAvailable(topic, subscriber)
            await asyncio.sleep(min(self._poll_step, remaining))

    async def delete_message(self, message: RawMessage) -> None:
        token = message.broker_properties.get("LockToken")
        now = self._clock()
        with self._lock:
            for subscription in self._subscriptions.values():
                for i, entry in enumerate(subscription.entries):
                    if token is not None and entry.lock_token == token:
                        if entry.locked_until <= now:
                            break
                        del subscription.entries[i]
                        return
        raise MessageLockLost(f"lock {token!r} is unknown or expired")

    def _take(self, topic: str, subscriber: str, peek_lock: bool) -> Optional[RawMessage]:
        now = self._clock()
        with self._lock:
            subscription = self._subscriptions.get((topic, subscriber))
            if subscription is None:
                raise SubscriptionNotFound(f"subscription {topic}/{subscriber} does not exist")
            for i, entry in enumerate(subscription.entries):
                if entry.lock_token is not None:
                    if entry.locked_until > now:
                        continue
                    entry.lock_token = None
                entry.delivery_count += 1
                properties = dict(entry.properties, DeliveryCount=entry.delivery_count)
                if peek_lock:
                    entry.lock_token = uuid.uuid4().hex
                    entry.locked_until = now + self._lock_duration
                    properties["LockToken"] = entry.lock_token
                else:
                    del subscription.entries[i]
                return RawMessage(body=entry.body, broker_properties=properties)
        return None

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Return { "topic/subscriber": { active, locked } }."""
        now = self._clock()
        with self._lock:
            out = {}
            for (topic, name), subscription in self._subscriptions.items():
                locked = sum(1 for e in subscription.entries if e.lock_token is not None and e.locked_until > now)
                out[f"{topic}/{name}"] = {"active": len(subscription.entries) - locked, "locked": locked}
            return out
