"""Example: one worker polling the in-memory bus (no broker)."""

from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging

from subworker import BoxedMessage, InMemoryBus, Worker

logging.basicConfig(level=logging.INFO)


async def handle(message: BoxedMessage) -> None:
    if isinstance(message.payload, dict) and message.payload.get("fail"):
        raise ValueError("refusing message")
    print(f"handled {message.message_id}: {message.payload!r}")


async def main() -> None:
    bus = InMemoryBus(lock_duration=1.0)
    bus.create_subscription("events", "audit")

    bus.publish("events", {"event": "user.signup", "user_id": 101})
    bus.publish("events", "plain-text")
    bus.publish("events", {"fail": True})

    worker = Worker("events", "audit", handle, bus, environ={"WORKER_SLEEP": "200", "SUBSCRIBER_TIMEOUT": "0"})
    async with worker:
        await asyncio.sleep(1.5)

    print(worker.metrics.snapshot())
    print(bus.stats())


if __name__ == "__main__":
    asyncio.run(main())
