"""Default callback for workers that have no application handler."""

from subworker.message import BoxedMessage
from subworker.observability import get_logger

_logger = get_logger("subworker.handlers")


async def log_message(message: BoxedMessage) -> None:
    """Log delivery and payload type; always succeeds, so the message gets deleted."""
    _logger.info(
        "message_handled",
        extra={
            "message_id": message.message_id,
            "payload_type": type(message.payload).__name__,
        },
    )
