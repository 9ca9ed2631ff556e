"""Tagged failure variants for the receive cycle and the worker lifecycle.

Bus clients raise :class:`NoMessagesAvailable` for an empty poll. The worker
wraps every other failure in one of the :class:`WorkerError` subclasses below
so the kind of failure is carried by its type, not by its message text.
"""

from typing import Any, Dict, Optional


class NoMessagesAvailable(Exception):
    """Empty poll: the subscription currently holds no visible message."""

    def __init__(self, topic: str = "", subscriber: str = "") -> None:
        super().__init__("No messages to receive")
        self.topic = topic
        self.subscriber = subscriber


class WorkerError(Exception):
    """Base for failures observed by a worker; carries the log event name."""

    event = "worker_failed"

    def __init__(self, topic: str, subscriber: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause!s}" if cause is not None else ""
        super().__init__(f"{self.event} ({topic}/{subscriber}){detail}")
        self.topic = topic
        self.subscriber = subscriber
        self.cause = cause

    def context(self, **fields: Any) -> Dict[str, Any]:
        """Logging ``extra`` for this failure."""
        out: Dict[str, Any] = {
            "topic": self.topic,
            "subscriber": self.subscriber,
            "error": str(self.cause) if self.cause is not None else None,
            "error_type": type(self.cause).__name__ if self.cause is not None else None,
        }
        out.update(fields)
        return out


class ReceiveFailure(WorkerError):
    """The bus receive call failed for a reason other than an empty poll."""

    event = "receive_failed"


class CallbackFailure(WorkerError):
    """The user callback raised; the message is left unacknowledged."""

    event = "callback_failed"


class AckFailure(WorkerError):
    """Deleting a successfully processed message failed."""

    event = "message_delete_failed"


class RegistrationFailure(WorkerError):
    """The poll timer could not be registered."""

    event = "worker_crashed"


class WorkerConfigError(ValueError):
    """Invalid worker configuration."""
