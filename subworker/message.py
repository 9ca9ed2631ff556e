"""Raw bus messages, the boxed message handed to callbacks, and body decoding."""

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional


@dataclass
class RawMessage:
    """A message as returned by a bus client.

    ``broker_properties`` is opaque to the worker; the bus needs it back to
    delete (acknowledge) the message.
    """

    body: bytes | str
    broker_properties: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BoxedMessage:
    """Decoded, callback-facing view of one received message."""

    payload: Any
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))

    @property
    def message_id(self) -> Optional[str]:
        return self.properties.get("MessageId")

    def to_dict(self) -> dict:
        """Serialize message for logging."""
        return {
            "message_id": self.message_id,
            "payload": self.payload,
            "properties": dict(self.properties),
        }


def decode(body: Any) -> Any:
    """Parse ``body`` as JSON; return it unchanged if it does not parse."""
    try:
        return json.loads(body)
    except (TypeError, ValueError, RecursionError):
        return body


def box(message: RawMessage) -> BoxedMessage:
    """Decode the raw body and carry the broker properties forward."""
    return BoxedMessage(payload=decode(message.body), properties=message.broker_properties)
