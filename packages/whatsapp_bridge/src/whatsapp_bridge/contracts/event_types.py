"""
WhatsApp Bridge Event Types

Events pushed to real-time subscribers (and mirrored to the events stream).
"""

from enum import Enum

STREAM_EVENT_PREFIX = "whatsapp_bridge_"


class BridgeEventType(str, Enum):
    """
    Event kinds published per tenant.

    - QR: a new pairing QR code is available ({tenant_id, image})
    - STATUS: the session changed state ({tenant_id, state})
    - MESSAGE: a message was stored ({tenant_id, chat_id, message})
    """

    QR = "qr"
    STATUS = "status"
    MESSAGE = "message"

    def __str__(self) -> str:
        return self.value

    @property
    def stream_event_type(self) -> str:
        """Name used in the events stream envelope."""
        return f"{STREAM_EVENT_PREFIX}{self.value}"

    @classmethod
    def from_stream_event_type(cls, name: str) -> "BridgeEventType":
        return cls(name.removeprefix(STREAM_EVENT_PREFIX))
