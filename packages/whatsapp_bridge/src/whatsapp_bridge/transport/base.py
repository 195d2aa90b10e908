"""
WhatsApp Transport Base

Abstract interface for WhatsApp Web transports.
Implementations: Evolution API (Baileys bridge), Stub (for development).

A transport connects one session and reports everything that happens to it
through an ``emit`` callback as typed events. The session manager owns the
callback and applies events in order.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Union

from whatsapp_bridge.persistence.models import MessageKind
from whatsapp_bridge.routing.phone import GROUP_SUFFIX


@dataclass(frozen=True)
class QrCodeEvent:
    """A new QR code must be scanned to pair the session."""

    image: str  # base64 data URL
    attempt: int = 1


@dataclass(frozen=True)
class StatusEvent:
    """Raw status string reported by the transport (e.g. "isLogged", "open")."""

    status: str


@dataclass(frozen=True)
class MessageEvent:
    """A message in WhatsApp Web shape (see ``parse_transport_message``)."""

    message: dict[str, Any]


@dataclass(frozen=True)
class TerminatedEvent:
    """The connection is gone. ``error`` is None on a clean disconnect."""

    error: str | None = None


TransportEvent = Union[QrCodeEvent, StatusEvent, MessageEvent, TerminatedEvent]
Emit = Callable[[TransportEvent], None]


@dataclass
class SendResult:
    """Result of a successful send."""

    id: str
    to: str
    raw_response: dict[str, Any] = field(default_factory=dict)


class TransportHandle(ABC):
    """A live connection for one session."""

    @abstractmethod
    async def send_text(self, address: str, text: str) -> SendResult:
        """
        Send a text message.

        Args:
            address: Transport address ("5511999990000@c.us")
            text: Message text

        Returns:
            SendResult with the transport message ID

        Raises:
            TransportError: The message was not sent
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Disconnect and release resources."""
        ...


class WhatsAppTransport(ABC):
    """Factory of session connections."""

    @abstractmethod
    async def connect(self, session_key: str, emit: Emit) -> TransportHandle:
        """
        Establish a connection for a session.

        Returns as soon as the connection exists; pairing progress (QR codes,
        status changes) and inbound messages are reported through ``emit``.

        Raises:
            TransportEstablishFailure: The connection could not be established
        """
        ...

    async def aclose(self) -> None:
        """Release transport-wide resources (HTTP clients, etc)."""
        return None


# Placeholder bodies for media messages, keyed by WhatsApp Web message type
MEDIA_PLACEHOLDERS = {
    "image": "[Imagem]",
    "audio": "[Áudio]",
    "ptt": "[Áudio]",
    "video": "[Vídeo]",
    "document": "[Documento]",
    "sticker": "[Figurinha]",
}
DEFAULT_MEDIA_PLACEHOLDER = "[Arquivo]"
TEXT_TYPES = {"chat", "text", ""}


@dataclass
class InboundMessage:
    """
    Parsed inbound message.

    Transport-agnostic representation of a message event.
    """

    message_id: str | None
    from_address: str
    body: str
    kind: MessageKind
    timestamp: datetime
    from_me: bool = False
    is_group: bool = False
    notify_name: str | None = None
    profile_pic_url: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


def _message_id(raw: dict[str, Any]) -> str | None:
    value = raw.get("id")
    if isinstance(value, dict):
        value = value.get("_serialized") or value.get("id")
    return str(value) if value else None


def _timestamp(raw: dict[str, Any]) -> datetime:
    value = raw.get("timestamp") or raw.get("t")
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


def parse_transport_message(raw: dict[str, Any]) -> InboundMessage:
    """
    Parse a WhatsApp Web message.

    Expected shape:
    {
        "id": "false_5511999990000@c.us_3EB0...",
        "from": "5511999990000@c.us",
        "fromMe": false,
        "isGroupMsg": false,
        "type": "chat",
        "body": "Olá",
        "notifyName": "Maria",
        "sender": {"name": "...", "profilePicThumbObj": {"eurl": "https://..."}},
        "timestamp": 1700000000
    }

    Media messages have their body replaced by a placeholder like "[Imagem]".
    """
    from_address = str(raw.get("from") or "")
    message_type = str(raw.get("type") or "")
    sender = raw.get("sender") or {}

    if message_type in TEXT_TYPES:
        body = str(raw.get("body") or "")
        kind = MessageKind.TEXT
    else:
        body = MEDIA_PLACEHOLDERS.get(message_type, DEFAULT_MEDIA_PLACEHOLDER)
        kind = MessageKind.MEDIA

    return InboundMessage(
        message_id=_message_id(raw),
        from_address=from_address,
        body=body,
        kind=kind,
        timestamp=_timestamp(raw),
        from_me=bool(raw.get("fromMe")),
        is_group=bool(raw.get("isGroupMsg")) or from_address.endswith(GROUP_SUFFIX),
        notify_name=raw.get("notifyName") or sender.get("pushname") or sender.get("name"),
        profile_pic_url=(sender.get("profilePicThumbObj") or {}).get("eurl"),
        raw_payload=raw,
    )
