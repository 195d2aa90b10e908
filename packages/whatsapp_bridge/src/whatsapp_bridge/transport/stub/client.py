"""
Stub WhatsApp Transport

Development transport that logs all operations without a real WhatsApp Web
connection. Useful for local development and testing: every handle can be
driven by hand to simulate QR codes, status changes and inbound messages.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from whatsapp_bridge.errors import TransportError, TransportEstablishFailure
from whatsapp_bridge.transport.base import (
    Emit,
    MessageEvent,
    QrCodeEvent,
    SendResult,
    StatusEvent,
    TerminatedEvent,
    TransportHandle,
    WhatsAppTransport,
)

logger = logging.getLogger(__name__)

STUB_QR_IMAGE = "data:image/png;base64,c3R1Yi1xcg=="


class StubTransportHandle(TransportHandle):
    """Connection to nowhere. Records sends and lets tests emit events."""

    def __init__(self, transport: "StubTransport", session_key: str, emit: Emit):
        self.transport = transport
        self.session_key = session_key
        self.emit = emit
        self.closed = False

    async def send_text(self, address: str, text: str) -> SendResult:
        """Log and return success for text message."""
        if self.closed:
            raise TransportError("Stub handle is closed", code="STUB_CLOSED")
        if self.transport.fail_sends:
            raise TransportError(
                "Simulated send failure for testing",
                code="STUB_SIMULATED_FAILURE",
            )

        message_id = f"stub_msg_{uuid4().hex[:16]}"
        self.transport.sent_messages.append(
            {
                "session_key": self.session_key,
                "to": address,
                "text": text,
                "message_id": message_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

        logger.info(
            "[STUB] Sending text message",
            extra={
                "to": address,
                "text": text[:100] + "..." if len(text) > 100 else text,
                "message_id": message_id,
            },
        )
        return SendResult(id=message_id, to=address, raw_response={"stub": True})

    async def close(self) -> None:
        self.closed = True
        logger.info("[STUB] Closed session", extra={"session_key": self.session_key})

    # Simulation helpers

    def show_qr(self, image: str = STUB_QR_IMAGE, attempt: int = 1) -> None:
        self.emit(QrCodeEvent(image=image, attempt=attempt))

    def set_status(self, status: str) -> None:
        self.emit(StatusEvent(status=status))

    def receive(self, message: dict[str, Any]) -> None:
        self.emit(MessageEvent(message=message))

    def receive_text(
        self,
        from_phone: str,
        body: str,
        message_id: str | None = None,
        notify_name: str | None = None,
    ) -> dict[str, Any]:
        """Emit an inbound text message from a phone and return its payload."""
        message = {
            "id": message_id or f"false_{from_phone}@c.us_{uuid4().hex[:20].upper()}",
            "from": f"{from_phone}@c.us",
            "fromMe": False,
            "isGroupMsg": False,
            "type": "chat",
            "body": body,
            "notifyName": notify_name,
            "timestamp": int(datetime.now(timezone.utc).timestamp()),
        }
        self.receive(message)
        return message

    def terminate(self, error: str | None = None) -> None:
        self.emit(TerminatedEvent(error=error))


class StubTransport(WhatsAppTransport):
    """
    Stub transport for development and testing.

    - Optionally shows a QR code and logs in right away on connect
    - Records every sent message in ``sent_messages``
    - Can be configured to fail establishment or sends
    """

    def __init__(
        self,
        auto_login: bool = True,
        show_qr: bool = False,
        fail_connect: bool = False,
        fail_sends: bool = False,
    ):
        self.auto_login = auto_login
        self.show_qr = show_qr
        self.fail_connect = fail_connect
        self.fail_sends = fail_sends
        self.handles: dict[str, StubTransportHandle] = {}
        self.sent_messages: list[dict[str, Any]] = []

    async def connect(self, session_key: str, emit: Emit) -> StubTransportHandle:
        logger.info("[STUB] Connecting session", extra={"session_key": session_key})
        if self.fail_connect:
            raise TransportEstablishFailure(
                "Simulated establishment failure",
                details={"session_key": session_key},
            )

        handle = StubTransportHandle(self, session_key, emit)
        self.handles[session_key] = handle

        if self.show_qr:
            handle.show_qr()
        if self.auto_login:
            handle.set_status("isLogged")
        return handle
