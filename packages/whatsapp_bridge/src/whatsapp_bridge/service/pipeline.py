"""
Message Pipeline

Async orchestration of the inbound and outbound paths. Store work runs in a
worker thread with its own database session per unit of work, so a slow write
for one tenant never blocks the event loop.

Inbound:  transport message -> InboundHandler -> publish "message"
Outbound: send request -> session check -> transport send -> OutboundHandler -> publish "message"
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from hotelcore.settings import Settings
from whatsapp_bridge.contracts.event_types import BridgeEventType
from whatsapp_bridge.errors import SessionNotActiveError
from whatsapp_bridge.realtime.hub import RealtimeHub
from whatsapp_bridge.routing.phone import to_transport_address
from whatsapp_bridge.service.inbound_handler import InboundHandler
from whatsapp_bridge.service.outbound_handler import OutboundHandler
from whatsapp_bridge.sessions.manager import SessionManager
from whatsapp_bridge.streams.producer import BridgeStreamProducer
from whatsapp_bridge.transport.base import WhatsAppTransport, parse_transport_message

logger = logging.getLogger(__name__)


class MessagePipeline:
    """Runs inbound events and send requests through the store and fan-out."""

    def __init__(
        self,
        sessions: SessionManager,
        session_factory: Callable[[], Session],
        hub: RealtimeHub,
        default_country_code: str = "55",
    ):
        self.sessions = sessions
        self.session_factory = session_factory
        self.hub = hub
        self.default_country_code = default_country_code

    async def handle_inbound(self, tenant_id: str, raw: dict[str, Any]) -> dict[str, Any]:
        """
        Ingest one transport message for a tenant.

        Never raises: failures are logged and reported in the result so the
        session keeps consuming events.
        """
        message = parse_transport_message(raw)
        result = await asyncio.to_thread(self._process_inbound, tenant_id, message)

        if result["status"] == "processed":
            await self.hub.publish(
                tenant_id,
                BridgeEventType.MESSAGE,
                {
                    "tenant_id": tenant_id,
                    "chat_id": result["chat_id"],
                    "message": result["message"],
                },
            )
        elif result["status"] == "skipped":
            logger.debug(
                f"Skipped inbound message: {result.get('reason')}",
                extra={"tenant_id": tenant_id, "message_id": message.message_id},
            )
        return result

    def _process_inbound(self, tenant_id: str, message) -> dict[str, Any]:
        with self.session_factory() as db:
            return InboundHandler(db, self.default_country_code).process_message(tenant_id, message)

    async def send(
        self,
        tenant_id: str,
        destination: str,
        text: str,
        chat_id: UUID | None = None,
        session_name: str | None = None,
    ) -> dict[str, Any]:
        """
        Send a text message and record it.

        Returns:
            Serialized stored message

        Raises:
            SessionNotActiveError: The tenant has no live session
            ValueError: The destination has no digits
            TransportError: The transport failed to send (nothing is stored)
            StoreWriteFailure: Sent, but could not be stored
        """
        if not self.sessions.is_active(tenant_id, session_name):
            raise SessionNotActiveError(tenant_id, session_name)

        address = to_transport_address(destination, self.default_country_code)
        if not address:
            raise ValueError(f"Invalid destination address: {destination!r}")

        sent = await self.sessions.send(tenant_id, address, text, session_name=session_name)
        stored = await asyncio.to_thread(
            self._record_outbound, tenant_id, address, text, sent, chat_id
        )

        await self.hub.publish(
            tenant_id,
            BridgeEventType.MESSAGE,
            {"tenant_id": tenant_id, "chat_id": stored["chat_id"], "message": stored},
        )
        return stored

    def _record_outbound(self, tenant_id, address, text, sent, chat_id) -> dict[str, Any]:
        with self.session_factory() as db:
            return OutboundHandler(db, self.default_country_code).record_sent(
                tenant_id, address, text, sent, chat_id=chat_id
            )


@dataclass
class Bridge:
    """Process-wide components, wired together."""

    transport: WhatsAppTransport
    hub: RealtimeHub
    sessions: SessionManager
    pipeline: MessagePipeline


def create_bridge(
    settings: Settings,
    transport: WhatsAppTransport,
    session_factory: Callable[[], Session],
    producer: BridgeStreamProducer | None = None,
) -> Bridge:
    """Build the hub, session manager and pipeline for a transport."""
    hub = RealtimeHub(producer=producer)
    sessions = SessionManager(
        transport=transport,
        session_factory=session_factory,
        hub=hub,
        qr_max_attempts=settings.SESSION_QR_MAX_ATTEMPTS,
        connect_timeout=settings.SESSION_CONNECT_TIMEOUT_SECONDS,
        default_session_name=settings.DEFAULT_SESSION_NAME,
    )
    pipeline = MessagePipeline(
        sessions=sessions,
        session_factory=session_factory,
        hub=hub,
        default_country_code=settings.DEFAULT_COUNTRY_CODE,
    )
    sessions.on_message = pipeline.handle_inbound
    return Bridge(transport=transport, hub=hub, sessions=sessions, pipeline=pipeline)
