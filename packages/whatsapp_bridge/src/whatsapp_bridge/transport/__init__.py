"""
WhatsApp Transports

Transport implementations for WhatsApp Web.
Supports Evolution API (production) and Stub (development).
"""

from hotelcore.settings import Settings
from whatsapp_bridge.transport.base import (
    Emit,
    InboundMessage,
    MessageEvent,
    QrCodeEvent,
    SendResult,
    StatusEvent,
    TerminatedEvent,
    TransportEvent,
    TransportHandle,
    WhatsAppTransport,
    parse_transport_message,
)


def create_transport(settings: Settings) -> WhatsAppTransport:
    """Build the transport selected by WHATSAPP_TRANSPORT."""
    name = settings.WHATSAPP_TRANSPORT.lower()
    if name == "evolution":
        from whatsapp_bridge.transport.evolution import EvolutionTransport

        return EvolutionTransport(
            api_url=settings.EVOLUTION_API_URL,
            api_key=settings.EVOLUTION_API_KEY,
            poll_interval=settings.EVOLUTION_POLL_INTERVAL_SECONDS,
        )
    if name == "stub":
        from whatsapp_bridge.transport.stub import StubTransport

        return StubTransport()
    raise ValueError(f"Unknown WhatsApp transport: {settings.WHATSAPP_TRANSPORT}")


__all__ = [
    "Emit",
    "InboundMessage",
    "MessageEvent",
    "QrCodeEvent",
    "SendResult",
    "StatusEvent",
    "TerminatedEvent",
    "TransportEvent",
    "TransportHandle",
    "WhatsAppTransport",
    "create_transport",
    "parse_transport_message",
]
