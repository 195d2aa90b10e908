"""
WhatsApp Bridge Contracts

Event types, envelope and API payload definitions.
"""

from whatsapp_bridge.contracts.event_types import BridgeEventType
from whatsapp_bridge.contracts.envelope import BridgeEnvelope
from whatsapp_bridge.contracts.payloads import (
    ChatResponse,
    MarkReadResponse,
    SendMessageRequest,
    SendMessageResponse,
    SessionStateResponse,
    SessionStatusResponse,
    StartSessionRequest,
    StopSessionRequest,
)

__all__ = [
    "BridgeEventType",
    "BridgeEnvelope",
    "ChatResponse",
    "MarkReadResponse",
    "SendMessageRequest",
    "SendMessageResponse",
    "SessionStateResponse",
    "SessionStatusResponse",
    "StartSessionRequest",
    "StopSessionRequest",
]
