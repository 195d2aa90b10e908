"""
WhatsApp Bridge Services

Inbound/outbound handlers and the async pipeline around them.
"""

from whatsapp_bridge.service.inbound_handler import InboundHandler
from whatsapp_bridge.service.outbound_handler import OutboundHandler
from whatsapp_bridge.service.pipeline import Bridge, MessagePipeline, create_bridge

__all__ = [
    "InboundHandler",
    "OutboundHandler",
    "Bridge",
    "MessagePipeline",
    "create_bridge",
]
