"""
WhatsApp Routing

Phone normalization, contact resolution and chat aggregation.
"""

from whatsapp_bridge.routing.phone import normalize_phone, to_transport_address, is_group_address
from whatsapp_bridge.routing.contact_resolver import ContactResolver
from whatsapp_bridge.routing.chat import ChatAggregator, ChatSummary

__all__ = [
    "normalize_phone",
    "to_transport_address",
    "is_group_address",
    "ContactResolver",
    "ChatAggregator",
    "ChatSummary",
]
