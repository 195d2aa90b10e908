"""
WhatsApp Bridge Persistence

SQLAlchemy models, repository and message store for the bridge tables.
"""

from whatsapp_bridge.persistence.models import (
    WhatsAppBase,
    WhatsAppSession,
    WhatsAppContact,
    WhatsAppChat,
    WhatsAppMessage,
    Guest,
    SessionState,
    MessageDirection,
    MessageKind,
    MessageStatus,
)
from whatsapp_bridge.persistence.repo import WhatsAppRepository
from whatsapp_bridge.persistence.message_store import MessageStore, NewMessage

__all__ = [
    "WhatsAppBase",
    "WhatsAppSession",
    "WhatsAppContact",
    "WhatsAppChat",
    "WhatsAppMessage",
    "Guest",
    "WhatsAppRepository",
    "MessageStore",
    "NewMessage",
    "SessionState",
    "MessageDirection",
    "MessageKind",
    "MessageStatus",
]
