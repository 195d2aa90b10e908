"""
WhatsApp Bridge Database Models

Tables owned by the WhatsApp bridge, plus the guests table it links to.

Tables:
- whatsapp_sessions: Persisted lifecycle state of each tenant session (UI polls this)
- whatsapp_contacts: One row per normalized phone number (tenant-independent)
- whatsapp_chats: One conversation per (tenant, contact)
- whatsapp_messages: All inbound/outbound messages
- guests: Reservation guests (owned by the hotel PMS, linked once to a contact)
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, validates

WhatsAppBase = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Trailing phone digits used to match guests to contacts
GUEST_PHONE_SUFFIX_DIGITS = 8


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    """Lifecycle state of a tenant's WhatsApp session."""

    UNINITIALIZED = "UNINITIALIZED"
    STARTING = "STARTING"
    QRCODE = "QRCODE"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.ERROR, SessionState.DISCONNECTED)


class MessageDirection(str, Enum):
    """Direction of a WhatsApp message."""

    INBOUND = "in"
    OUTBOUND = "out"


class MessageStatus(str, Enum):
    """Status of a WhatsApp message."""

    RECEIVED = "received"
    SENT = "sent"
    READ = "read"


class MessageKind(str, Enum):
    """Kind of message body."""

    TEXT = "text"
    MEDIA = "media"  # Body holds a placeholder like "[Imagem]"


class WhatsAppSession(WhatsAppBase):
    """
    Persisted state of a tenant session.

    The in-memory transport handle lives in the session manager; this row is the
    source of truth for UI polling and mirrors every state transition.
    """

    __tablename__ = "whatsapp_sessions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(String(64), nullable=False)
    session_name = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=SessionState.UNINITIALIZED.value)
    qrcode = Column(Text, nullable=True)  # base64 image, only while status == QRCODE
    qr_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "session_name", name="uq_whatsapp_sessions_tenant_name"),
    )


class WhatsAppContact(WhatsAppBase):
    """
    A phone-number identity.

    Contacts are shared by all tenants; tenant-scoped usage goes through chats.
    """

    __tablename__ = "whatsapp_contacts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    phone = Column(String(32), nullable=False)  # Digits only, with country code
    name = Column(String(255), nullable=False)
    profile_pic_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("phone", name="uq_whatsapp_contacts_phone"),)


class WhatsAppChat(WhatsAppBase):
    """
    Conversation thread between a tenant and a contact.

    Identified by tenant_id + contact_id and only ever written by upsert.
    """

    __tablename__ = "whatsapp_chats"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(String(64), nullable=False)
    contact_id = Column(Uuid, nullable=False)
    last_message = Column(Text, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "contact_id", name="uq_whatsapp_chats_tenant_contact"),
        Index("idx_whatsapp_chats_tenant_last_message", "tenant_id", "last_message_at"),
    )


class WhatsAppMessage(WhatsAppBase):
    """
    Stores all WhatsApp messages (inbound and outbound).

    Transport message IDs are used for idempotency.
    """

    __tablename__ = "whatsapp_messages"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(String(64), nullable=False)
    chat_id = Column(Uuid, nullable=False)
    contact_id = Column(Uuid, nullable=False)
    direction = Column(String(3), nullable=False)  # 'in' or 'out'
    body = Column(Text, nullable=False, default="")
    kind = Column(String(10), nullable=False, default=MessageKind.TEXT.value)
    status = Column(String(20), nullable=False)
    transport_message_id = Column(String(255), nullable=True)  # From transport (for dedup)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)  # Insert time, orders same-second messages
    raw_payload = Column(JSONType, nullable=True)

    __table_args__ = (
        UniqueConstraint("transport_message_id", name="uq_whatsapp_messages_transport_id"),
        Index("idx_whatsapp_messages_chat_timestamp", "chat_id", "timestamp"),
        Index("idx_whatsapp_messages_tenant_direction", "tenant_id", "direction"),
    )

    def to_dict(self) -> dict:
        """Serialize for API responses and real-time events."""
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "chat_id": str(self.chat_id),
            "contact_id": str(self.contact_id),
            "direction": self.direction,
            "body": self.body,
            "kind": self.kind,
            "status": self.status,
            "transport_message_id": self.transport_message_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class Guest(WhatsAppBase):
    """
    Reservation guest, owned by the hotel PMS.

    The bridge only reads guests and sets ``whatsapp_contact_id`` once.
    ``phone_suffix`` (last 8 digits of the phone) is derived whenever ``phone``
    is set through the ORM; other writers of the table must keep it filled.
    """

    __tablename__ = "guests"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(64), nullable=True)  # Free text, as typed at check-in
    phone_suffix = Column(String(GUEST_PHONE_SUFFIX_DIGITS), nullable=True, index=True)
    whatsapp_contact_id = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @validates("phone")
    def _derive_phone_suffix(self, key, value):
        from whatsapp_bridge.routing.phone import phone_suffix

        suffix = phone_suffix(value or "", GUEST_PHONE_SUFFIX_DIGITS)
        self.phone_suffix = suffix if len(suffix) == GUEST_PHONE_SUFFIX_DIGITS else None
        return value
