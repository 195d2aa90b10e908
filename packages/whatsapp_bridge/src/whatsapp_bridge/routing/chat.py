"""
Chat Aggregation

Maintains one conversation thread per (tenant, contact) with the last-message
preview and unread counter used by the inbox.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from whatsapp_bridge.persistence.models import WhatsAppChat, WhatsAppContact, utcnow
from whatsapp_bridge.persistence.repo import WhatsAppRepository

logger = logging.getLogger(__name__)

PREVIEW_MAX_LENGTH = 255


@dataclass
class ChatSummary:
    """Chat row joined with its contact, as shown in the inbox."""

    chat_id: UUID
    tenant_id: str
    contact_id: UUID
    contact_name: str
    contact_phone: str
    profile_pic_url: str | None
    last_message: str | None
    last_message_at: datetime | None
    unread_count: int

    @classmethod
    def from_rows(cls, chat: WhatsAppChat, contact: WhatsAppContact) -> "ChatSummary":
        return cls(
            chat_id=chat.id,
            tenant_id=chat.tenant_id,
            contact_id=contact.id,
            contact_name=contact.name,
            contact_phone=contact.phone,
            profile_pic_url=contact.profile_pic_url,
            last_message=chat.last_message,
            last_message_at=chat.last_message_at,
            unread_count=chat.unread_count,
        )


class ChatAggregator:
    """
    Creates and updates chats.

    Every touch is a single atomic upsert on the (tenant_id, contact_id) unique
    constraint, so concurrent inbound messages for a new contact converge on one
    row and each of them increments the unread counter.
    """

    def __init__(self, db: Session):
        self.db = db
        self.repo = WhatsAppRepository(db)

    def touch(
        self,
        tenant_id: str,
        contact_id: UUID,
        preview_text: str,
        is_inbound: bool,
        at: datetime | None = None,
    ) -> UUID:
        """
        Record a message on the chat between tenant and contact.

        Args:
            tenant_id: Tenant owning the chat
            contact_id: Contact on the other side
            preview_text: Text shown in the chat list
            is_inbound: Inbound messages increment the unread counter
            at: Message time (defaults to now)

        Returns:
            Chat ID
        """
        return self.repo.upsert_chat(
            tenant_id=tenant_id,
            contact_id=contact_id,
            preview=(preview_text or "")[:PREVIEW_MAX_LENGTH],
            at=at or utcnow(),
            is_inbound=is_inbound,
        )

    def mark_read(self, tenant_id: str, chat_id: UUID) -> bool:
        """Reset the unread counter (read receipt from the inbox)."""
        return self.repo.reset_unread(tenant_id, chat_id)

    def get_chat(self, tenant_id: str, chat_id: UUID) -> WhatsAppChat | None:
        return self.repo.get_chat(tenant_id, chat_id)

    def list_chats(self, tenant_id: str, limit: int = 50, offset: int = 0) -> list[ChatSummary]:
        """Chats of a tenant, most recent message first."""
        return [
            ChatSummary.from_rows(chat, contact)
            for chat, contact in self.repo.list_chats(tenant_id, limit=limit, offset=offset)
        ]
