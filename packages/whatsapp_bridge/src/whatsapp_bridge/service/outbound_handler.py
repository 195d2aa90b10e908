"""
Outbound Message Handler

Records messages after the transport has sent them.

The transport send happens first; if recording fails afterwards the message has
been delivered but is missing from the inbox. Callers surface this as
``StoreWriteFailure``.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from whatsapp_bridge.errors import StoreWriteFailure
from whatsapp_bridge.persistence.message_store import MessageStore, NewMessage
from whatsapp_bridge.persistence.models import MessageDirection, MessageStatus, utcnow
from whatsapp_bridge.routing.chat import ChatAggregator
from whatsapp_bridge.routing.contact_resolver import ContactResolver
from whatsapp_bridge.routing.phone import normalize_phone
from whatsapp_bridge.transport.base import SendResult

logger = logging.getLogger(__name__)


class OutboundHandler:
    """Persists sent messages and keeps the chat preview current."""

    def __init__(self, db: Session, default_country_code: str = "55"):
        self.db = db
        self.default_country_code = default_country_code
        self.contacts = ContactResolver(db)
        self.chats = ChatAggregator(db)
        self.messages = MessageStore(db)

    def record_sent(
        self,
        tenant_id: str,
        destination: str,
        text: str,
        sent: SendResult,
        chat_id: UUID | None = None,
    ) -> dict[str, Any]:
        """
        Record a message the transport has accepted.

        Args:
            tenant_id: Sending tenant
            destination: Phone or transport address the message went to
            text: Message text
            sent: Transport send result
            chat_id: Chat the message belongs to, if known

        Returns:
            Serialized stored message

        Raises:
            StoreWriteFailure: The message could not be stored
        """
        now = utcnow()
        chat = None

        try:
            if chat_id:
                chat = self.chats.get_chat(tenant_id, chat_id)
            if chat is not None:
                resolved_chat_id, contact_id = chat.id, chat.contact_id
            else:
                if chat_id:
                    logger.warning(
                        "Unknown chat, resolving contact from destination",
                        extra={"tenant_id": tenant_id, "chat_id": str(chat_id)},
                    )
                phone = normalize_phone(destination, self.default_country_code)
                contact_id, _ = self.contacts.resolve(phone)
                # New chats get their preview right away
                resolved_chat_id = self.chats.touch(tenant_id, contact_id, text, is_inbound=False, at=now)

            stored, _ = self.messages.append(
                NewMessage(
                    tenant_id=tenant_id,
                    chat_id=resolved_chat_id,
                    contact_id=contact_id,
                    direction=MessageDirection.OUTBOUND,
                    body=text,
                    status=MessageStatus.SENT,
                    transport_message_id=sent.id,
                    timestamp=now,
                )
            )
            self.db.commit()
            payload = stored.to_dict()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Message sent but not stored: {e}",
                extra={"tenant_id": tenant_id, "transport_message_id": sent.id},
                exc_info=True,
            )
            raise StoreWriteFailure(
                f"Message sent but not stored: {e}",
                details={"transport_message_id": sent.id},
            ) from e

        if chat is not None:
            self._touch_preview(tenant_id, contact_id, text, now)

        logger.info(
            "Recorded outbound message",
            extra={"tenant_id": tenant_id, "chat_id": payload["chat_id"], "message_id": sent.id},
        )
        return payload

    def _touch_preview(self, tenant_id: str, contact_id: UUID, text: str, at) -> None:
        """Best-effort chat preview update."""
        try:
            self.chats.touch(tenant_id, contact_id, text, is_inbound=False, at=at)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to update chat preview: {e}", extra={"tenant_id": tenant_id})
