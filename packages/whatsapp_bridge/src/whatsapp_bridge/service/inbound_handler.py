"""
Inbound Message Handler

Processes incoming WhatsApp messages:
1. Drops group messages and the tenant's own messages
2. Normalizes the sender phone
3. Resolves (or creates) the contact, linking a matching guest
4. Touches the chat (preview, unread counter)
5. Persists the message
"""

import logging
from typing import Any

from sqlalchemy.orm import Session

from whatsapp_bridge.errors import DuplicateDeliveryError
from whatsapp_bridge.persistence.message_store import MessageStore, NewMessage
from whatsapp_bridge.persistence.models import MessageDirection, MessageStatus
from whatsapp_bridge.persistence.repo import WhatsAppRepository
from whatsapp_bridge.routing.chat import ChatAggregator
from whatsapp_bridge.routing.contact_resolver import ContactResolver
from whatsapp_bridge.routing.phone import normalize_phone
from whatsapp_bridge.transport.base import InboundMessage

logger = logging.getLogger(__name__)


class InboundHandler:
    """
    Handles incoming WhatsApp messages for one unit of work.

    Contact, chat and message writes are committed together; a message already
    stored (redelivery) leaves no trace, in particular the unread counter is
    not incremented twice.
    """

    def __init__(self, db: Session, default_country_code: str = "55"):
        self.db = db
        self.default_country_code = default_country_code
        self.repo = WhatsAppRepository(db)
        self.contacts = ContactResolver(db)
        self.chats = ChatAggregator(db)
        self.messages = MessageStore(db)

    def process_message(self, tenant_id: str, message: InboundMessage) -> dict[str, Any]:
        """
        Process a single inbound message.

        Args:
            tenant_id: Tenant whose session received the message
            message: Parsed inbound message

        Returns:
            Processing result dict. On success it carries ``chat_id`` and the
            serialized ``message``.
        """
        result: dict[str, Any] = {
            "message_id": message.message_id,
            "from": message.from_address,
            "status": "processed",
        }

        if message.is_group:
            return {**result, "status": "skipped", "reason": "group_message"}
        if message.from_me:
            return {**result, "status": "skipped", "reason": "from_me"}

        phone = normalize_phone(message.from_address, self.default_country_code)
        if not phone:
            logger.warning("Inbound message without sender phone", extra={"from": message.from_address})
            return {**result, "status": "skipped", "reason": "no_sender"}

        try:
            if message.message_id and self.repo.is_message_processed(message.message_id):
                logger.debug(f"Message {message.message_id} already processed, skipping")
                return {**result, "status": "skipped", "reason": "already_processed"}

            contact_id, contact_created = self.contacts.resolve(
                phone,
                display_name=message.notify_name,
                profile_pic_url=message.profile_pic_url,
            )
            chat_id = self.chats.touch(
                tenant_id=tenant_id,
                contact_id=contact_id,
                preview_text=message.body,
                is_inbound=True,
                at=message.timestamp,
            )
            stored = self.messages.insert(
                NewMessage(
                    tenant_id=tenant_id,
                    chat_id=chat_id,
                    contact_id=contact_id,
                    direction=MessageDirection.INBOUND,
                    body=message.body,
                    kind=message.kind,
                    status=MessageStatus.RECEIVED,
                    transport_message_id=message.message_id,
                    timestamp=message.timestamp,
                    raw_payload=message.raw_payload,
                )
            )
            self.db.commit()

        except DuplicateDeliveryError:
            # Concurrent redelivery won the insert
            self.db.rollback()
            return {**result, "status": "skipped", "reason": "already_processed"}

        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to process inbound message: {e}", exc_info=True)
            return {**result, "status": "failed", "error": str(e)}

        logger.info(
            "Stored inbound message",
            extra={
                "tenant_id": tenant_id,
                "chat_id": str(chat_id),
                "message_id": message.message_id,
                "new_contact": contact_created,
            },
        )
        result["chat_id"] = str(chat_id)
        result["contact_id"] = str(contact_id)
        result["message"] = stored.to_dict()
        return result
