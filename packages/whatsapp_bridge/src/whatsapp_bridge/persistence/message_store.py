"""
Message Store

Idempotent persistence and ordered retrieval of WhatsApp messages.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from whatsapp_bridge.errors import DuplicateDeliveryError
from whatsapp_bridge.persistence.models import (
    MessageDirection,
    MessageKind,
    MessageStatus,
    WhatsAppMessage,
    utcnow,
)
from whatsapp_bridge.persistence.repo import WhatsAppRepository

logger = logging.getLogger(__name__)


@dataclass
class NewMessage:
    """A message about to be persisted."""

    tenant_id: str
    chat_id: UUID
    contact_id: UUID
    direction: MessageDirection
    body: str
    status: MessageStatus
    kind: MessageKind = MessageKind.TEXT
    transport_message_id: str | None = None
    timestamp: datetime | None = None
    raw_payload: dict[str, Any] | None = field(default=None, repr=False)


class MessageStore:
    """
    Persists messages and exposes newest-first retrieval per chat.

    A redelivered transport message (same transport message ID) never creates a
    second row.
    """

    def __init__(self, db: Session):
        self.db = db
        self.repo = WhatsAppRepository(db)

    def insert(self, message: NewMessage) -> WhatsAppMessage:
        """
        Insert a message.

        Raises:
            DuplicateDeliveryError: The transport message ID is already stored.
        """
        message_id = self.repo.insert_message_if_absent(
            tenant_id=message.tenant_id,
            chat_id=message.chat_id,
            contact_id=message.contact_id,
            direction=message.direction.value,
            body=message.body,
            kind=message.kind.value,
            status=message.status.value,
            transport_message_id=message.transport_message_id,
            timestamp=message.timestamp or utcnow(),
            raw_payload=message.raw_payload,
        )
        if message_id is None:
            raise DuplicateDeliveryError(
                f"Transport message {message.transport_message_id} already stored",
                details={"transport_message_id": message.transport_message_id},
            )
        return self.repo.get_message(message_id)

    def append(self, message: NewMessage) -> tuple[WhatsAppMessage, bool]:
        """
        Persist a message idempotently.

        Returns:
            Tuple of (stored message, created). On redelivery the existing
            record is returned unchanged with created=False.
        """
        if message.transport_message_id:
            existing = self.repo.get_message_by_transport_id(message.transport_message_id)
            if existing:
                logger.debug(
                    "Message already stored, returning existing record",
                    extra={"transport_message_id": message.transport_message_id},
                )
                return existing, False

        try:
            return self.insert(message), True
        except DuplicateDeliveryError:
            # Lost a race with a concurrent delivery of the same message
            return self.repo.get_message_by_transport_id(message.transport_message_id), False

    def list_by_chat(
        self,
        chat_id: UUID,
        limit: int = 50,
        before: datetime | None = None,
        before_id: UUID | None = None,
    ) -> list[WhatsAppMessage]:
        """
        Get a page of messages, newest first.

        Args:
            chat_id: Chat to read
            limit: Maximum number of messages
            before: Only messages strictly older than this timestamp
            before_id: Only messages after this one in page order (cursor,
                takes precedence over ``before``)
        """
        return self.repo.list_messages(
            chat_id, limit=max(1, limit), before=before, before_id=before_id
        )
