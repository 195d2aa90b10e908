"""
WhatsApp Repository

Repository pattern for WhatsApp bridge database operations.

Every write that can race with a concurrent inbound event (contacts, chats,
messages, sessions) is a single INSERT ... ON CONFLICT statement against a
declared unique constraint, never a select-then-insert.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from whatsapp_bridge.persistence.models import (
    Guest,
    SessionState,
    WhatsAppChat,
    WhatsAppContact,
    WhatsAppMessage,
    WhatsAppSession,
    utcnow,
)


def upsert_insert(db: Session, model):
    """Dialect-specific INSERT that supports ON CONFLICT clauses."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upserts are not supported on dialect '{dialect}'")


class WhatsAppRepository:
    """Repository for WhatsApp bridge database operations."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Sessions
    # =========================================================================

    def upsert_session(
        self,
        tenant_id: str,
        session_name: str,
        status: SessionState,
        qrcode: str | None = None,
        qr_attempts: int = 0,
        last_error: str | None = None,
    ) -> None:
        """
        Insert or overwrite the persisted state of a session.

        The QR payload is only stored while the state is QRCODE.
        """
        now = utcnow()
        values = {
            "status": status.value,
            "qrcode": qrcode if status == SessionState.QRCODE else None,
            "qr_attempts": qr_attempts,
            "last_error": last_error,
            "updated_at": now,
        }
        stmt = upsert_insert(self.db, WhatsAppSession).values(
            tenant_id=tenant_id,
            session_name=session_name,
            created_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "session_name"],
            set_=values,
        )
        self.db.execute(stmt)

    def get_session(self, tenant_id: str, session_name: str) -> WhatsAppSession | None:
        """Get the persisted session row."""
        return self.db.execute(
            select(WhatsAppSession)
            .where(
                WhatsAppSession.tenant_id == tenant_id,
                WhatsAppSession.session_name == session_name,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def list_sessions(self, tenant_id: str | None = None) -> list[WhatsAppSession]:
        """List persisted sessions, optionally for one tenant."""
        query = select(WhatsAppSession).order_by(
            WhatsAppSession.tenant_id, WhatsAppSession.session_name
        )
        if tenant_id:
            query = query.where(WhatsAppSession.tenant_id == tenant_id)
        return list(self.db.execute(query).scalars())

    # =========================================================================
    # Contacts
    # =========================================================================

    def get_contact_by_phone(self, phone: str) -> WhatsAppContact | None:
        """Get contact by normalized phone."""
        return self.db.execute(
            select(WhatsAppContact).where(WhatsAppContact.phone == phone)
        ).scalar_one_or_none()

    def insert_contact_if_absent(
        self,
        phone: str,
        name: str,
        profile_pic_url: str | None = None,
    ) -> UUID | None:
        """
        Insert a contact unless the phone is already known.

        Returns:
            New contact ID, or None if another row already owns the phone.
        """
        stmt = (
            upsert_insert(self.db, WhatsAppContact)
            .values(phone=phone, name=name, profile_pic_url=profile_pic_url)
            .on_conflict_do_nothing(index_elements=["phone"])
            .returning(WhatsAppContact.id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    # =========================================================================
    # Guests
    # =========================================================================

    def find_guest_by_phone_suffix(self, suffix: str) -> Guest | None:
        """
        Find the first guest whose phone ends with the given digits.

        First match wins, ordered by guest creation time.
        """
        return self.db.execute(
            select(Guest)
            .where(Guest.phone_suffix == suffix)
            .order_by(Guest.created_at, Guest.id)
            .limit(1)
        ).scalar_one_or_none()

    def link_guest_to_contact(self, guest_id: UUID, contact_id: UUID) -> bool:
        """
        Link a guest to a contact unless it is already linked.

        Returns:
            True if the link was written
        """
        result = self.db.execute(
            update(Guest)
            .where(Guest.id == guest_id, Guest.whatsapp_contact_id.is_(None))
            .values(whatsapp_contact_id=contact_id)
        )
        return result.rowcount == 1

    # =========================================================================
    # Chats
    # =========================================================================

    def upsert_chat(
        self,
        tenant_id: str,
        contact_id: UUID,
        preview: str,
        at: datetime,
        is_inbound: bool,
    ) -> UUID:
        """
        Create or update the chat for (tenant, contact) in one statement.

        Returns:
            Chat ID (new or existing)
        """
        set_: dict[str, Any] = {
            "last_message": preview,
            "last_message_at": at,
        }
        if is_inbound:
            set_["unread_count"] = WhatsAppChat.__table__.c.unread_count + 1

        stmt = (
            upsert_insert(self.db, WhatsAppChat)
            .values(
                tenant_id=tenant_id,
                contact_id=contact_id,
                last_message=preview,
                last_message_at=at,
                unread_count=1 if is_inbound else 0,
            )
            .on_conflict_do_update(index_elements=["tenant_id", "contact_id"], set_=set_)
            .returning(WhatsAppChat.id)
        )
        return self.db.execute(stmt).scalar_one()

    def get_chat(self, tenant_id: str, chat_id: UUID) -> WhatsAppChat | None:
        """Get a chat by ID, scoped to the tenant."""
        return self.db.execute(
            select(WhatsAppChat)
            .where(WhatsAppChat.id == chat_id, WhatsAppChat.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def list_chats(
        self,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[tuple[WhatsAppChat, WhatsAppContact]]:
        """List chats for a tenant with their contacts, most recent first."""
        rows = self.db.execute(
            select(WhatsAppChat, WhatsAppContact)
            .join(WhatsAppContact, WhatsAppContact.id == WhatsAppChat.contact_id)
            .where(WhatsAppChat.tenant_id == tenant_id)
            .order_by(WhatsAppChat.last_message_at.desc())
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [(chat, contact) for chat, contact in rows]

    def reset_unread(self, tenant_id: str, chat_id: UUID) -> bool:
        """Reset the unread counter. Returns False if the chat doesn't exist."""
        result = self.db.execute(
            update(WhatsAppChat)
            .where(WhatsAppChat.id == chat_id, WhatsAppChat.tenant_id == tenant_id)
            .values(unread_count=0)
        )
        return result.rowcount == 1

    # =========================================================================
    # Messages
    # =========================================================================

    def get_message(self, message_id: UUID) -> WhatsAppMessage | None:
        """Get message by ID."""
        return self.db.get(WhatsAppMessage, message_id)

    def get_message_by_transport_id(self, transport_message_id: str) -> WhatsAppMessage | None:
        """Get message by transport message ID (for idempotency)."""
        return self.db.execute(
            select(WhatsAppMessage).where(
                WhatsAppMessage.transport_message_id == transport_message_id
            )
        ).scalar_one_or_none()

    def is_message_processed(self, transport_message_id: str) -> bool:
        """Check if a message has already been stored (idempotency)."""
        row = self.db.execute(
            select(WhatsAppMessage.id)
            .where(WhatsAppMessage.transport_message_id == transport_message_id)
            .limit(1)
        ).first()
        return row is not None

    def insert_message_if_absent(self, **values: Any) -> UUID | None:
        """
        Insert a message unless its transport message ID is already stored.

        Returns:
            New message ID, or None on a duplicate transport message ID.
        """
        stmt = (
            upsert_insert(self.db, WhatsAppMessage)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["transport_message_id"])
            .returning(WhatsAppMessage.id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_messages(
        self,
        chat_id: UUID,
        limit: int = 50,
        before: datetime | None = None,
        before_id: UUID | None = None,
    ) -> list[WhatsAppMessage]:
        """
        Get messages of a chat, newest first.

        Order is (timestamp, created_at, id) descending. ``before_id`` continues
        after that message in this order; an unknown id yields no messages.
        """
        query = select(WhatsAppMessage).where(WhatsAppMessage.chat_id == chat_id)
        if before_id is not None:
            anchor = self.db.get(WhatsAppMessage, before_id)
            if anchor is None or anchor.chat_id != chat_id:
                return []
            query = query.where(
                or_(
                    WhatsAppMessage.timestamp < anchor.timestamp,
                    and_(
                        WhatsAppMessage.timestamp == anchor.timestamp,
                        or_(
                            WhatsAppMessage.created_at < anchor.created_at,
                            and_(
                                WhatsAppMessage.created_at == anchor.created_at,
                                WhatsAppMessage.id < anchor.id,
                            ),
                        ),
                    ),
                )
            )
        elif before is not None:
            query = query.where(WhatsAppMessage.timestamp < before)
        query = query.order_by(
            WhatsAppMessage.timestamp.desc(),
            WhatsAppMessage.created_at.desc(),
            WhatsAppMessage.id.desc(),
        )
        return list(self.db.execute(query.limit(limit)).scalars())
