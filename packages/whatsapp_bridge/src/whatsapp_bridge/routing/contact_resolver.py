"""
Contact Resolver

Finds or creates the contact for a phone number and, for new contacts,
links a matching reservation guest.
"""

import logging
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from whatsapp_bridge.persistence.models import GUEST_PHONE_SUFFIX_DIGITS
from whatsapp_bridge.persistence.repo import WhatsAppRepository
from whatsapp_bridge.routing.phone import phone_suffix

logger = logging.getLogger(__name__)


class ContactResolver:
    """
    Resolves contacts by normalized phone.

    Guest linking policy: after a contact is created (never on lookup), the
    first guest by creation time whose phone contains the last 8 digits is
    linked, provided that guest is not linked yet. Links are never overwritten.
    """

    def __init__(self, db: Session):
        self.db = db
        self.repo = WhatsAppRepository(db)

    def resolve(
        self,
        phone: str,
        display_name: str | None = None,
        profile_pic_url: str | None = None,
    ) -> tuple[UUID, bool]:
        """
        Get or create the contact for a normalized phone.

        Args:
            phone: Normalized phone (digits only)
            display_name: Name hint from the transport (falls back to the phone)
            profile_pic_url: Avatar hint from the transport

        Returns:
            Tuple of (contact_id, created)
        """
        contact = self.repo.get_contact_by_phone(phone)
        if contact:
            return contact.id, False

        contact_id = self.repo.insert_contact_if_absent(
            phone=phone,
            name=(display_name or "").strip() or phone,
            profile_pic_url=profile_pic_url,
        )
        if contact_id is None:
            # Created concurrently by another event
            return self.repo.get_contact_by_phone(phone).id, False

        logger.info("Created contact", extra={"phone": phone, "contact_id": str(contact_id)})
        self._link_guest(contact_id, phone)
        return contact_id, True

    def _link_guest(self, contact_id: UUID, phone: str) -> None:
        """Best-effort guest link. Failures are logged and never propagate."""
        suffix = phone_suffix(phone, GUEST_PHONE_SUFFIX_DIGITS)
        if len(suffix) < GUEST_PHONE_SUFFIX_DIGITS:
            return

        try:
            with self.db.begin_nested():
                guest = self.repo.find_guest_by_phone_suffix(suffix)
                if guest is None:
                    return
                if self.repo.link_guest_to_contact(guest.id, contact_id):
                    logger.info(
                        "Linked guest to contact",
                        extra={"guest_id": str(guest.id), "contact_id": str(contact_id)},
                    )
                else:
                    logger.debug(
                        "Guest already linked, keeping existing link",
                        extra={"guest_id": str(guest.id)},
                    )
        except SQLAlchemyError as e:
            logger.warning(
                f"Guest link failed: {e}",
                extra={"contact_id": str(contact_id)},
            )
