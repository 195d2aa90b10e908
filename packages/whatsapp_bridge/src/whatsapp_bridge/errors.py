"""
WhatsApp Bridge Errors

Exception taxonomy shared by the session manager, pipelines and API.
"""

from typing import Any


class WhatsAppBridgeError(Exception):
    """Base class for bridge errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = details or {}


class TransportEstablishFailure(WhatsAppBridgeError):
    """The transport connection could not be established. Fatal to the session."""


class TransportError(WhatsAppBridgeError):
    """A transport operation (e.g. sending a message) failed."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message, details)
        self.code = code
        self.retryable = retryable


class SessionNotActiveError(WhatsAppBridgeError):
    """No live transport handle exists for the tenant session."""

    def __init__(self, tenant_id: str, session_name: str | None = None):
        super().__init__(f"Session not active for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.session_name = session_name


class StoreWriteFailure(WhatsAppBridgeError):
    """A store write failed. Transport actions already taken are not rolled back."""


class DuplicateDeliveryError(WhatsAppBridgeError):
    """
    A transport message was delivered more than once.

    Never raised to callers: the message store resolves redeliveries by
    returning the stored record.
    """
