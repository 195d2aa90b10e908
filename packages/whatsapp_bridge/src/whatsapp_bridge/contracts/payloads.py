"""
WhatsApp Bridge Payload Models

Pydantic models for the HTTP API requests and responses.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class StartSessionRequest(BaseModel):
    """Request to start (or restart) a tenant session."""

    tenant_id: str = Field(..., min_length=1, description="Hotel identifier")
    session_name: str | None = Field(None, description="Defaults to DEFAULT_SESSION_NAME")


class StopSessionRequest(StartSessionRequest):
    """Request to stop a tenant session."""


class SessionStatusResponse(BaseModel):
    """Outcome of a start/stop request."""

    status: str


class SessionStateResponse(BaseModel):
    """Persisted state of a session, polled by the inbox UI."""

    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    session_name: str
    status: str
    qrcode: str | None = None
    qr_attempts: int = 0
    last_error: str | None = None
    active: bool = False
    updated_at: datetime | None = None


class SendMessageRequest(BaseModel):
    """Request to send a text message from a tenant session."""

    tenant_id: str = Field(..., min_length=1)
    destination_address: str = Field(..., min_length=1, description="Phone or transport address")
    text: str = Field(..., min_length=1)
    chat_id: UUID | None = Field(None, description="Known chat, skips contact resolution")
    session_name: str | None = None


class SendMessageResponse(BaseModel):
    success: bool = True
    stored_message: dict[str, Any]


class ChatResponse(BaseModel):
    """Chat in the inbox list."""

    model_config = ConfigDict(from_attributes=True)

    chat_id: UUID
    tenant_id: str
    contact_id: UUID
    contact_name: str
    contact_phone: str
    profile_pic_url: str | None = None
    last_message: str | None = None
    last_message_at: datetime | None = None
    unread_count: int = 0


class MarkReadResponse(BaseModel):
    chat_id: UUID
    unread_count: int = 0
