"""
WhatsApp Bridge Service

FastAPI app that runs the hotels' WhatsApp Web sessions.

Responsibilities:
- Start/stop tenant sessions and expose their persisted state (QR code polling)
- Send messages from a tenant session
- Serve the inbox (chats, messages, read receipts)
- Receive Evolution API webhooks and route them to the owning session
- Push qr/status/message events to tenant rooms over WebSocket
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from hotelcore.db import get_db, get_sessionmaker
from hotelcore.logging import setup_logging
from hotelcore.redis import get_redis_client
from hotelcore.settings import get_settings

from whatsapp_bridge.contracts import (
    ChatResponse,
    MarkReadResponse,
    SendMessageRequest,
    SendMessageResponse,
    SessionStateResponse,
    SessionStatusResponse,
    StartSessionRequest,
    StopSessionRequest,
)
from whatsapp_bridge.errors import (
    SessionNotActiveError,
    StoreWriteFailure,
    TransportError,
)
from whatsapp_bridge.persistence.message_store import MessageStore
from whatsapp_bridge.routing.chat import ChatAggregator
from whatsapp_bridge.service.pipeline import Bridge, create_bridge
from whatsapp_bridge.streams.producer import BridgeStreamProducer
from whatsapp_bridge.transport import create_transport
from whatsapp_bridge.transport.evolution.webhook import (
    extract_instance_name,
    parse_evolution_webhook,
    validate_api_key,
)

setup_logging()
logger = logging.getLogger(__name__)


def build_default_bridge() -> Bridge:
    """Wire the bridge from settings."""
    settings = get_settings()
    producer = None
    if settings.EVENTS_STREAM_ENABLED:
        producer = BridgeStreamProducer(get_redis_client(), max_len=settings.EVENTS_STREAM_MAXLEN)
    return create_bridge(
        settings,
        transport=create_transport(settings),
        session_factory=get_sessionmaker(),
        producer=producer,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the bridge and autostart sessions on startup, close sessions on shutdown."""
    settings = get_settings()
    if getattr(app.state, "bridge", None) is None:
        app.state.bridge = build_default_bridge()
    bridge: Bridge = app.state.bridge

    logger.info(
        "WhatsApp bridge service started",
        extra={"transport": type(bridge.transport).__name__},
    )
    await bridge.sessions.autostart(settings.AUTOSTART_TENANTS)
    try:
        yield
    finally:
        await bridge.sessions.shutdown()


def get_bridge(request: Request) -> Bridge:
    return request.app.state.bridge


def create_app(bridge: Bridge | None = None) -> FastAPI:
    """
    Create the FastAPI app.

    Args:
        bridge: Prebuilt components (tests); built from settings on startup otherwise
    """
    app = FastAPI(
        title="WhatsApp Bridge",
        description="Multi-tenant WhatsApp Web bridge for hotels",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.bridge = bridge
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().CORS_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok"}

    # =========================================================================
    # Sessions
    # =========================================================================

    @app.post("/session/start", response_model=SessionStatusResponse)
    async def start_session(body: StartSessionRequest, bridge: Bridge = Depends(get_bridge)):
        """
        Start a tenant session.

        Returns STARTING right away; establishment failures are only visible
        through the session state (GET /session/{tenant_id}) and status events.
        """
        try:
            result = await bridge.sessions.start(body.tenant_id, body.session_name)
        except StoreWriteFailure as e:
            logger.error(f"Failed to start session: {e}", extra={"tenant_id": body.tenant_id})
            raise HTTPException(status_code=500, detail=str(e))
        return SessionStatusResponse(status=result.value)

    @app.post("/session/stop", response_model=SessionStatusResponse)
    async def stop_session(body: StopSessionRequest, bridge: Bridge = Depends(get_bridge)):
        """Stop a tenant session."""
        state = await bridge.sessions.stop(body.tenant_id, body.session_name)
        return SessionStatusResponse(status=state.value)

    @app.get("/session/{tenant_id}", response_model=SessionStateResponse)
    async def get_session(
        tenant_id: str,
        session_name: str | None = Query(None),
        bridge: Bridge = Depends(get_bridge),
    ):
        """Persisted session state, including the QR code while pairing."""
        status = await bridge.sessions.get_status(tenant_id, session_name)
        return SessionStateResponse.model_validate(status)

    # =========================================================================
    # Messages
    # =========================================================================

    @app.post("/message/send", response_model=SendMessageResponse)
    async def send_message(body: SendMessageRequest, bridge: Bridge = Depends(get_bridge)):
        """
        Send a text message from the tenant's session.

        Errors:
        - 404: the tenant has no active session
        - 500: the transport failed, or the message was sent but not stored
        """
        try:
            stored = await bridge.pipeline.send(
                tenant_id=body.tenant_id,
                destination=body.destination_address,
                text=body.text,
                chat_id=body.chat_id,
                session_name=body.session_name,
            )
        except SessionNotActiveError:
            raise HTTPException(status_code=404, detail="Session not active")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except (TransportError, StoreWriteFailure) as e:
            logger.error(f"Send failed: {e}", extra={"tenant_id": body.tenant_id})
            raise HTTPException(status_code=500, detail=str(e))

        return SendMessageResponse(success=True, stored_message=stored)

    # =========================================================================
    # Inbox
    # =========================================================================

    @app.get("/chats", response_model=list[ChatResponse])
    def list_chats(
        tenant_id: str = Query(..., min_length=1),
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        db: Session = Depends(get_db),
    ):
        """Chats of a tenant, most recent message first."""
        chats = ChatAggregator(db).list_chats(tenant_id, limit=limit, offset=offset)
        return [ChatResponse.model_validate(chat) for chat in chats]

    @app.get("/chats/{chat_id}/messages")
    def list_messages(
        chat_id: UUID,
        tenant_id: str = Query(..., min_length=1),
        limit: int = Query(50, ge=1, le=200),
        before: datetime | None = Query(None, description="Only messages older than this"),
        before_id: UUID | None = Query(None, description="Continue after this message"),
        db: Session = Depends(get_db),
    ):
        """Messages of a chat, newest first. Pass the last message id as ``before_id`` for the next page."""
        if ChatAggregator(db).get_chat(tenant_id, chat_id) is None:
            raise HTTPException(status_code=404, detail="Chat not found")
        messages = MessageStore(db).list_by_chat(
            chat_id, limit=limit, before=before, before_id=before_id
        )
        return {"messages": [message.to_dict() for message in messages]}

    @app.post("/chats/{chat_id}/read", response_model=MarkReadResponse)
    def mark_read(
        chat_id: UUID,
        tenant_id: str = Query(..., min_length=1),
        db: Session = Depends(get_db),
    ):
        """Reset the unread counter of a chat."""
        if not ChatAggregator(db).mark_read(tenant_id, chat_id):
            raise HTTPException(status_code=404, detail="Chat not found")
        db.commit()
        return MarkReadResponse(chat_id=chat_id, unread_count=0)

    # =========================================================================
    # Evolution webhook
    # =========================================================================

    @app.post("/webhook/evolution")
    async def evolution_webhook(request: Request, bridge: Bridge = Depends(get_bridge)):
        """
        Receive Evolution API events and queue them on the owning session.

        The instance name in the payload is the session key.
        """
        if not validate_api_key(dict(request.headers), get_settings().EVOLUTION_API_KEY):
            logger.warning("Invalid Evolution API key")
            raise HTTPException(status_code=403, detail="Invalid API key")

        try:
            payload = json.loads(await request.body())
        except json.JSONDecodeError:
            logger.warning("Invalid JSON payload")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        if not isinstance(payload, dict):
            return {"status": "ignored"}

        instance = extract_instance_name(payload)
        events = parse_evolution_webhook(payload)
        if not instance or not events:
            return {"status": "ignored"}

        if not bridge.sessions.dispatch(instance, events):
            return {"status": "ignored", "reason": "no_session"}
        return {"status": "ok", "events": len(events)}

    # =========================================================================
    # Realtime
    # =========================================================================

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        """
        Real-time channel for the inbox.

        Client messages:
        - {"type": "join-session", "tenant_id": "H1"}  ("sessionKey" is accepted too)
        - {"type": "leave-session", "tenant_id": "H1"}

        Server messages: {"type": "qr" | "status" | "message", "payload": {...}}
        """
        hub = ws.app.state.bridge.hub
        await ws.accept()

        try:
            while True:
                try:
                    data = json.loads(await ws.receive_text())
                except json.JSONDecodeError:
                    await ws.send_json({"type": "error", "payload": {"detail": "Invalid JSON"}})
                    continue

                if not isinstance(data, dict):
                    data = {}
                tenant_id = data.get("tenant_id") or data.get("sessionKey")
                if not tenant_id:
                    await ws.send_json({"type": "error", "payload": {"detail": "tenant_id required"}})
                    continue

                if data.get("type") == "join-session":
                    hub.join(tenant_id, ws)
                    await ws.send_json({"type": "joined", "payload": {"tenant_id": tenant_id}})
                elif data.get("type") == "leave-session":
                    hub.leave(tenant_id, ws)
                    await ws.send_json({"type": "left", "payload": {"tenant_id": tenant_id}})
                else:
                    await ws.send_json({"type": "error", "payload": {"detail": "Unknown message type"}})

        except WebSocketDisconnect:
            pass
        finally:
            hub.remove(ws)

    return app


app = create_app()
