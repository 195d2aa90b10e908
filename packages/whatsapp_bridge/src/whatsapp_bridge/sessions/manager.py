"""
Session Lifecycle Manager

Owns the live transport handle of every tenant session and mirrors each state
transition to the ``whatsapp_sessions`` table.

States:
    UNINITIALIZED -> STARTING -> QRCODE <-> STARTING -> CONNECTED -> ERROR | DISCONNECTED
    ERROR / DISCONNECTED -> STARTING on an explicit restart

Transport callbacks are queued as typed events and applied by a single consumer
task per session, so events of one session are handled in order while sessions
of different tenants progress concurrently.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from whatsapp_bridge.contracts.event_types import BridgeEventType
from whatsapp_bridge.errors import (
    SessionNotActiveError,
    StoreWriteFailure,
    TransportError,
)
from whatsapp_bridge.persistence.models import SessionState
from whatsapp_bridge.persistence.repo import WhatsAppRepository
from whatsapp_bridge.realtime.hub import RealtimeHub
from whatsapp_bridge.transport.base import (
    MessageEvent,
    QrCodeEvent,
    SendResult,
    StatusEvent,
    TerminatedEvent,
    TransportEvent,
    TransportHandle,
    WhatsAppTransport,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], Awaitable[Any]]


class StartResult(str, Enum):
    STARTING = "STARTING"
    ALREADY_RUNNING = "ALREADY_RUNNING"


# Transport status strings (WhatsApp Web bridge and Evolution API)
TRANSPORT_STATUS_MAP: dict[str, SessionState] = {
    # Paired and usable
    "isLogged": SessionState.CONNECTED,
    "qrReadSuccess": SessionState.CONNECTED,
    "successChat": SessionState.CONNECTED,
    "chatsAvailable": SessionState.CONNECTED,
    "inChat": SessionState.CONNECTED,
    "open": SessionState.CONNECTED,
    # Waiting for a QR scan
    "notLogged": SessionState.QRCODE,
    "qrcode": SessionState.QRCODE,
    # Connection gone
    "browserClose": SessionState.DISCONNECTED,
    "desconnectedMobile": SessionState.DISCONNECTED,
    "autocloseCalled": SessionState.DISCONNECTED,
    "deleteToken": SessionState.DISCONNECTED,
    "serverClose": SessionState.DISCONNECTED,
    "close": SessionState.DISCONNECTED,
    # Unrecoverable
    "qrReadFail": SessionState.ERROR,
    "qrReadError": SessionState.ERROR,
    "erroPageWhatsapp": SessionState.ERROR,
    "noOpenBrowser": SessionState.ERROR,
    "serverWssNotConnected": SessionState.ERROR,
}


def map_transport_status(status: str) -> SessionState:
    """
    Map a raw transport status to a session state.

    Unknown statuses (browser boot steps, "connecting", ...) mean the session is
    still starting.
    """
    return TRANSPORT_STATUS_MAP.get(status, SessionState.STARTING)


def build_session_key(tenant_id: str, session_name: str) -> str:
    """Key the transport knows the session by (Evolution instance name)."""
    return f"{tenant_id}-{session_name}"


@dataclass
class ManagedSession:
    """In-memory state of one running session."""

    tenant_id: str
    session_name: str
    key: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    state: SessionState = SessionState.STARTING
    handle: TransportHandle | None = None
    qrcode: str | None = None
    qr_attempts: int = 0
    last_error: str | None = None
    closing: bool = False
    consumer: asyncio.Task | None = None
    establisher: asyncio.Task | None = None
    timer: asyncio.Task | None = None

    @property
    def is_live(self) -> bool:
        return self.handle is not None and not self.closing


@dataclass
class SessionStatus:
    """Persisted session state, plus whether a live handle exists."""

    tenant_id: str
    session_name: str
    status: str
    qrcode: str | None = None
    qr_attempts: int = 0
    last_error: str | None = None
    updated_at: datetime | None = None
    active: bool = False


class SessionManager:
    """
    Registry of running tenant sessions.

    One instance per process, created at startup and injected into the
    pipeline and API. The registry is only mutated under ``self._lock``.
    """

    def __init__(
        self,
        transport: WhatsAppTransport,
        session_factory: Callable[[], Session],
        hub: RealtimeHub,
        qr_max_attempts: int = 5,
        connect_timeout: float = 180.0,
        default_session_name: str = "Principal",
    ):
        self.transport = transport
        self.session_factory = session_factory
        self.hub = hub
        self.qr_max_attempts = qr_max_attempts
        self.connect_timeout = connect_timeout
        self.default_session_name = default_session_name
        self.on_message: MessageHandler | None = None
        self._sessions: dict[tuple[str, str], ManagedSession] = {}
        self._lock = asyncio.Lock()

    def _name(self, session_name: str | None) -> str:
        return session_name or self.default_session_name

    # =========================================================================
    # Public API
    # =========================================================================

    async def start(self, tenant_id: str, session_name: str | None = None) -> StartResult:
        """
        Start a tenant session.

        Returns immediately: the transport connection is established in the
        background and its progress is reported through status/QR events.

        Raises:
            StoreWriteFailure: The STARTING state could not be persisted
        """
        name = self._name(session_name)
        async with self._lock:
            if (tenant_id, name) in self._sessions:
                return StartResult.ALREADY_RUNNING
            session = ManagedSession(
                tenant_id=tenant_id,
                session_name=name,
                key=build_session_key(tenant_id, name),
            )
            self._sessions[(tenant_id, name)] = session

        try:
            await self._persist(session)
        except StoreWriteFailure:
            async with self._lock:
                self._sessions.pop((tenant_id, name), None)
            raise

        logger.info("Starting session", extra={"tenant_id": tenant_id, "session_name": name})
        session.consumer = asyncio.create_task(self._consume(session), name=f"session:{session.key}")
        session.establisher = asyncio.create_task(
            self._establish(session), name=f"establish:{session.key}"
        )
        await self._publish_status(session)
        return StartResult.STARTING

    async def stop(self, tenant_id: str, session_name: str | None = None) -> SessionState:
        """Close the session's connection and persist DISCONNECTED."""
        name = self._name(session_name)
        async with self._lock:
            session = self._sessions.get((tenant_id, name))
        if session is None:
            return SessionState.DISCONNECTED

        session.closing = True
        session.queue.put_nowait(TerminatedEvent())
        if session.consumer is not None:
            await session.consumer
        return session.state

    async def send(
        self,
        tenant_id: str,
        address: str,
        text: str,
        session_name: str | None = None,
    ) -> SendResult:
        """
        Send a text message through the tenant's live connection.

        Raises:
            SessionNotActiveError: No live transport handle for the session
            TransportError: The transport failed to send
        """
        name = self._name(session_name)
        session = self._sessions.get((tenant_id, name))
        if session is None or not session.is_live:
            raise SessionNotActiveError(tenant_id, name)

        try:
            return await session.handle.send_text(address, text)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"Send failed: {e}", code="TRANSPORT_EXCEPTION") from e

    def is_active(self, tenant_id: str, session_name: str | None = None) -> bool:
        session = self._sessions.get((tenant_id, self._name(session_name)))
        return session is not None and session.is_live

    def is_running(self, tenant_id: str, session_name: str | None = None) -> bool:
        """True while a handle exists or is still being established."""
        return (tenant_id, self._name(session_name)) in self._sessions

    async def get_status(self, tenant_id: str, session_name: str | None = None) -> SessionStatus:
        """Get the persisted state of a session (UNINITIALIZED if never started)."""
        name = self._name(session_name)
        status = await asyncio.to_thread(self._read_status, tenant_id, name)
        status.active = self.is_active(tenant_id, name)
        return status

    def dispatch(self, session_key: str, events: list[TransportEvent]) -> bool:
        """
        Queue events delivered out of band (webhooks) for a session.

        Returns:
            False if no running session has that key
        """
        session = next((s for s in self._sessions.values() if s.key == session_key), None)
        if session is None:
            logger.debug("No running session for key", extra={"session_key": session_key})
            return False
        for event in events:
            session.queue.put_nowait(event)
        return True

    async def wait_idle(self, tenant_id: str, session_name: str | None = None) -> None:
        """Wait until the session is established and its queued events are applied."""
        session = self._sessions.get((tenant_id, self._name(session_name)))
        if session is None:
            return
        if session.establisher is not None:
            await asyncio.gather(session.establisher, return_exceptions=True)
        await session.queue.join()

    async def autostart(self, tenant_ids: list[str]) -> None:
        """Start the default session of every tenant (process boot)."""
        for tenant_id in tenant_ids:
            try:
                result = await self.start(tenant_id)
                logger.info(
                    "Autostarted session",
                    extra={"tenant_id": tenant_id, "result": result.value},
                )
            except StoreWriteFailure as e:
                logger.error(f"Autostart failed: {e}", extra={"tenant_id": tenant_id})

    async def shutdown(self) -> None:
        """Close every session and the transport (process exit)."""
        async with self._lock:
            keys = list(self._sessions)
        for tenant_id, name in keys:
            await self.stop(tenant_id, name)
        await self.transport.aclose()
        logger.info("Session manager shut down", extra={"sessions": len(keys)})

    # =========================================================================
    # Establishment
    # =========================================================================

    async def _establish(self, session: ManagedSession) -> None:
        session.timer = asyncio.create_task(self._connect_timer(session))
        try:
            handle = await self.transport.connect(session.key, session.queue.put_nowait)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Transport establishment failed: {e}",
                extra={"tenant_id": session.tenant_id, "session_name": session.session_name},
            )
            session.queue.put_nowait(TerminatedEvent(error=str(e) or type(e).__name__))
            return

        if session.closing:
            await self._close_handle(session, handle)
            return
        session.handle = handle

    async def _connect_timer(self, session: ManagedSession) -> None:
        await asyncio.sleep(self.connect_timeout)
        if session.state != SessionState.CONNECTED and not session.closing:
            session.queue.put_nowait(
                TerminatedEvent(
                    error=f"Session not connected after {self.connect_timeout:g} seconds"
                )
            )

    # =========================================================================
    # Event consumer
    # =========================================================================

    async def _consume(self, session: ManagedSession) -> None:
        while True:
            event = await session.queue.get()
            try:
                finished = await self._apply(session, event)
            except Exception as e:
                logger.error(
                    f"Failed to apply {type(event).__name__}: {e}",
                    extra={"tenant_id": session.tenant_id},
                    exc_info=True,
                )
                finished = False
            finally:
                session.queue.task_done()
            if finished:
                break

        # Events queued after termination belong to a dead connection
        while not session.queue.empty():
            session.queue.get_nowait()
            session.queue.task_done()

    async def _apply(self, session: ManagedSession, event: TransportEvent) -> bool:
        """Apply one event. Returns True once the session has terminated."""
        if isinstance(event, TerminatedEvent):
            state = SessionState.ERROR if event.error else SessionState.DISCONNECTED
            await self._terminate(session, state, event.error)
            return True

        if session.closing:
            return False

        if isinstance(event, QrCodeEvent):
            return await self._apply_qr(session, event)
        if isinstance(event, StatusEvent):
            return await self._apply_status(session, event)
        if isinstance(event, MessageEvent):
            if self.on_message is not None:
                await self.on_message(session.tenant_id, event.message)
            return False

        logger.warning(f"Unknown transport event: {event!r}")
        return False

    async def _apply_qr(self, session: ManagedSession, event: QrCodeEvent) -> bool:
        if event.image == session.qrcode:
            # Same code reported by both the poller and the webhook
            return False
        session.qr_attempts += 1
        if session.qr_attempts > self.qr_max_attempts:
            await self._terminate(
                session,
                SessionState.ERROR,
                f"QR code not scanned after {self.qr_max_attempts} attempts",
            )
            return True

        session.state = SessionState.QRCODE
        session.qrcode = event.image
        await self._persist_quietly(session)
        await self.hub.publish(
            session.tenant_id,
            BridgeEventType.QR,
            {"tenant_id": session.tenant_id, "image": event.image},
        )
        return False

    async def _apply_status(self, session: ManagedSession, event: StatusEvent) -> bool:
        state = map_transport_status(event.status)
        logger.info(
            f"Transport status: {event.status}",
            extra={"tenant_id": session.tenant_id, "state": state.value},
        )

        if state.is_terminal:
            error = event.status if state == SessionState.ERROR else None
            await self._terminate(session, state, error)
            return True

        if state == SessionState.QRCODE and session.qrcode is None:
            # Waiting for a QR code that was not shown yet
            state = SessionState.STARTING
        if state == SessionState.CONNECTED:
            session.qr_attempts = 0
            session.last_error = None
            self._cancel_timer(session)
        if state != SessionState.QRCODE:
            session.qrcode = None

        session.state = state
        await self._persist_quietly(session)
        await self._publish_status(session)
        return False

    async def _terminate(self, session: ManagedSession, state: SessionState, error: str | None) -> None:
        session.state = state
        session.qrcode = None
        session.last_error = error

        async with self._lock:
            if self._sessions.get((session.tenant_id, session.session_name)) is session:
                del self._sessions[(session.tenant_id, session.session_name)]

        self._cancel_timer(session)
        if session.establisher is not None and not session.establisher.done():
            session.establisher.cancel()
        handle, session.handle = session.handle, None
        if handle is not None:
            await self._close_handle(session, handle)

        log = logger.warning if state == SessionState.ERROR else logger.info
        log(
            f"Session ended in {state.value}",
            extra={"tenant_id": session.tenant_id, "session_name": session.session_name, "error": error},
        )
        await self._persist_quietly(session)
        await self._publish_status(session)

    async def _close_handle(self, session: ManagedSession, handle: TransportHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.warning(f"Failed to close transport handle: {e}", extra={"tenant_id": session.tenant_id})

    def _cancel_timer(self, session: ManagedSession) -> None:
        if session.timer is not None and not session.timer.done():
            session.timer.cancel()

    # =========================================================================
    # Persistence / fan-out
    # =========================================================================

    def _write_state(self, session: ManagedSession) -> None:
        with self.session_factory() as db:
            WhatsAppRepository(db).upsert_session(
                tenant_id=session.tenant_id,
                session_name=session.session_name,
                status=session.state,
                qrcode=session.qrcode,
                qr_attempts=session.qr_attempts,
                last_error=session.last_error,
            )
            db.commit()

    async def _persist(self, session: ManagedSession) -> None:
        try:
            await asyncio.to_thread(self._write_state, session)
        except SQLAlchemyError as e:
            raise StoreWriteFailure(
                f"Failed to persist session state: {e}",
                details={"tenant_id": session.tenant_id, "state": session.state.value},
            ) from e

    async def _persist_quietly(self, session: ManagedSession) -> None:
        try:
            await self._persist(session)
        except StoreWriteFailure as e:
            logger.error(str(e), extra=e.details)

    async def _publish_status(self, session: ManagedSession) -> None:
        await self.hub.publish(
            session.tenant_id,
            BridgeEventType.STATUS,
            {"tenant_id": session.tenant_id, "state": session.state.value},
        )

    def _read_status(self, tenant_id: str, session_name: str) -> SessionStatus:
        with self.session_factory() as db:
            row = WhatsAppRepository(db).get_session(tenant_id, session_name)
            if row is None:
                return SessionStatus(
                    tenant_id=tenant_id,
                    session_name=session_name,
                    status=SessionState.UNINITIALIZED.value,
                )
            return SessionStatus(
                tenant_id=row.tenant_id,
                session_name=row.session_name,
                status=row.status,
                qrcode=row.qrcode,
                qr_attempts=row.qr_attempts,
                last_error=row.last_error,
                updated_at=row.updated_at,
            )
