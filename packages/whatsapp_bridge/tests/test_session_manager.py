"""
Tests for the session lifecycle manager.
"""

import asyncio

import pytest

from whatsapp_bridge.errors import SessionNotActiveError, StoreWriteFailure
from whatsapp_bridge.persistence.models import SessionState
from whatsapp_bridge.realtime.hub import RealtimeHub
from whatsapp_bridge.sessions.manager import (
    SessionManager,
    StartResult,
    build_session_key,
    map_transport_status,
)
from whatsapp_bridge.transport.base import QrCodeEvent, StatusEvent
from whatsapp_bridge.transport.stub import StubTransport
from whatsapp_bridge.transport.stub.client import STUB_QR_IMAGE


async def wait_until(predicate, timeout: float = 5.0):
    """Poll a condition from the event loop."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.parametrize(
    "status,state",
    [
        ("isLogged", SessionState.CONNECTED),
        ("qrReadSuccess", SessionState.CONNECTED),
        ("open", SessionState.CONNECTED),
        ("notLogged", SessionState.QRCODE),
        ("browserClose", SessionState.DISCONNECTED),
        ("desconnectedMobile", SessionState.DISCONNECTED),
        ("qrReadFail", SessionState.ERROR),
        ("connecting", SessionState.STARTING),
        ("initBrowser", SessionState.STARTING),
    ],
)
def test_map_transport_status(status, state):
    assert map_transport_status(status) == state


def test_build_session_key():
    assert build_session_key("H1", "Principal") == "H1-Principal"


class TestStart:
    @pytest.mark.asyncio
    async def test_start_connects_in_background(self, bridge, subscriber):
        bridge.hub.join("H1", subscriber)

        assert await bridge.sessions.start("H1") == StartResult.STARTING
        await bridge.sessions.wait_idle("H1")

        status = await bridge.sessions.get_status("H1")
        assert status.status == "CONNECTED"
        assert status.session_name == "Principal"
        assert status.active is True
        assert [p["state"] for p in subscriber.of_type("status")] == ["STARTING", "CONNECTED"]

    @pytest.mark.asyncio
    async def test_second_start_is_already_running(self, bridge):
        await bridge.sessions.start("H1")

        assert await bridge.sessions.start("H1") == StartResult.ALREADY_RUNNING
        assert await bridge.sessions.start("H1", "Principal") == StartResult.ALREADY_RUNNING
        # Another session name is another session
        assert await bridge.sessions.start("H1", "Recepção") == StartResult.STARTING

    @pytest.mark.asyncio
    async def test_unknown_session_is_uninitialized(self, bridge):
        status = await bridge.sessions.get_status("H9")

        assert status.status == "UNINITIALIZED"
        assert status.active is False

    @pytest.mark.asyncio
    async def test_start_fails_when_state_cannot_be_stored(self, bridge, engine):
        engine.dispose()
        with engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE whatsapp_sessions")

        with pytest.raises(StoreWriteFailure):
            await bridge.sessions.start("H1")

        assert bridge.sessions.is_running("H1") is False


class TestPairing:
    @pytest.mark.asyncio
    async def test_qr_code_is_stored_until_login(self, bridge, stub_transport, subscriber):
        stub_transport.auto_login = False
        stub_transport.show_qr = True
        bridge.hub.join("H1", subscriber)

        await bridge.sessions.start("H1")
        await bridge.sessions.wait_idle("H1")

        status = await bridge.sessions.get_status("H1")
        assert status.status == "QRCODE"
        assert status.qrcode == STUB_QR_IMAGE
        assert status.qr_attempts == 1
        assert subscriber.of_type("qr") == [{"tenant_id": "H1", "image": STUB_QR_IMAGE}]

        stub_transport.handles["H1-Principal"].set_status("isLogged")
        await bridge.sessions.wait_idle("H1")

        status = await bridge.sessions.get_status("H1")
        assert status.status == "CONNECTED"
        assert status.qrcode is None
        assert status.qr_attempts == 0

    @pytest.mark.asyncio
    async def test_qr_attempts_exceeded_is_error(self, bridge, stub_transport):
        stub_transport.auto_login = False
        stub_transport.show_qr = True
        await bridge.sessions.start("H1")
        await bridge.sessions.wait_idle("H1")

        handle = stub_transport.handles["H1-Principal"]
        for attempt in range(2, 5):
            handle.show_qr(image=f"data:image/png;base64,QR{attempt}", attempt=attempt)
        await bridge.sessions.wait_idle("H1")

        status = await bridge.sessions.get_status("H1")
        assert status.status == "ERROR"
        assert "QR code not scanned" in status.last_error
        assert status.qrcode is None
        assert bridge.sessions.is_running("H1") is False
        assert handle.closed is True

    @pytest.mark.asyncio
    async def test_repeated_qr_counts_once(self, bridge, stub_transport, subscriber):
        stub_transport.auto_login = False
        await bridge.sessions.start("H1")
        await bridge.sessions.wait_idle("H1")
        bridge.hub.join("H1", subscriber)

        images = ["data:image/png;base64,QR1"] * 2 + ["data:image/png;base64,QR2"] * 2
        assert bridge.sessions.dispatch("H1-Principal", [QrCodeEvent(image=image) for image in images])
        await bridge.sessions.wait_idle("H1")

        status = await bridge.sessions.get_status("H1")
        assert status.status == "QRCODE"
        assert status.qr_attempts == 2
        assert status.qrcode == "data:image/png;base64,QR2"
        assert len(subscriber.of_type("qr")) == 2

    @pytest.mark.asyncio
    async def test_waiting_status_without_qr_is_starting(self, bridge, stub_transport):
        stub_transport.auto_login = False
        await bridge.sessions.start("H1")
        await bridge.sessions.wait_idle("H1")

        stub_transport.handles["H1-Principal"].set_status("notLogged")
        await bridge.sessions.wait_idle("H1")

        assert (await bridge.sessions.get_status("H1")).status == "STARTING"

    @pytest.mark.asyncio
    async def test_connect_timeout_is_error(self, session_factory):
        transport = StubTransport(auto_login=False)
        manager = SessionManager(transport, session_factory, RealtimeHub(), connect_timeout=0.05)

        await manager.start("H1")
        await wait_until(lambda: not manager.is_running("H1"))

        status = await manager.get_status("H1")
        assert status.status == "ERROR"
        assert "not connected" in status.last_error
        await manager.shutdown()


class TestEstablishFailure:
    @pytest.mark.asyncio
    async def test_failure_is_error_and_restart_is_allowed(self, bridge, stub_transport):
        stub_transport.fail_connect = True

        assert await bridge.sessions.start("H1") == StartResult.STARTING
        await bridge.sessions.wait_idle("H1")

        status = await bridge.sessions.get_status("H1")
        assert status.status == "ERROR"
        assert status.last_error == "Simulated establishment failure"
        assert status.active is False

        stub_transport.fail_connect = False
        assert await bridge.sessions.start("H1") == StartResult.STARTING
        await bridge.sessions.wait_idle("H1")

        status = await bridge.sessions.get_status("H1")
        assert status.status == "CONNECTED"
        assert status.last_error is None


class TestTermination:
    @pytest.mark.asyncio
    async def test_clean_disconnect(self, bridge, stub_transport):
        await bridge.sessions.start("H1")
        await bridge.sessions.wait_idle("H1")

        stub_transport.handles["H1-Principal"].terminate()
        await bridge.sessions.wait_idle("H1")

        status = await bridge.sessions.get_status("H1")
        assert status.status == "DISCONNECTED"
        assert status.last_error is None
        assert bridge.sessions.is_active("H1") is False

    @pytest.mark.asyncio
    async def test_transport_error_status(self, bridge, stub_transport):
        await bridge.sessions.start("H1")
        await bridge.sessions.wait_idle("H1")

        stub_transport.handles["H1-Principal"].set_status("qrReadFail")
        await bridge.sessions.wait_idle("H1")

        status = await bridge.sessions.get_status("H1")
        assert status.status == "ERROR"
        assert status.last_error == "qrReadFail"

    @pytest.mark.asyncio
    async def test_stop(self, bridge, stub_transport, subscriber):
        await bridge.sessions.start("H1")
        await bridge.sessions.wait_idle("H1")
        bridge.hub.join("H1", subscriber)

        assert await bridge.sessions.stop("H1") == SessionState.DISCONNECTED

        assert stub_transport.handles["H1-Principal"].closed is True
        assert (await bridge.sessions.get_status("H1")).status == "DISCONNECTED"
        assert subscriber.of_type("status") == [{"tenant_id": "H1", "state": "DISCONNECTED"}]
        assert await bridge.sessions.start("H1") == StartResult.STARTING

    @pytest.mark.asyncio
    async def test_stop_unknown_session(self, bridge):
        assert await bridge.sessions.stop("H9") == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, bridge, stub_transport):
        await bridge.sessions.start("H1")
        await bridge.sessions.start("H2")
        await bridge.sessions.wait_idle("H1")
        await bridge.sessions.wait_idle("H2")

        stub_transport.handles["H1-Principal"].terminate(error="serverWssNotConnected")
        await bridge.sessions.wait_idle("H1")

        assert bridge.sessions.is_active("H1") is False
        assert bridge.sessions.is_active("H2") is True
        assert (await bridge.sessions.get_status("H2")).status == "CONNECTED"


class TestSend:
    @pytest.mark.asyncio
    async def test_send_without_session(self, bridge):
        with pytest.raises(SessionNotActiveError):
            await bridge.sessions.send("H1", "5511999990000@c.us", "Olá")

    @pytest.mark.asyncio
    async def test_send_through_live_session(self, bridge, stub_transport):
        await bridge.sessions.start("H1")
        await bridge.sessions.wait_idle("H1")

        result = await bridge.sessions.send("H1", "5511999990000@c.us", "Olá")

        assert result.to == "5511999990000@c.us"
        assert stub_transport.sent_messages[0]["session_key"] == "H1-Principal"


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_to_unknown_key(self, bridge):
        assert bridge.sessions.dispatch("H9-Principal", [StatusEvent(status="open")]) is False

    @pytest.mark.asyncio
    async def test_dispatch_queues_events_in_order(self, bridge, stub_transport):
        stub_transport.auto_login = False
        await bridge.sessions.start("H1")
        await bridge.sessions.wait_idle("H1")

        assert bridge.sessions.dispatch(
            "H1-Principal",
            [StatusEvent(status="connecting"), StatusEvent(status="open")],
        )
        await bridge.sessions.wait_idle("H1")

        assert (await bridge.sessions.get_status("H1")).status == "CONNECTED"
