"""
Tests for transports and transport payload parsing.
"""

import asyncio

import httpx
import pytest

from whatsapp_bridge.errors import TransportError, TransportEstablishFailure
from whatsapp_bridge.persistence.models import MessageKind, SessionState
from whatsapp_bridge.realtime.hub import RealtimeHub
from whatsapp_bridge.sessions.manager import SessionManager
from whatsapp_bridge.transport import create_transport, parse_transport_message
from whatsapp_bridge.transport.base import (
    MessageEvent,
    QrCodeEvent,
    StatusEvent,
    TerminatedEvent,
)
from whatsapp_bridge.transport.evolution import (
    EvolutionClient,
    EvolutionTransport,
    extract_instance_name,
    parse_evolution_webhook,
    validate_api_key,
)
from whatsapp_bridge.transport.evolution.client import EvolutionTransportHandle
from whatsapp_bridge.transport.stub import StubTransport


@pytest.fixture
def web_text_message():
    """Sample WhatsApp Web text message."""
    return {
        "id": {"_serialized": "false_5511999990000@c.us_3EB0C767D26A1D"},
        "from": "5511999990000@c.us",
        "fromMe": False,
        "isGroupMsg": False,
        "type": "chat",
        "body": "Olá, gostaria de reservar um quarto",
        "notifyName": "Maria",
        "sender": {"profilePicThumbObj": {"eurl": "https://pps.whatsapp.net/v/maria.jpg"}},
        "timestamp": 1704067200,
    }


@pytest.fixture
def evolution_text_message_webhook():
    """Sample Evolution API webhook for a text message."""
    return {
        "event": "messages.upsert",
        "instance": "H1-Principal",
        "data": {
            "key": {
                "id": "3EB0C767D26A1D",
                "remoteJid": "5511999990000@s.whatsapp.net",
                "fromMe": False,
            },
            "pushName": "Maria",
            "message": {"conversation": "Olá"},
            "messageType": "conversation",
            "messageTimestamp": 1704067200,
        },
    }


class TestParseTransportMessage:
    def test_text_message(self, web_text_message):
        message = parse_transport_message(web_text_message)

        assert message.message_id == "false_5511999990000@c.us_3EB0C767D26A1D"
        assert message.from_address == "5511999990000@c.us"
        assert message.body == "Olá, gostaria de reservar um quarto"
        assert message.kind == MessageKind.TEXT
        assert message.notify_name == "Maria"
        assert message.profile_pic_url == "https://pps.whatsapp.net/v/maria.jpg"
        assert message.timestamp.year == 2024
        assert message.from_me is False
        assert message.is_group is False

    @pytest.mark.parametrize(
        "message_type,placeholder",
        [
            ("image", "[Imagem]"),
            ("ptt", "[Áudio]"),
            ("video", "[Vídeo]"),
            ("document", "[Documento]"),
            ("location", "[Arquivo]"),
        ],
    )
    def test_media_message_gets_placeholder(self, web_text_message, message_type, placeholder):
        web_text_message.update(type=message_type, body="/9j/4AAQSkZJRgABAQ")

        message = parse_transport_message(web_text_message)

        assert message.body == placeholder
        assert message.kind == MessageKind.MEDIA

    def test_group_message(self, web_text_message):
        web_text_message["from"] = "120363025246125888@g.us"

        assert parse_transport_message(web_text_message).is_group is True

    def test_own_message(self, web_text_message):
        web_text_message["fromMe"] = True

        assert parse_transport_message(web_text_message).from_me is True

    def test_plain_string_id_and_sender_name(self):
        message = parse_transport_message(
            {"id": "msg_1", "from": "5511999990000@c.us", "body": "oi", "sender": {"pushname": "Ana"}}
        )

        assert message.message_id == "msg_1"
        assert message.notify_name == "Ana"
        assert message.kind == MessageKind.TEXT

    def test_missing_timestamp_defaults_to_now(self):
        message = parse_transport_message({"id": "msg_1", "from": "5511999990000@c.us"})

        assert message.timestamp is not None
        assert message.body == ""


class TestEvolutionWebhook:
    def test_extract_instance_name(self, evolution_text_message_webhook):
        assert extract_instance_name(evolution_text_message_webhook) == "H1-Principal"

    def test_parse_text_message(self, evolution_text_message_webhook):
        events = parse_evolution_webhook(evolution_text_message_webhook)

        assert len(events) == 1
        assert isinstance(events[0], MessageEvent)

        message = parse_transport_message(events[0].message)
        assert message.message_id == "3EB0C767D26A1D"
        assert message.from_address == "5511999990000@c.us"
        assert message.body == "Olá"
        assert message.notify_name == "Maria"

    def test_parse_extended_text_message(self, evolution_text_message_webhook):
        data = evolution_text_message_webhook["data"]
        data["messageType"] = "extendedTextMessage"
        data["message"] = {"extendedTextMessage": {"text": "Qual o valor da diária?"}}

        events = parse_evolution_webhook(evolution_text_message_webhook)

        assert events[0].message["body"] == "Qual o valor da diária?"

    def test_parse_image_message(self, evolution_text_message_webhook):
        data = evolution_text_message_webhook["data"]
        data["messageType"] = "imageMessage"
        data["message"] = {"imageMessage": {"url": "https://mmg.whatsapp.net/x"}}

        events = parse_evolution_webhook(evolution_text_message_webhook)
        message = parse_transport_message(events[0].message)

        assert message.body == "[Imagem]"
        assert message.kind == MessageKind.MEDIA

    def test_parse_v2_event_name(self, evolution_text_message_webhook):
        evolution_text_message_webhook["event"] = "MESSAGES_UPSERT"

        assert len(parse_evolution_webhook(evolution_text_message_webhook)) == 1

    def test_parse_qrcode_updated(self):
        events = parse_evolution_webhook(
            {
                "event": "qrcode.updated",
                "instance": "H1-Principal",
                "data": {"qrcode": {"base64": "data:image/png;base64,AAAA"}},
            }
        )

        assert events == [QrCodeEvent(image="data:image/png;base64,AAAA")]

    def test_parse_connection_open(self):
        payload = {"event": "connection.update", "instance": "H1-Principal", "data": {"state": "open"}}

        assert parse_evolution_webhook(payload) == [StatusEvent(status="open")]

    def test_ignores_other_events(self):
        assert parse_evolution_webhook({"event": "connection.update", "data": {"state": "close"}}) == []
        assert parse_evolution_webhook({"event": "presence.update", "data": {}}) == []
        assert parse_evolution_webhook({"data": {}}) == []

    def test_validate_api_key(self):
        assert validate_api_key({"apikey": "secret"}, "secret")
        assert validate_api_key({"authorization": "Bearer secret"}, "secret")
        assert not validate_api_key({"apikey": "wrong"}, "secret")
        assert not validate_api_key({}, "secret")
        assert validate_api_key({}, "")


class EvolutionServer:
    """In-memory Evolution API for httpx.MockTransport."""

    def __init__(self):
        self.state = "close"
        self.qr = "data:image/png;base64,QR1"
        self.create_status = 201
        self.state_calls = 0
        self.state_crash_after: int | None = None
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/instance/create":
            if self.create_status >= 400:
                return httpx.Response(self.create_status, json={"error": "instance exists"})
            return httpx.Response(201, json={"instance": {"instanceName": "H1-Principal"}})
        if path.startswith("/instance/connectionState/"):
            self.state_calls += 1
            if self.state_crash_after is not None and self.state_calls > self.state_crash_after:
                raise RuntimeError("connection reset by peer")
            return httpx.Response(200, json={"instance": {"state": self.state}})
        if path.startswith("/instance/connect/"):
            return httpx.Response(200, json={"base64": self.qr})
        if path.startswith("/message/sendText/"):
            return httpx.Response(201, json={"key": {"id": "BAE5F5A632EAE722"}, "status": "PENDING"})
        if path.startswith("/instance/logout/"):
            return httpx.Response(200, json={"status": "SUCCESS"})
        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def evolution_server():
    return EvolutionServer()


@pytest.fixture
def evolution_client(evolution_server):
    client = EvolutionClient("https://evolution.test", "secret")
    client._client = httpx.AsyncClient(
        transport=httpx.MockTransport(evolution_server.handler),
        headers={"apikey": "secret"},
    )
    return client


class TestEvolutionTransport:
    @pytest.mark.asyncio
    async def test_send_text(self, evolution_server, evolution_client):
        handle = EvolutionTransportHandle(evolution_client, "H1-Principal", lambda e: None, 60)

        result = await handle.send_text("5511999990000@c.us", "Sua reserva está confirmada")

        assert result.id == "BAE5F5A632EAE722"
        assert result.to == "5511999990000@c.us"
        request = evolution_server.requests[-1]
        assert request.url.path == "/message/sendText/H1-Principal"
        assert request.headers["apikey"] == "secret"
        assert b'"number":"5511999990000"' in request.content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_http_error_raises_transport_error(self, evolution_client):
        with pytest.raises(TransportError) as exc_info:
            await evolution_client.request("GET", "/unknown")

        assert exc_info.value.code == "404"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_poll_follows_pairing(self, evolution_server, evolution_client):
        events = []
        handle = EvolutionTransportHandle(evolution_client, "H1-Principal", events.append, 60)

        assert await handle._poll_once() is True
        assert events == [
            StatusEvent(status="connecting"),
            QrCodeEvent(image="data:image/png;base64,QR1", attempt=1),
        ]

        # Same QR is not reported twice
        await handle._poll_once()
        assert len(events) == 2

        evolution_server.qr = "data:image/png;base64,QR2"
        await handle._poll_once()
        assert events[-1] == QrCodeEvent(image="data:image/png;base64,QR2", attempt=2)

        evolution_server.state = "open"
        assert await handle._poll_once() is True
        assert events[-1] == StatusEvent(status="open")

        evolution_server.state = "close"
        assert await handle._poll_once() is False
        assert events[-1] == TerminatedEvent()

    @pytest.mark.asyncio
    async def test_poll_crash_terminates_with_error(self, evolution_server, evolution_client):
        evolution_server.state = "open"
        evolution_server.state_crash_after = 1
        events = []
        handle = EvolutionTransportHandle(evolution_client, "H1-Principal", events.append, 0)

        await asyncio.wait_for(handle._poll(), timeout=5)

        assert events == [
            StatusEvent(status="open"),
            TerminatedEvent(error="connection reset by peer"),
        ]

    @pytest.mark.asyncio
    async def test_poll_crash_marks_connected_session_as_error(
        self, evolution_server, evolution_client, session_factory
    ):
        evolution_server.state = "open"
        evolution_server.state_crash_after = 3
        transport = EvolutionTransport("https://evolution.test", "secret", poll_interval=0.01)
        transport.client = evolution_client
        manager = SessionManager(transport, session_factory, RealtimeHub())

        await manager.start("H1")
        for _ in range(500):
            if not manager.is_running("H1"):
                break
            await asyncio.sleep(0.01)

        status = await manager.get_status("H1")
        assert status.status == SessionState.ERROR.value
        assert status.last_error == "connection reset by peer"
        assert status.active is False
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_connect_reuses_existing_instance(self, evolution_server, evolution_client):
        evolution_server.create_status = 403
        transport = EvolutionTransport("https://evolution.test", "secret", poll_interval=60)
        transport.client = evolution_client

        handle = await transport.connect("H1-Principal", lambda e: None)
        await handle.close()
        await transport.aclose()

        paths = [r.url.path for r in evolution_server.requests]
        assert paths[0] == "/instance/create"
        assert paths[-1] == "/instance/logout/H1-Principal"

    @pytest.mark.asyncio
    async def test_connect_failure(self, evolution_server, evolution_client):
        evolution_server.create_status = 500
        transport = EvolutionTransport("https://evolution.test", "secret")
        transport.client = evolution_client

        with pytest.raises(TransportEstablishFailure):
            await transport.connect("H1-Principal", lambda e: None)


class TestStubTransport:
    @pytest.mark.asyncio
    async def test_connect_emits_login(self):
        events = []
        transport = StubTransport(show_qr=True)

        handle = await transport.connect("H1-Principal", events.append)

        assert isinstance(events[0], QrCodeEvent)
        assert events[1] == StatusEvent(status="isLogged")
        assert transport.handles["H1-Principal"] is handle

    @pytest.mark.asyncio
    async def test_send_records_message(self):
        transport = StubTransport()
        handle = await transport.connect("H1-Principal", lambda e: None)

        result = await handle.send_text("5511999990000@c.us", "Olá")

        assert result.id.startswith("stub_msg_")
        assert transport.sent_messages[0]["to"] == "5511999990000@c.us"
        assert transport.sent_messages[0]["text"] == "Olá"

    @pytest.mark.asyncio
    async def test_closed_handle_cannot_send(self):
        handle = await StubTransport().connect("H1-Principal", lambda e: None)
        await handle.close()

        with pytest.raises(TransportError):
            await handle.send_text("5511999990000@c.us", "Olá")


def test_create_transport(settings):
    assert isinstance(create_transport(settings), StubTransport)

    evolution = settings.model_copy(update={"WHATSAPP_TRANSPORT": "evolution"})
    assert isinstance(create_transport(evolution), EvolutionTransport)

    with pytest.raises(ValueError):
        create_transport(settings.model_copy(update={"WHATSAPP_TRANSPORT": "twilio"}))
