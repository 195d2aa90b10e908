"""
Evolution API Webhook Utilities

Helper functions for turning Evolution API webhooks into transport events.

Evolution webhook format:
{
    "event": "messages.upsert",
    "instance": "instance_name",
    "data": {
        "key": {"id": "...", "remoteJid": "5511999990000@s.whatsapp.net", "fromMe": false},
        "pushName": "Maria",
        "message": {"conversation": "Olá"},
        "messageType": "conversation",
        "messageTimestamp": 1700000000
    }
}
"""

import logging
from typing import Any

from whatsapp_bridge.routing.phone import USER_SUFFIX
from whatsapp_bridge.transport.base import (
    MessageEvent,
    QrCodeEvent,
    StatusEvent,
    TransportEvent,
)

logger = logging.getLogger(__name__)

BAILEYS_USER_SUFFIX = "@s.whatsapp.net"

# Baileys message types mapped to WhatsApp Web types
MESSAGE_TYPES = {
    "conversation": "chat",
    "extendedTextMessage": "chat",
    "imageMessage": "image",
    "audioMessage": "ptt",
    "videoMessage": "video",
    "documentMessage": "document",
    "documentWithCaptionMessage": "document",
    "stickerMessage": "sticker",
}


def extract_instance_name(payload: dict[str, Any]) -> str | None:
    """
    Extract instance name from webhook payload.

    This is used for session routing before full parsing.
    """
    return payload.get("instance")


def to_web_message(data: dict[str, Any]) -> dict[str, Any]:
    """Convert a Baileys message (``messages.upsert`` data) to WhatsApp Web shape."""
    key = data.get("key") or {}
    message = data.get("message") or {}
    remote_jid = str(key.get("remoteJid") or "")
    if remote_jid.endswith(BAILEYS_USER_SUFFIX):
        remote_jid = remote_jid[: -len(BAILEYS_USER_SUFFIX)] + USER_SUFFIX

    message_type = MESSAGE_TYPES.get(data.get("messageType", "conversation"), "unknown")
    body = ""
    if message_type == "chat":
        body = message.get("conversation") or (message.get("extendedTextMessage") or {}).get("text") or ""

    return {
        "id": key.get("id"),
        "from": remote_jid,
        "fromMe": bool(key.get("fromMe")),
        "isGroupMsg": remote_jid.endswith("@g.us"),
        "type": message_type,
        "body": body,
        "notifyName": data.get("pushName"),
        "timestamp": data.get("messageTimestamp"),
    }


def parse_evolution_webhook(payload: dict[str, Any]) -> list[TransportEvent]:
    """
    Parse an Evolution API webhook payload into transport events.

    Handled events:
    - messages.upsert: inbound message
    - qrcode.updated: new pairing QR code
    - connection.update: only "open" is forwarded, the poller follows the rest
    """
    event = payload.get("event")
    data = payload.get("data") or {}
    if not event or not isinstance(data, dict):
        return []

    # Evolution v2 reports event names upper-cased with underscores
    event = str(event).lower().replace("_", ".")

    if event == "messages.upsert":
        return [MessageEvent(message=to_web_message(data))]

    if event == "qrcode.updated":
        image = (data.get("qrcode") or {}).get("base64")
        return [QrCodeEvent(image=image)] if image else []

    if event == "connection.update" and data.get("state") == "open":
        return [StatusEvent(status="open")]

    logger.debug("Ignoring Evolution event", extra={"event": event})
    return []


def validate_api_key(request_headers: dict[str, str], expected_api_key: str) -> bool:
    """
    Validate API key from request headers.

    Evolution API can send API key in:
    - Header: "apikey"
    - Header: "Authorization: Bearer <key>"
    """
    if not expected_api_key:
        return True

    if request_headers.get("apikey") == expected_api_key:
        return True

    auth_header = request_headers.get("authorization", "")
    return auth_header.startswith("Bearer ") and auth_header[7:] == expected_api_key
