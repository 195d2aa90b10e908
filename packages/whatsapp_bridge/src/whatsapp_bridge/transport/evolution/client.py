"""
Evolution API WhatsApp Transport

Transport for Evolution API (Baileys-based WhatsApp Web bridge).
Each session is an Evolution instance named after the session key. Pairing is
driven by polling the instance connection state and QR code; inbound messages
arrive through the Evolution webhook (see ``webhook.py``).

Documentation: https://doc.evolution-api.com/
"""

import asyncio
import logging
from typing import Any

import httpx

from whatsapp_bridge.errors import TransportError, TransportEstablishFailure
from whatsapp_bridge.transport.base import (
    Emit,
    QrCodeEvent,
    SendResult,
    StatusEvent,
    TerminatedEvent,
    TransportHandle,
    WhatsAppTransport,
)

logger = logging.getLogger(__name__)

# Instance already exists (restart of a known session)
INSTANCE_EXISTS_CODES = {"403", "409"}

# Consecutive poll failures before the connection is considered lost
MAX_POLL_FAILURES = 5


class EvolutionClient:
    """Thin authenticated wrapper around the Evolution REST API."""

    def __init__(self, api_url: str, api_key: str, timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "apikey": self.api_key,
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated API request."""
        client = await self._get_client()
        url = f"{self.api_url}{endpoint}"

        try:
            response = await client.request(method.upper(), url, json=json_data)
        except httpx.RequestError as e:
            logger.error(f"HTTP request failed: {e}")
            raise TransportError(
                f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            ) from e

        try:
            response_data = response.json()
        except ValueError:
            response_data = {"raw": response.text}
        if not isinstance(response_data, dict):
            response_data = {"data": response_data}

        if response.status_code >= 400:
            error = response_data.get("error") or response_data.get("message", "Unknown error")
            raise TransportError(
                str(error),
                code=str(response.status_code),
                details=response_data,
                retryable=response.status_code >= 500,
            )

        return response_data

    async def create_instance(self, instance_name: str) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/instance/create",
            {
                "instanceName": instance_name,
                "qrcode": True,
                "integration": "WHATSAPP-BAILEYS",
            },
        )

    async def connect_instance(self, instance_name: str) -> dict[str, Any]:
        """Initialize the instance; the response carries the current QR code."""
        return await self.request("GET", f"/instance/connect/{instance_name}")

    async def connection_state(self, instance_name: str) -> str:
        """Get the instance state ("open", "connecting" or "close")."""
        response = await self.request("GET", f"/instance/connectionState/{instance_name}")
        instance = response.get("instance") or response
        return str(instance.get("state") or "")

    async def send_text(self, instance_name: str, number: str, text: str) -> dict[str, Any]:
        return await self.request(
            "POST",
            f"/message/sendText/{instance_name}",
            {"number": number, "text": text},
        )

    async def logout_instance(self, instance_name: str) -> None:
        await self.request("DELETE", f"/instance/logout/{instance_name}")


def extract_qr_image(response: dict[str, Any]) -> str | None:
    """QR base64 from a connect response (v1 nests it under "qrcode")."""
    return response.get("base64") or (response.get("qrcode") or {}).get("base64")


class EvolutionTransportHandle(TransportHandle):
    """One Evolution instance, with a background task following its pairing state."""

    def __init__(
        self,
        client: EvolutionClient,
        instance_name: str,
        emit: Emit,
        poll_interval: float,
    ):
        self.client = client
        self.instance_name = instance_name
        self.emit = emit
        self.poll_interval = poll_interval
        self._last_state: str | None = None
        self._last_qr: str | None = None
        self._qr_attempts = 0
        self._poll_task: asyncio.Task | None = None

    def start_polling(self) -> None:
        self._poll_task = asyncio.create_task(
            self._poll(), name=f"evolution-poll:{self.instance_name}"
        )

    async def _poll(self) -> None:
        failures = 0
        while True:
            try:
                if not await self._poll_once():
                    return
                failures = 0
            except TransportError as e:
                failures += 1
                logger.warning(
                    f"Evolution poll failed: {e}",
                    extra={"instance": self.instance_name, "failures": failures},
                )
                if failures >= MAX_POLL_FAILURES:
                    self.emit(TerminatedEvent(error=str(e)))
                    return
            except Exception as e:
                logger.error(
                    f"Evolution poll crashed: {e}",
                    extra={"instance": self.instance_name},
                    exc_info=True,
                )
                self.emit(TerminatedEvent(error=str(e) or type(e).__name__))
                return
            await asyncio.sleep(self.poll_interval)

    async def _poll_once(self) -> bool:
        """Follow one step of the pairing state. Returns False once the instance is gone."""
        state = await self.client.connection_state(self.instance_name)
        if state != self._last_state:
            was_open = self._last_state == "open"
            self._last_state = state
            if was_open and state == "close":
                # Logged out from the phone
                self.emit(TerminatedEvent())
                return False
            # Unpaired instances report "close" until the first QR is shown
            self.emit(StatusEvent(status="connecting" if state == "close" else state))

        if state != "open":
            qr = extract_qr_image(await self.client.connect_instance(self.instance_name))
            if qr and qr != self._last_qr:
                self._last_qr = qr
                self._qr_attempts += 1
                self.emit(QrCodeEvent(image=qr, attempt=self._qr_attempts))
        return True

    async def send_text(self, address: str, text: str) -> SendResult:
        """Send a text message via Evolution API."""
        number = address.split("@", 1)[0]
        response = await self.client.send_text(self.instance_name, number, text)
        message_id = (response.get("key") or {}).get("id") or response.get("id")
        if not message_id:
            raise TransportError(
                "Evolution API returned no message id",
                code="NO_MESSAGE_ID",
                details=response,
            )

        logger.info(
            "Sent text message via Evolution API",
            extra={"to": address, "message_id": message_id, "instance": self.instance_name},
        )
        return SendResult(id=str(message_id), to=address, raw_response=response)

    async def close(self) -> None:
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        try:
            await self.client.logout_instance(self.instance_name)
        except TransportError as e:
            logger.warning(
                f"Failed to logout instance: {e}",
                extra={"instance": self.instance_name},
            )


class EvolutionTransport(WhatsAppTransport):
    """
    Evolution API transport.

    Shares a single HTTP client between all sessions of the process.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        poll_interval: float = 3.0,
        timeout: float = 30.0,
    ):
        """
        Initialize Evolution API transport.

        Args:
            api_url: Base URL of Evolution API (e.g., "https://evolution-api.example.com")
            api_key: API key for authentication
            poll_interval: Seconds between connection state polls
            timeout: HTTP request timeout
        """
        self.client = EvolutionClient(api_url, api_key, timeout=timeout)
        self.poll_interval = poll_interval

    async def connect(self, session_key: str, emit: Emit) -> EvolutionTransportHandle:
        try:
            await self.client.create_instance(session_key)
            logger.info("Created Evolution instance", extra={"instance": session_key})
        except TransportError as e:
            if e.code not in INSTANCE_EXISTS_CODES:
                raise TransportEstablishFailure(
                    f"Failed to create instance {session_key}: {e}",
                    details={"instance": session_key, "code": e.code},
                ) from e
            logger.info("Reusing Evolution instance", extra={"instance": session_key})

        handle = EvolutionTransportHandle(self.client, session_key, emit, self.poll_interval)
        handle.start_polling()
        return handle

    async def aclose(self) -> None:
        await self.client.close()
