"""
Realtime Fan-out

Tenant rooms of WebSocket subscribers.

Delivery is at-most-once: there is no replay for late joiners and a subscriber
whose send fails is dropped from every room.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Protocol

from whatsapp_bridge.contracts.event_types import BridgeEventType
from whatsapp_bridge.streams.producer import BridgeStreamProducer

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    """Anything that can receive JSON (e.g. ``fastapi.WebSocket``)."""

    async def send_json(self, data: Any) -> None: ...


class RealtimeHub:
    """Keeps tenant rooms and publishes events to them."""

    def __init__(self, producer: BridgeStreamProducer | None = None):
        self.rooms: dict[str, set[Subscriber]] = defaultdict(set)
        self.producer = producer

    def join(self, tenant_id: str, subscriber: Subscriber) -> None:
        self.rooms[tenant_id].add(subscriber)
        logger.debug(
            "Subscriber joined",
            extra={"tenant_id": tenant_id, "subscribers": len(self.rooms[tenant_id])},
        )

    def leave(self, tenant_id: str, subscriber: Subscriber) -> None:
        room = self.rooms.get(tenant_id)
        if room is None:
            return
        room.discard(subscriber)
        if not room:
            del self.rooms[tenant_id]

    def remove(self, subscriber: Subscriber) -> None:
        """Drop a subscriber from every room (connection closed)."""
        for tenant_id in list(self.rooms):
            self.leave(tenant_id, subscriber)

    def subscriber_count(self, tenant_id: str) -> int:
        return len(self.rooms.get(tenant_id, ()))

    async def publish(self, tenant_id: str, kind: BridgeEventType, payload: dict[str, Any]) -> int:
        """
        Send an event to every subscriber of the tenant room.

        Args:
            tenant_id: Room to publish to
            kind: Event kind (qr, status, message)
            payload: Event data, always including tenant_id

        Returns:
            Number of subscribers that received the event
        """
        message = {"type": kind.value, "payload": payload}
        delivered = 0
        disconnected = []

        for subscriber in list(self.rooms.get(tenant_id, ())):
            try:
                await subscriber.send_json(message)
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropping subscriber after failed send: {e}", extra={"tenant_id": tenant_id})
                disconnected.append(subscriber)

        for subscriber in disconnected:
            self.remove(subscriber)

        if self.producer is not None:
            await self._mirror(tenant_id, kind, payload)

        return delivered

    async def _mirror(self, tenant_id: str, kind: BridgeEventType, payload: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.producer.publish_event, tenant_id, kind, payload)
        except Exception as e:
            logger.warning(
                f"Failed to mirror event to stream: {e}",
                extra={"tenant_id": tenant_id, "kind": kind.value},
            )
