"""
WhatsApp Bridge Stream Producer

Mirrors real-time bridge events to a Redis Stream for downstream services.
"""

import logging
from typing import Any

import redis

from whatsapp_bridge.contracts.envelope import BridgeEnvelope
from whatsapp_bridge.contracts.event_types import BridgeEventType

logger = logging.getLogger(__name__)

EVENTS_STREAM = "whatsapp:bridge:events"


class BridgeStreamProducer:
    """
    Producer for publishing bridge events to Redis Streams.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        stream_name: str = EVENTS_STREAM,
        max_len: int = 100000,
    ):
        self.redis = redis_client
        self.stream_name = stream_name
        self.max_len = max_len

    def publish_event(
        self,
        tenant_id: str,
        kind: BridgeEventType,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> str:
        """
        Publish a bridge event.

        Returns:
            Stream message ID
        """
        envelope = BridgeEnvelope(
            kind=kind,
            tenant_id=tenant_id,
            payload=payload,
            correlation_id=correlation_id,
        )

        msg_id = self.redis.xadd(
            self.stream_name,
            envelope.to_stream_data(),
            maxlen=self.max_len,
            approximate=True,
        )

        logger.debug(
            f"Published to {self.stream_name}",
            extra={
                "stream": self.stream_name,
                "event_type": envelope.event_type,
                "event_id": str(envelope.event_id),
                "msg_id": msg_id,
            },
        )

        return msg_id
