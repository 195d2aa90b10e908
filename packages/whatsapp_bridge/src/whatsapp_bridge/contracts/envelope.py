"""
Bridge Event Envelope

Wire format of realtime events mirrored to the bridge events stream.

Stream entries are flat string maps:
    event_id, event_type, tenant_id, occurred_at, version,
    payload (JSON), correlation_id, source
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from whatsapp_bridge.contracts.event_types import BridgeEventType

SOURCE = "whatsapp-bridge"
CONTRACT_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BridgeEnvelope:
    """A published realtime event, as seen by stream consumers."""

    kind: BridgeEventType
    tenant_id: str
    payload: dict[str, Any]
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=_utcnow)
    correlation_id: str | None = None
    version: int = CONTRACT_VERSION
    stream_msg_id: str | None = None  # Only set when read back from the stream

    @property
    def event_type(self) -> str:
        return self.kind.stream_event_type

    def to_stream_data(self) -> dict[str, str]:
        """Flatten to the string map XADD expects."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "tenant_id": self.tenant_id,
            "occurred_at": self.occurred_at.isoformat(),
            "version": str(self.version),
            "payload": json.dumps(self.payload, default=str),
            "correlation_id": self.correlation_id or "",
            "source": SOURCE,
        }

    @classmethod
    def from_stream_message(cls, msg_id: str, data: dict[str, str]) -> "BridgeEnvelope":
        """Rebuild an envelope from a stream entry."""
        return cls(
            kind=BridgeEventType.from_stream_event_type(data["event_type"]),
            tenant_id=data["tenant_id"],
            payload=json.loads(data.get("payload") or "{}"),
            event_id=UUID(data["event_id"]),
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            correlation_id=data.get("correlation_id") or None,
            version=int(data.get("version") or CONTRACT_VERSION),
            stream_msg_id=msg_id,
        )
