"""
Sessions

Per-tenant WhatsApp session lifecycle.
"""

from whatsapp_bridge.sessions.manager import (
    SessionManager,
    SessionStatus,
    StartResult,
    build_session_key,
    map_transport_status,
)

__all__ = [
    "SessionManager",
    "SessionStatus",
    "StartResult",
    "build_session_key",
    "map_transport_status",
]
