"""
Realtime

Per-tenant fan-out of bridge events to live viewers.
"""

from whatsapp_bridge.realtime.hub import RealtimeHub, Subscriber

__all__ = ["RealtimeHub", "Subscriber"]
