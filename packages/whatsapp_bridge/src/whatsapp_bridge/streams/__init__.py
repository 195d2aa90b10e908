"""
WhatsApp Bridge Streams

Redis Streams mirror of bridge events.
"""

from whatsapp_bridge.streams.producer import EVENTS_STREAM, BridgeStreamProducer

__all__ = ["EVENTS_STREAM", "BridgeStreamProducer"]
