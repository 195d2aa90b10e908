"""
Stub Transport

Logs operations and simulates WhatsApp Web events for development and tests.
"""

from whatsapp_bridge.transport.stub.client import StubTransport, StubTransportHandle

__all__ = ["StubTransport", "StubTransportHandle"]
