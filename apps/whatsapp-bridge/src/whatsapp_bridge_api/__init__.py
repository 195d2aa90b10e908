"""WhatsApp Bridge HTTP / WebSocket service."""
