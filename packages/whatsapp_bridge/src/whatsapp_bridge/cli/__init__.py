"""WhatsApp Bridge CLI."""
