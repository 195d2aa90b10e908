"""
WhatsApp Bridge

Per-hotel WhatsApp Web sessions, message ingestion and real-time fan-out.
"""
