"""
Evolution API Transport

WhatsApp Web via Evolution API (Baileys).
"""

from whatsapp_bridge.transport.evolution.client import EvolutionClient, EvolutionTransport
from whatsapp_bridge.transport.evolution.webhook import (
    extract_instance_name,
    parse_evolution_webhook,
    validate_api_key,
)

__all__ = [
    "EvolutionClient",
    "EvolutionTransport",
    "extract_instance_name",
    "parse_evolution_webhook",
    "validate_api_key",
]
