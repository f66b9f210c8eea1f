"""Outbound transports and remote template registries."""
from channels.base import (
    Transport,
    TemplateRegistry,
    TokenBucketRateLimiter,
    CircuitBreaker,
    SendMetrics,
)
from channels.memory import InMemoryTransport, InMemoryTemplateRegistry
from channels.whatsapp_adapter import WhatsAppTransport, WhatsAppTemplateRegistry

__all__ = [
    "Transport", "TemplateRegistry",
    "TokenBucketRateLimiter", "CircuitBreaker", "SendMetrics",
    "InMemoryTransport", "InMemoryTemplateRegistry",
    "WhatsAppTransport", "WhatsAppTemplateRegistry",
]
