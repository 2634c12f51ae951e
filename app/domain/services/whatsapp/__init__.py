"""
WhatsApp Provider Abstraction Layer
"""
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider, SendResult
from app.domain.services.whatsapp.provider_factory import get_whatsapp_provider, reset_providers

__all__ = [
    "BaseWhatsAppProvider",
    "SendResult",
    "get_whatsapp_provider",
    "reset_providers",
]
