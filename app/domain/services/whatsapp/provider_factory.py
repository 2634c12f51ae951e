"""
Provider Factory - process-wide WhatsApp provider singleton.
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_whatsapp_cloud_circuit_breaker
from app.core.logging import get_logger
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

_provider: BaseWhatsAppProvider | None = None
_lock = threading.Lock()


def get_whatsapp_provider() -> BaseWhatsAppProvider:
    """Cloud API provider shared by the webhook and the Celery workers."""
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                from app.domain.services.whatsapp.pywa_provider import PyWaProvider

                _provider = PyWaProvider(circuit_breaker=get_whatsapp_cloud_circuit_breaker())
                logger.info(
                    "WhatsApp provider initialized",
                    extra_data={"provider": _provider.provider_name},
                )
    return _provider


def reset_providers() -> None:
    """For tests."""
    global _provider
    with _lock:
        _provider = None
