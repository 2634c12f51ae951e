"""
Base interface for WhatsApp providers.

Business logic depends on this interface only; the Cloud API implementation
lives in pywa_provider.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SendResult:
    """Outcome of a successful send"""
    provider_message_id: str | None


class BaseWhatsAppProvider(ABC):
    """
    Uniform interface for sending WhatsApp messages.

    Implementations own transport, formatting, retry/circuit breaker and
    phone normalization.
    """

    @abstractmethod
    async def send_text(
        self,
        to: str,
        text: str,
        buttons: Optional[list[str]] = None,
    ) -> SendResult:
        """
        Send a text message.

        Args:
            to: Recipient phone number.
            text: Message body, sent as-is.
            buttons: Optional reply button labels.

        Raises:
            WhatsAppError: on send failure.
        """

    @abstractmethod
    async def send_image(
        self,
        to: str,
        image: str,
        caption: Optional[str] = None,
    ) -> SendResult:
        """
        Send an image by media id or public URL.

        Raises:
            WhatsAppError: on send failure or an empty image reference.
        """

    @abstractmethod
    def format_text(self, html_text: str) -> str:
        """Convert simple HTML to the provider's text formatting."""

    @abstractmethod
    def normalize_phone(self, phone: str) -> str:
        """Normalize a phone number to the format the provider expects."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Name used in logs and diagnostics."""
