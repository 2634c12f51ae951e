"""
PyWa Provider - BaseWhatsAppProvider over the WhatsApp Cloud API (Meta).

Uses pywa for transport, with retry/exponential backoff inside a circuit
breaker.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import WhatsAppError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator, convert_html_to_whatsapp
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider, SendResult

logger = get_logger(__name__)

# Cloud API limit for reply buttons on one message
_MAX_REPLY_BUTTONS = 3
_MAX_BUTTON_TITLE = 20


class PyWaProvider(BaseWhatsAppProvider):
    """WhatsApp Cloud API provider backed by pywa_async.WhatsApp"""

    def __init__(self, circuit_breaker: CircuitBreaker) -> None:
        self._circuit_breaker = circuit_breaker
        self._max_retries = settings.WHATSAPP_MAX_RETRIES
        # created lazily so tests and workers without credentials can import this module
        self._client = None

    def _get_client(self):
        if self._client is None:
            from pywa_async import WhatsApp as PyWaClient

            self._client = PyWaClient(
                phone_id=settings.WHATSAPP_CLOUD_API_PHONE_ID,
                token=settings.WHATSAPP_CLOUD_API_TOKEN,
            )
        return self._client

    @property
    def provider_name(self) -> str:
        return "pywa"

    def normalize_phone(self, phone: str) -> str:
        """Cloud API wants 919876543210, not +919876543210."""
        if PhoneNumberValidator.validate(phone):
            return PhoneNumberValidator.normalize(phone).lstrip("+")
        return phone

    def format_text(self, html_text: str) -> str:
        return convert_html_to_whatsapp(html_text)

    @staticmethod
    def _message_id(result: Any) -> str | None:
        # pywa returns a SentMessage (with .id); older releases returned the id string
        if result is None:
            return None
        if isinstance(result, str):
            return result
        return getattr(result, "id", None)

    async def _execute_with_retry(
        self,
        operation: str,
        phone_masked: str,
        func: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run func with exponential backoff; WhatsAppError once attempts run out."""
        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                return await func()
            except Exception as exc:
                last_error = exc
                if attempt < self._max_retries - 1:
                    backoff = 2 ** attempt
                    logger.warning(
                        f"{operation} failed, retrying",
                        extra_data={
                            "phone": phone_masked,
                            "error": str(exc),
                            "attempt": attempt + 1,
                            "max_retries": self._max_retries,
                            "backoff_seconds": backoff,
                        },
                    )
                    await asyncio.sleep(backoff)

        raise WhatsAppError(
            message=f"Cloud API {operation} failed after {self._max_retries} attempts",
            details={
                "phone": phone_masked,
                "error": str(last_error),
                "error_type": type(last_error).__name__ if last_error else None,
                "attempts": self._max_retries,
            },
        )

    @staticmethod
    def _build_buttons(labels: list[str] | None):
        """Reply buttons for up to three labels; None means fall back to numbered text."""
        if not labels or len(labels) > _MAX_REPLY_BUTTONS:
            return None

        from pywa import types as pywa_types

        return [
            pywa_types.Button(title=label[:_MAX_BUTTON_TITLE], callback_data=label[:256])
            for label in labels
        ]

    @staticmethod
    def _buttons_as_text(labels: list[str] | None) -> str:
        if not labels or len(labels) <= _MAX_REPLY_BUTTONS:
            return ""
        lines = ["", "", "Reply with one of:"]
        lines.extend(f"{i}. {label}" for i, label in enumerate(labels, 1))
        return "\n".join(lines)

    async def send_text(
        self,
        to: str,
        text: str,
        buttons: Optional[list[str]] = None,
    ) -> SendResult:
        to = self.normalize_phone(to)
        phone_masked = PhoneNumberValidator.mask(to)
        pywa_buttons = self._build_buttons(buttons)
        final_text = text + self._buttons_as_text(buttons)
        client = self._get_client()

        async def _send_single() -> Any:
            return await client.send_message(to=to, text=final_text, buttons=pywa_buttons)

        async def _send_with_retry() -> Any:
            return await self._execute_with_retry("send_text", phone_masked, _send_single)

        result = await self._circuit_breaker.execute(_send_with_retry)
        return SendResult(provider_message_id=self._message_id(result))

    async def send_image(
        self,
        to: str,
        image: str,
        caption: Optional[str] = None,
    ) -> SendResult:
        if not image:
            raise WhatsAppError(
                message="No image reference supplied",
                details={"phone": PhoneNumberValidator.mask(to)},
            )

        to = self.normalize_phone(to)
        phone_masked = PhoneNumberValidator.mask(to)
        formatted_caption = self.format_text(caption) if caption else None
        client = self._get_client()

        async def _send_single() -> Any:
            return await client.send_image(to=to, image=image, caption=formatted_caption)

        async def _send_with_retry() -> Any:
            return await self._execute_with_retry("send_image", phone_masked, _send_single)

        result = await self._circuit_breaker.execute(_send_with_retry)
        return SendResult(provider_message_id=self._message_id(result))
