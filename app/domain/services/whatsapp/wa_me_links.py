"""
Click-to-chat and map links for alert replies.

"Message seller" opens a private chat with the seller through wa.me, and
"Get location" sends a Google Maps pin for the catch.
"""
from __future__ import annotations

from urllib.parse import quote

from app.core.validation import PhoneNumberValidator


def generate_chat_link(phone: str, text: str | None = None) -> str:
    """wa.me link to the phone number, optionally with a prefilled message.

    Args:
        phone: Number in any accepted format (+919800000001, 9800000001 ...).
        text: Prefilled message for the chat box.

    Returns:
        Full wa.me link. wa.me wants the bare digits, no "+".
    """
    digits = PhoneNumberValidator.normalize(phone).lstrip("+")
    if text:
        return f"https://wa.me/{digits}?text={quote(text)}"
    return f"https://wa.me/{digits}"


def generate_maps_link(latitude: float, longitude: float) -> str:
    return f"https://maps.google.com/?q={latitude},{longitude}"
