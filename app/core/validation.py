"""
Input Validation Utilities

Provides validation for chat inputs:
- Phone number validation (Indian mobile format)
- Coordinates typed as "lat,lng"
- Clock times ("HH:MM") for quiet hours
- Text sanitization
"""
import re
from datetime import time


class ValidationPatterns:
    """Regex patterns for validation"""

    # Indian mobile numbers: 98XXXXXXXX, 098XXXXXXXX, 91 98XXXXXXXX, +91-98XXX-XXXXX
    PHONE_INDIA = re.compile(r"^(?:(?:\+91|91|0))?[6-9]\d{9}$")

    # International phone (E.164 format)
    PHONE_INTERNATIONAL = re.compile(r"^\+[1-9]\d{6,14}$")

    # "9.9312, 76.2673" or "9.9312 76.2673"
    COORDINATES = re.compile(
        r"^\s*(-?\d{1,2}(?:\.\d+)?)\s*[,\s]\s*(-?\d{1,3}(?:\.\d+)?)\s*$"
    )

    CLOCK_TIME = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str, allow_international: bool = True) -> bool:
        """
        Validate phone number format.

        Args:
            phone: Phone number to validate
            allow_international: Allow international format

        Returns:
            True if valid, False otherwise
        """
        if not phone:
            return False

        cleaned = re.sub(r"[\s\-]", "", phone)

        if ValidationPatterns.PHONE_INDIA.match(cleaned):
            return True

        if allow_international and ValidationPatterns.PHONE_INTERNATIONAL.match(cleaned):
            return True

        return False

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normalize phone number to E.164.
        Ten-digit Indian mobiles get the +91 prefix.

        Args:
            phone: Phone number to normalize

        Returns:
            Normalized phone number
        """
        cleaned = re.sub(r"[^\d+]", "", phone)

        if cleaned.startswith("+"):
            return cleaned
        if len(cleaned) == 11 and cleaned.startswith("0"):
            return "+91" + cleaned[1:]
        if len(cleaned) == 10:
            return "+91" + cleaned
        # Cloud API delivers wa_id without "+", e.g. 919876543210
        return "+" + cleaned

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., +9198765****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class LocationValidator:
    """Latitude/longitude parsing for typed locations"""

    @staticmethod
    def is_valid(latitude: float, longitude: float) -> bool:
        return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0

    @staticmethod
    def parse(text: str) -> tuple[float, float] | None:
        """Parse "lat,lng" text. Returns None if it is not a valid coordinate pair."""
        if not text:
            return None
        match = ValidationPatterns.COORDINATES.match(text)
        if not match:
            return None
        latitude, longitude = float(match.group(1)), float(match.group(2))
        if not LocationValidator.is_valid(latitude, longitude):
            return None
        return latitude, longitude


class ClockTimeValidator:
    """HH:MM clock times used by quiet hours"""

    @staticmethod
    def parse(value: str | None) -> time | None:
        if not value:
            return None
        match = ValidationPatterns.CLOCK_TIME.match(value.strip())
        if not match:
            return None
        return time(int(match.group(1)), int(match.group(2)))

    @staticmethod
    def validate(value: str) -> bool:
        return ClockTimeValidator.parse(value) is not None


class TextSanitizer:
    """Text sanitization for inbound chat text"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Sanitize text input for safe storage.

        Trims whitespace, enforces max length, removes null bytes and
        collapses repeated spaces. Does not HTML escape.
        """
        if not text:
            return ""

        sanitized = text.strip()
        sanitized = sanitized[:max_length]
        sanitized = sanitized.replace("\x00", "")
        sanitized = re.sub(r" +", " ", sanitized)

        return sanitized

    @staticmethod
    def remove_control_characters(text: str) -> str:
        """Remove control characters, keeping newlines and tabs."""
        if not text:
            return ""

        return "".join(
            char for char in text
            if char >= " " or char in "\n\r\t"
        )


def truncate_reason(reason: str | None, max_length: int = 500) -> str | None:
    """Trim a failure reason so it fits the failure_reason column."""
    if reason is None:
        return None
    reason = str(reason)
    if len(reason) <= max_length:
        return reason
    return reason[: max_length - 3] + "..."


def convert_html_to_whatsapp(text: str) -> str:
    """
    Convert simple HTML tags to WhatsApp formatting.

    - Bold: *text* (instead of <b>text</b>)
    - Italic: _text_ (instead of <i>text</i>)
    - Strikethrough: ~text~ (instead of <s>text</s>)
    - Monospace: `text` (instead of <code>text</code>)
    """
    if not text:
        return ""

    result = re.sub(r"<b>(.*?)</b>", r"*\1*", text, flags=re.DOTALL)
    result = re.sub(r"<strong>(.*?)</strong>", r"*\1*", result, flags=re.DOTALL)

    result = re.sub(r"<i>(.*?)</i>", r"_\1_", result, flags=re.DOTALL)
    result = re.sub(r"<em>(.*?)</em>", r"_\1_", result, flags=re.DOTALL)

    result = re.sub(r"<s>(.*?)</s>", r"~\1~", result, flags=re.DOTALL)
    result = re.sub(r"<del>(.*?)</del>", r"~\1~", result, flags=re.DOTALL)

    result = re.sub(r"<code>(.*?)</code>", r"`\1`", result, flags=re.DOTALL)

    # Drop anything else (<a>, <br> ...)
    result = re.sub(r"<br\s*/?>", "\n", result, flags=re.IGNORECASE)
    result = re.sub(r"<[^>]+>", "", result)

    return result
