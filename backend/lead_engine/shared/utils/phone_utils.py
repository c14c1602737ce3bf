"""
Phone Number Normalization Utilities

Inbound webhooks carry sender numbers in provider-specific shapes
("whatsapp:+919876543210", "919876543210@c.us", "+91 98765 43210").
Lead matching happens on one canonical form: E.164 digits without "+".

Uses Google's libphonenumber (via the phonenumbers package).
"""
import re
import logging
from typing import Optional
from dataclasses import dataclass

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

logger = logging.getLogger(__name__)

# Provider decorations stripped before parsing
_WHATSAPP_PREFIX = "whatsapp:"
_CHAT_SUFFIXES = ("@c.us", "@s.whatsapp.net")


@dataclass
class PhoneValidationResult:
    """Result of phone number validation."""
    is_valid: bool
    normalized: str  # E.164 without + (e.g., "919876543210")
    e164: str  # Full E.164 (e.g., "+919876543210")
    country: str  # ISO region (e.g., "IN")
    error: Optional[str] = None


def strip_provider_decoration(phone: str) -> str:
    """Remove "whatsapp:" prefixes and chat-id suffixes used by WhatsApp gateways."""
    phone = (phone or "").strip()
    if phone.lower().startswith(_WHATSAPP_PREFIX):
        phone = phone[len(_WHATSAPP_PREFIX):]
    for suffix in _CHAT_SUFFIXES:
        if phone.endswith(suffix):
            phone = phone[: -len(suffix)]
    return phone.strip()


def validate_phone(phone: str, default_region: str = "IN") -> PhoneValidationResult:
    """
    Validate and parse a phone number.

    Examples:
        >>> validate_phone("whatsapp:+14155550123").normalized
        '14155550123'
        >>> validate_phone("9876543210", "IN").normalized
        '919876543210'
    """
    phone = strip_provider_decoration(phone)
    if not phone:
        return PhoneValidationResult(False, "", "", "", error="Phone number is empty")

    try:
        if phone.startswith('+') or phone.startswith('00'):
            parsed = phonenumbers.parse(phone, None)
        else:
            parsed = phonenumbers.parse(phone, default_region)
    except NumberParseException as e:
        # Gateways often drop the "+" but keep the country code
        digits = re.sub(r'\D', '', phone)
        try:
            parsed = phonenumbers.parse("+" + digits, None)
        except NumberParseException:
            return PhoneValidationResult(False, "", "", "", error=f"Invalid phone number: {e}")

    if not phonenumbers.is_valid_number(parsed):
        # Digits-only input with a leading country code ("14155550123")
        digits = re.sub(r'\D', '', phone)
        if not phone.startswith('+') and digits:
            try:
                reparsed = phonenumbers.parse("+" + digits, None)
                if phonenumbers.is_valid_number(reparsed):
                    parsed = reparsed
            except NumberParseException:
                pass

    if not phonenumbers.is_valid_number(parsed):
        return PhoneValidationResult(False, "", "", "", error="Phone number is not valid for its region")

    e164 = phonenumbers.format_number(parsed, PhoneNumberFormat.E164)
    return PhoneValidationResult(
        is_valid=True,
        normalized=e164.lstrip('+'),
        e164=e164,
        country=phonenumbers.region_code_for_number(parsed) or ""
    )


def normalize_phone_number(phone: str, default_region: str = "IN", strict: bool = False) -> str:
    """
    Normalize a phone number to E.164 digits without "+".

    Args:
        phone: Phone number in any format, including provider decorations
        default_region: Region used when the number has no country code
        strict: If True, returns "" for invalid numbers instead of a digits-only fallback

    Examples:
        >>> normalize_phone_number("whatsapp:+91 98765-43210")
        '919876543210'
        >>> normalize_phone_number("not a number", strict=True)
        ''
    """
    result = validate_phone(phone, default_region)

    if result.is_valid:
        return result.normalized

    if strict:
        return ""

    # Best-effort fallback: just the digits
    return re.sub(r'\D', '', strip_provider_decoration(phone)).lstrip('0')


def to_e164(phone: str, default_region: str = "IN") -> str:
    """Plus-prefixed E.164 for provider APIs; empty string if invalid."""
    normalized = normalize_phone_number(phone, default_region, strict=True)
    return f"+{normalized}" if normalized else ""
