"""Safaricom MSISDN helpers."""

import re

PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")


def normalize_phone(phone: str) -> str:
    """Normalize a phone number to 2547XXXXXXXX / 2541XXXXXXXX form.

    Spaces and the leading '+' are dropped, and a local '0' trunk prefix is
    replaced with the 254 country code. The result is not validated.

    Example: '+254 712 345 678' -> '254712345678', '0712345678' -> '254712345678'
    """
    cleaned = phone.strip().replace(" ", "").replace("+", "")
    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]
    return cleaned


def is_valid_phone(phone: str) -> bool:
    """Check a normalized number against the Safaricom MSISDN format."""
    return bool(PHONE_PATTERN.match(phone))
