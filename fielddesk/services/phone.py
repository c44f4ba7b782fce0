"""Phone number normalisation for messaging addresses."""

from __future__ import annotations

import re

DEFAULT_COUNTRY_CODE = "62"
_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | None, *, country_code: str = DEFAULT_COUNTRY_CODE) -> str | None:
    """Return the international digits form (``628123...``) or None when unusable.

    Accepts ``0812-345-6789``, ``+62 812 345 6789``, ``628123456789`` and
    ``8123456789``.
    """
    if not phone:
        return None

    digits = _NON_DIGITS.sub("", str(phone))
    if digits.startswith("0"):
        digits = country_code + digits[1:]
    elif digits.startswith(country_code):
        pass
    elif len(digits) >= 9:
        digits = country_code + digits
    else:
        return None

    if len(digits) < 10 or len(digits) > 15:
        return None
    return digits


def format_phone_for_display(phone: str | None, *, country_code: str = DEFAULT_COUNTRY_CODE) -> str | None:
    normalized = normalize_phone(phone, country_code=country_code)
    if not normalized:
        return None
    return "0" + normalized[len(country_code):]


def mask_address(address: str | None) -> str:
    """Hide the middle of an address in logs."""
    if not address:
        return "-"
    if len(address) <= 6:
        return "***"
    return f"{address[:4]}***{address[-3:]}"
