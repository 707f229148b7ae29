"""Helper utility functions."""

import re
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

# Country calling codes for regions we keep pools in
CALLING_CODES = {
    "IE": "+353",
    "GB": "+44",
    "AU": "+61",
    "US": "+1",
}


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_lease_owner() -> str:
    """Generate a unique token identifying one holder of a lease."""
    return uuid4().hex


def normalize_phone(phone: Optional[str], region: str = "IE") -> Optional[str]:
    """Normalize phone number to E.164 format."""
    if not phone:
        return None

    # Remove all non-digit characters except +
    cleaned = re.sub(r"[^\d+]", "", phone)

    if not cleaned.startswith("+"):
        # National format, use the region's calling code
        if cleaned.startswith("0"):
            cleaned = CALLING_CODES.get(region.upper(), "+") + cleaned[1:]
        else:
            cleaned = "+" + cleaned

    return cleaned


def mask_phone(phone: str) -> str:
    """Mask phone number for logging (privacy)."""
    if not phone or len(phone) < 4:
        return "***"

    return "***" + phone[-4:]
