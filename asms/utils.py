"""Shared utilities used across the appointment core."""

import re
from datetime import datetime, timezone


def normalize_plate(value: str) -> str:
    """Normalize a vehicle registration plate to uppercase alphanumerics and dashes.

    Examples:
        >>> normalize_plate(" wp cab-1234 ")
        'WPCAB-1234'
        >>> normalize_plate("kl.01.ab.99")
        'KL01AB99'
    """
    return re.sub(r"[^A-Z0-9-]", "", value.strip().upper())


def normalize_slot_label(value: str) -> str:
    """Collapse whitespace around the dash of a slot label.

    Examples:
        >>> normalize_slot_label(" 09:00 - 10:00 ")
        '09:00-10:00'
    """
    return re.sub(r"\s*-\s*", "-", value.strip())


def utcnow() -> datetime:
    """Timezone-aware current time; every persisted timestamp goes through here."""
    return datetime.now(timezone.utc)
