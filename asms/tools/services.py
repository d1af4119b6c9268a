"""Seed catalog of workshop services with daily capacity and booking aliases."""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

SERVICE_CATALOG: dict[str, dict] = {
    "oil-change": {
        "name": "Oil Change",
        "category": "Maintenance",
        "description": "Engine oil and filter replacement with a multi-point inspection.",
        "max_daily_slots": 8,
    },
    "full-service": {
        "name": "Full Service",
        "category": "Maintenance",
        "description": "Scheduled manufacturer service including fluids, filters and plugs.",
        "max_daily_slots": 4,
    },
    "brake-repair": {
        "name": "Brake Repair",
        "category": "Repair",
        "description": "Pad and rotor replacement, brake fluid flush and caliper checks.",
        "max_daily_slots": 3,
    },
    "engine-diagnostics": {
        "name": "Engine Diagnostics",
        "category": "Diagnostics",
        "description": "OBD scan, fault code analysis and road test.",
        "max_daily_slots": 5,
    },
    "wheel-alignment": {
        "name": "Wheel Alignment",
        "category": "Tyres",
        "description": "Four-wheel alignment and tyre rotation.",
        "max_daily_slots": 6,
    },
    "body-wash": {
        "name": "Body Wash",
        "category": "Detailing",
        "description": "Exterior wash, interior vacuum and dashboard polish.",
        "max_daily_slots": 10,
    },
}

SERVICE_ALIASES: dict[str, str] = {
    "oil": "oil-change", "lube": "oil-change",
    "tune up": "full-service", "maintenance": "full-service",
    "brakes": "brake-repair", "brake": "brake-repair", "pads": "brake-repair",
    "check engine": "engine-diagnostics", "diagnostic": "engine-diagnostics",
    "scan": "engine-diagnostics",
    "alignment": "wheel-alignment", "tyres": "wheel-alignment", "tires": "wheel-alignment",
    "wash": "body-wash", "cleaning": "body-wash", "detailing": "body-wash",
}


def get_all_services() -> list[dict]:
    """Return every catalog entry with its id."""
    return [{"id": sid, **info} for sid, info in SERVICE_CATALOG.items()]


def match_service(query: str) -> Optional[str]:
    """Map a service id, alias or display name to a catalog id. Returns None if no match.

    Only whole-value matches count, so "brake-pads-premium" is not "brake-repair".
    """
    normalized = " ".join(query.lower().split())
    if normalized in SERVICE_CATALOG:
        return normalized
    if normalized in SERVICE_ALIASES:
        return SERVICE_ALIASES[normalized]
    for sid, info in SERVICE_CATALOG.items():
        if normalized == info["name"].lower():
            return sid
    return None
