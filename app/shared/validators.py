"""Shared validation utilities"""

import math
import re
from typing import Optional

VALID_DECISIONS = ("accept", "reject")


def validate_latitude(value: Optional[float]) -> Optional[float]:
    """
    Validate a WGS84 latitude.

    Raises:
        ValueError: If the value is not a finite number within [-90, 90]
    """
    if value is None:
        return value
    if not math.isfinite(value) or not -90.0 <= value <= 90.0:
        raise ValueError("Latitude must be between -90 and 90")
    return float(value)


def validate_longitude(value: Optional[float]) -> Optional[float]:
    """
    Validate a WGS84 longitude.

    Raises:
        ValueError: If the value is not a finite number within [-180, 180]
    """
    if value is None:
        return value
    if not math.isfinite(value) or not -180.0 <= value <= 180.0:
        raise ValueError("Longitude must be between -180 and 180")
    return float(value)


def validate_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to digits with an optional leading +.

    Raises:
        ValueError: If fewer than 10 or more than 15 digits remain
    """
    if not phone:
        return phone

    digits = re.sub(r"\D", "", phone)
    if not 10 <= len(digits) <= 15:
        raise ValueError("Phone number must have between 10 and 15 digits")

    return f"+{digits}" if phone.strip().startswith("+") else digits


def validate_decision(decision: Optional[str]) -> str:
    """Normalize a candidate decision to 'accept' or 'reject'"""
    normalized = (decision or "").strip().lower()
    if normalized not in VALID_DECISIONS:
        raise ValueError("Decision must be 'accept' or 'reject'")
    return normalized
