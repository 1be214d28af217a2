"""Enrollment-age qualification.

A group member qualifies for the delayed group once its device has been
enrolled for at least the threshold. The reference time is always passed
in, so evaluation is deterministic and never touches the system clock.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from enum import Enum

from .models import GroupMember
from .registry import DeviceRegistryIndex

# Graph emits up to 7 fractional digits; datetime accepts at most 6
_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")


class Qualification(str, Enum):
    """Outcome of evaluating one member."""

    QUALIFIED = "qualified"
    NOT_QUALIFIED = "not_qualified"
    UNRESOLVED = "unresolved"  # no external id, or no matching device record
    INVALID = "invalid"  # record found, enrollment timestamp missing or unusable


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a Graph ISO-8601 timestamp into an aware UTC datetime.

    Returns None for missing or malformed values and for the year-1
    placeholder Intune reports when the enrollment time is unknown.
    Naive timestamps are taken as UTC.
    """
    if not value or not value.strip():
        return None

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_PATTERN.sub(r"\1", text)

    try:
        parsed = datetime.fromisoformat(text)
        if parsed.year <= 1:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        # Offsets at either end of the calendar overflow on conversion
        return parsed.astimezone(UTC)
    except (ValueError, OverflowError):
        return None


def evaluate(
    member: GroupMember,
    index: DeviceRegistryIndex,
    now: datetime,
    threshold: timedelta,
) -> Qualification:
    """Decide whether a member's device has been enrolled long enough.

    The boundary is inclusive: a device enrolled exactly ``threshold`` ago
    qualifies.
    """
    device = index.lookup(member.external_id)
    if device is None:
        return Qualification.UNRESOLVED

    enrolled_at = parse_timestamp(device.enrolled_at)
    if enrolled_at is None:
        return Qualification.INVALID

    if now - enrolled_at >= threshold:
        return Qualification.QUALIFIED
    return Qualification.NOT_QUALIFIED
