"""
Shared utility functions.
"""

import logging
import re
from datetime import date, datetime, timezone
from typing import Optional

from liveops.entities import DateRange, EntityType
from liveops.errors import ValidationError

logger = logging.getLogger(__name__)

# Platform-native ids: numeric on most networks, word-ish in fixtures and NewsBreak exports.
ENTITY_ID_RE = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")


def parse_entity_id(value: Optional[str], field_name: str = "entity_id", platform: Optional[str] = None) -> str:
    """
    Validate a platform entity id, raising ValidationError (400) on malformed
    input instead of letting it reach a platform API.
    """
    value = (value or "").strip()
    if not ENTITY_ID_RE.match(value):
        raise ValidationError(f"Invalid id for '{field_name}': {value!r}", platform=platform, entity_id=value or None)
    return value


def parse_entity_type(value: str) -> EntityType:
    try:
        return EntityType((value or "").lower())
    except ValueError:
        raise ValidationError(f"Invalid entity type {value!r}; expected campaign, adset or ad")


def parse_date(value: Optional[str], field_name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid date for '{field_name}': {value!r} (expected YYYY-MM-DD)")


def parse_date_range(start: Optional[str], end: Optional[str]) -> Optional[DateRange]:
    """Both bounds absent = platform default window. One bound alone covers that single day."""
    start_date = parse_date(start, "start")
    end_date = parse_date(end, "end")
    if start_date is None and end_date is None:
        return None
    try:
        return DateRange(start_date or end_date, end_date or start_date)
    except ValueError as e:
        raise ValidationError(str(e))


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Replaces the deprecated ``datetime.utcnow()``.
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
