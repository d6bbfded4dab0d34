#!/usr/bin/env python3
"""
Overlap Detection

Normalizes timed and all-day events to half-open millisecond intervals
[start, end) and compares them. All-day dates stand in as midnight UTC.
"""

from datetime import datetime, timedelta
from typing import Tuple

import pytz

from holdsync.core.models import CalendarEvent, ValidationError

EPOCH = pytz.UTC.localize(datetime(1970, 1, 1))


def _to_millis(moment: datetime) -> int:
    return (moment - EPOCH) // timedelta(milliseconds=1)


def _parse_instant(value: str, event_id: str) -> int:
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"Event {event_id} has an invalid date value: {value!r}")

    if parsed.tzinfo is None:
        parsed = pytz.UTC.localize(parsed)
    return _to_millis(parsed)


def _parse_date(value: str, event_id: str) -> int:
    try:
        parsed = datetime.strptime(value, '%Y-%m-%d')
    except (TypeError, ValueError):
        raise ValidationError(f"Event {event_id} has an invalid date value: {value!r}")
    return _to_millis(pytz.UTC.localize(parsed))


def event_range(event: CalendarEvent) -> Tuple[int, int]:
    """Return (start_ms, end_ms) for an event, or raise ValidationError."""
    event_id = event.get('id', '<no id>')
    start = event.get('start') or {}
    end = event.get('end') or {}

    if start.get('dateTime') and end.get('dateTime'):
        return (
            _parse_instant(start['dateTime'], event_id),
            _parse_instant(end['dateTime'], event_id),
        )

    if start.get('date') and end.get('date'):
        return (
            _parse_date(start['date'], event_id),
            _parse_date(end['date'], event_id),
        )

    raise ValidationError(f"Event {event_id} is missing supported start/end fields")


def ranges_overlap(a: Tuple[int, int], b: Tuple[int, int]) -> bool:
    # Touching intervals (a ends where b starts) do not overlap
    return a[0] < b[1] and b[0] < a[1]


def is_overlap(a: CalendarEvent, b: CalendarEvent) -> bool:
    return ranges_overlap(event_range(a), event_range(b))
