"""Tests for event range normalization and overlap checks."""

import pytest

from holdsync.core.models import ValidationError
from holdsync.core.overlap import event_range, is_overlap, ranges_overlap


def timed(event_id, start, end):
    return {'id': event_id, 'start': {'dateTime': start}, 'end': {'dateTime': end}}


def all_day(event_id, start, end):
    return {'id': event_id, 'start': {'date': start}, 'end': {'date': end}}


def test_timed_range_in_milliseconds():
    event = timed('a', '1970-01-01T00:00:01Z', '1970-01-01T00:00:02.500Z')
    assert event_range(event) == (1000, 2500)


def test_offsets_are_normalized_to_utc():
    utc = timed('a', '2026-03-02T09:00:00Z', '2026-03-02T10:00:00Z')
    offset = timed('b', '2026-03-02T10:00:00+01:00', '2026-03-02T11:00:00+01:00')
    assert event_range(utc) == event_range(offset)


def test_all_day_range_starts_at_midnight_utc():
    event = all_day('a', '1970-01-02', '1970-01-03')
    assert event_range(event) == (86_400_000, 172_800_000)


def test_partial_overlap():
    a = timed('a', '2026-03-02T09:00:00Z', '2026-03-02T10:00:00Z')
    b = timed('b', '2026-03-02T09:30:00Z', '2026-03-02T11:00:00Z')
    assert is_overlap(a, b)
    assert is_overlap(b, a)


def test_touching_events_do_not_overlap():
    a = timed('a', '2026-03-02T09:00:00Z', '2026-03-02T10:00:00Z')
    b = timed('b', '2026-03-02T10:00:00Z', '2026-03-02T11:00:00Z')
    assert not is_overlap(a, b)
    assert not is_overlap(b, a)


def test_all_day_event_overlaps_timed_event_that_day():
    day = all_day('a', '2026-03-02', '2026-03-03')
    meeting = timed('b', '2026-03-02T15:00:00Z', '2026-03-02T16:00:00Z')
    assert is_overlap(day, meeting)


def test_ranges_overlap_on_raw_intervals():
    assert ranges_overlap((0, 10), (5, 15))
    assert ranges_overlap((0, 10), (2, 3))
    assert not ranges_overlap((0, 10), (10, 20))


def test_missing_fields_raise_with_event_id():
    with pytest.raises(ValidationError, match='broken'):
        event_range({'id': 'broken', 'start': {'dateTime': '2026-03-02T09:00:00Z'}, 'end': {}})


def test_mixed_timed_and_all_day_boundaries_raise():
    event = {'id': 'mixed', 'start': {'date': '2026-03-02'}, 'end': {'dateTime': '2026-03-02T10:00:00Z'}}
    with pytest.raises(ValidationError, match='mixed'):
        event_range(event)


def test_unparseable_values_raise():
    with pytest.raises(ValidationError, match='bad-time'):
        event_range(timed('bad-time', 'not a time', '2026-03-02T10:00:00Z'))
    with pytest.raises(ValidationError, match='bad-date'):
        event_range(all_day('bad-date', '2026-13-45', '2026-03-03'))
