#!/usr/bin/env python3
"""
Hold Sync Data Types

Value types shared by the metadata codec, the overlap detector and the
reconcile planner. Calendar events themselves stay plain Google Calendar
event dicts; only the records this tool owns are modelled here.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple, Union

CalendarEvent = Dict[str, Any]


class ValidationError(ValueError):
    """Raised when an event or planner input cannot be reasoned about."""


class OverlapPolicy(str, Enum):
    SKIP = 'skip'
    ALLOW = 'allow'


class AllDayMode(str, Enum):
    IGNORE = 'ignore'
    MIRROR = 'mirror'


@dataclass(frozen=True)
class SourceRef:
    """Provenance of a hold: which source event occurrence it stands in for."""

    src_account: str
    src_calendar: str
    event_id: str
    start: str
    end: str
    title: str

    def to_wire(self) -> Dict[str, str]:
        """Field names and order of the SYNCV1 payload."""
        return {
            'srcAccount': self.src_account,
            'srcCalendar': self.src_calendar,
            'eventId': self.event_id,
            'start': self.start,
            'end': self.end,
            'title': self.title,
        }


@dataclass(frozen=True)
class DesiredHold:
    source: SourceRef
    event: CalendarEvent


@dataclass(frozen=True)
class CreateHold:
    desired: DesiredHold
    kind: str = field(default='create', init=False)


@dataclass(frozen=True)
class UpdateHold:
    existing: CalendarEvent
    desired: DesiredHold
    kind: str = field(default='update', init=False)


@dataclass(frozen=True)
class DeleteHold:
    existing: CalendarEvent
    kind: str = field(default='delete', init=False)


@dataclass(frozen=True)
class SkipOverlap:
    desired: DesiredHold
    blocking_event_id: str
    kind: str = field(default='skip_overlap', init=False)


ReconcileAction = Union[CreateHold, UpdateHold, DeleteHold, SkipOverlap]

MUTATING_ACTIONS = (CreateHold, UpdateHold, DeleteHold)


@dataclass(frozen=True)
class ReconcilePlan:
    actions: Tuple[ReconcileAction, ...]
    desired_count: int
    existing_managed_count: int
    capped: bool

    @property
    def mutation_count(self) -> int:
        return sum(1 for action in self.actions if isinstance(action, MUTATING_ACTIONS))

    def counts(self) -> Dict[str, int]:
        """Number of actions per kind, zero-filled."""
        counts = {'create': 0, 'update': 0, 'delete': 0, 'skip_overlap': 0}
        for action in self.actions:
            counts[action.kind] += 1
        return counts
