#!/usr/bin/env python3
"""
Hold Reconcile Planner

Diffs the holds that should exist against the events already on a target
calendar and returns the actions that converge one to the other:

- Managed events (description carries a SYNCV1 tag) are grouped by hold key;
  the lowest event id in a group is kept, the rest are duplicates
- Missing holds are created unless an unmanaged event is in the way and the
  overlap policy is 'skip'
- Drifted holds are updated, duplicates and stale holds are deleted
- At most max_changes_per_run mutations are planned; the rest wait for the
  next run and the plan is flagged as capped

Keys are visited in sorted order so the same inputs always give the same plan,
whatever order the calendar API returned events in.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Tuple, Union

from holdsync.core.metadata import decode_source_ref, hold_key
from holdsync.core.models import (
    CalendarEvent,
    CreateHold,
    DeleteHold,
    DesiredHold,
    OverlapPolicy,
    ReconcileAction,
    ReconcilePlan,
    SkipOverlap,
    UpdateHold,
    ValidationError,
)
from holdsync.core.overlap import event_range, ranges_overlap

COMPARED_FIELDS = ('summary', 'description', 'visibility', 'transparency')
COMPARED_TIME_FIELDS = ('dateTime', 'date')


def is_equivalent(existing: CalendarEvent, desired: CalendarEvent) -> bool:
    """True when an existing hold already matches the desired one."""
    for name in COMPARED_FIELDS:
        if existing.get(name) != desired.get(name):
            return False

    for boundary in ('start', 'end'):
        current = existing.get(boundary) or {}
        wanted = desired.get(boundary) or {}
        for name in COMPARED_TIME_FIELDS:
            if current.get(name) != wanted.get(name):
                return False

    return True


def split_managed(target_events: Iterable[CalendarEvent]) -> Tuple[Dict[str, List[CalendarEvent]], List[CalendarEvent]]:
    """Group tagged events by hold key (sorted by id) and collect the rest."""
    managed_by_key: Dict[str, List[CalendarEvent]] = defaultdict(list)
    unmanaged: List[CalendarEvent] = []

    for event in sorted(target_events, key=lambda e: e.get('id', '')):
        source = decode_source_ref(event.get('description'))
        if source is None:
            unmanaged.append(event)
        else:
            managed_by_key[hold_key(source)].append(event)

    return dict(managed_by_key), unmanaged


def _check_inputs(overlap_policy, max_changes_per_run) -> OverlapPolicy:
    try:
        policy = OverlapPolicy(overlap_policy)
    except ValueError:
        raise ValidationError(f"Unknown overlap policy: {overlap_policy!r}")

    if isinstance(max_changes_per_run, bool) or not isinstance(max_changes_per_run, int):
        raise ValidationError(f"max_changes_per_run must be an integer, got {max_changes_per_run!r}")
    if max_changes_per_run < 1:
        raise ValidationError("max_changes_per_run must be >= 1")

    return policy


def plan_reconcile(
    desired_holds: List[DesiredHold],
    target_events: List[CalendarEvent],
    overlap_policy: Union[OverlapPolicy, str],
    max_changes_per_run: int,
) -> ReconcilePlan:
    """
    Plan the create/update/delete actions for one target calendar.

    Raises ValidationError for unusable policy inputs or any event without a
    complete timed or all-day range; nothing is planned in that case.
    """
    policy = _check_inputs(overlap_policy, max_changes_per_run)

    # Fail on malformed ranges before any decision is made
    for event in target_events:
        event_range(event)
    for desired in desired_holds:
        event_range(desired.event)

    managed_by_key, unmanaged = split_managed(target_events)
    unmanaged_ranges = [(event.get('id', ''), event_range(event)) for event in unmanaged]

    desired_by_key: Dict[str, DesiredHold] = {}
    for desired in desired_holds:
        desired_by_key[hold_key(desired.source)] = desired

    actions: List[ReconcileAction] = []
    changes = 0
    capped = False

    def schedule(action: ReconcileAction) -> None:
        nonlocal changes, capped
        if changes >= max_changes_per_run:
            capped = True
            return
        actions.append(action)
        changes += 1

    for key in sorted(desired_by_key):
        desired = desired_by_key[key]
        existing = managed_by_key.get(key, [])

        if not existing:
            if policy is OverlapPolicy.SKIP:
                wanted = event_range(desired.event)
                blocker = next(
                    (event_id for event_id, span in unmanaged_ranges if ranges_overlap(span, wanted)),
                    None,
                )
                if blocker is not None:
                    actions.append(SkipOverlap(desired=desired, blocking_event_id=blocker))
                    continue
            schedule(CreateHold(desired=desired))
            continue

        primary, duplicates = existing[0], existing[1:]
        if not is_equivalent(primary, desired.event):
            schedule(UpdateHold(existing=primary, desired=desired))
        for duplicate in duplicates:
            schedule(DeleteHold(existing=duplicate))

    for key in sorted(managed_by_key):
        if key in desired_by_key:
            continue
        for stale in managed_by_key[key]:
            schedule(DeleteHold(existing=stale))

    return ReconcilePlan(
        actions=tuple(actions),
        desired_count=len(desired_holds),
        existing_managed_count=sum(len(bucket) for bucket in managed_by_key.values()),
        capped=capped,
    )
