#!/usr/bin/env python3
"""
Hold Sync Service

Drives the reconcile planner against real calendars:
- Builds desired holds from every source calendar of a mapping
- Lists the target calendar, plans, and applies actions one at a time
- Backfills tags onto hold-like events that lost (or never had) them
- Watches sources and only re-plans a mapping when its content signature changes

Actions are applied sequentially, each backend call finishing before the next
starts. A stop request is honoured between watch cycles, never mid-plan.
"""

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytz

from holdsync.core.config import (
    Mapping,
    hold_summary,
    max_changes_per_run,
)
from holdsync.core.metadata import decode_source_ref, encode_source_ref, hold_key
from holdsync.core.models import (
    AllDayMode,
    CalendarEvent,
    CreateHold,
    DeleteHold,
    DesiredHold,
    ReconcilePlan,
    SkipOverlap,
    SourceRef,
    UpdateHold,
)
from holdsync.core.reconcile import plan_reconcile

NO_REMINDERS = {'useDefault': False, 'overrides': []}


@dataclass
class SyncResult:
    """Counts for one plan application."""
    creates: int = 0
    updates: int = 0
    deletes: int = 0
    skipped: int = 0
    capped: bool = False
    dry_run: bool = False

    def summary(self) -> str:
        return (f"create={self.creates} update={self.updates} delete={self.deletes} "
                f"skip={self.skipped} capped={self.capped} dryRun={self.dry_run}")


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def is_all_day(event: CalendarEvent) -> bool:
    return bool(event.get('start', {}).get('date') and event.get('end', {}).get('date'))


def source_instant(boundary: Dict[str, Any]) -> str:
    """Normalized ISO instant for a start/end block; all-day dates become midnight UTC."""
    if boundary.get('dateTime'):
        return boundary['dateTime']
    return f"{boundary.get('date')}T00:00:00.000Z"


def excluded_by_safety(event: CalendarEvent, config: Dict[str, Any]) -> bool:
    """Check the safety exclusion rules (summary regex, description prefix)."""
    safety = config.get('safety') or {}
    summary = event.get('summary') or ''
    description = event.get('description') or ''

    for pattern in safety.get('excludeIfSummaryMatches') or []:
        if re.search(pattern, summary):
            return True

    return any(description.startswith(prefix) for prefix in safety.get('excludeIfDescriptionPrefix') or [])


def desired_hold_from_source(account: str, calendar_id: str, event: CalendarEvent, summary: str) -> DesiredHold:
    source = SourceRef(
        src_account=account,
        src_calendar=calendar_id,
        event_id=event['id'],
        start=source_instant(event['start']),
        end=source_instant(event['end']),
        title=event.get('summary') or '',
    )

    return DesiredHold(
        source=source,
        event={
            'id': f"hold-{event['id']}",
            'summary': summary,
            'visibility': 'private',
            'transparency': 'busy',
            'description': encode_source_ref(source),
            'start': dict(event['start']),
            'end': dict(event['end']),
            'reminders': dict(NO_REMINDERS),
        }
    )


def event_fingerprint(event: CalendarEvent) -> str:
    start = event.get('start', {})
    end = event.get('end', {})
    return '|'.join([
        event.get('id', ''),
        event.get('status', ''),
        event.get('updated', ''),
        event.get('etag', ''),
        start.get('dateTime') or start.get('date') or '',
        end.get('dateTime') or end.get('date') or '',
        event.get('summary', ''),
    ])


def _range_key(event: CalendarEvent) -> str:
    start = event.get('start', {})
    end = event.get('end', {})
    return f"{start.get('dateTime') or start.get('date')}|{end.get('dateTime') or end.get('date')}"


class HoldSyncService:
    """Mirror busy time from source calendars into holds on target calendars."""

    def __init__(self, config: Dict[str, Any], client, clock: Callable[[], datetime] = utc_now,
                 sleep: Callable[[float], None] = time.sleep):
        self.logger = logging.getLogger('hold-sync-service')
        self.config = config
        self.client = client
        self.clock = clock
        self._sleep = sleep

        self.hold_summary = hold_summary(config)
        self.max_changes_per_run = max_changes_per_run(config)

        self.running = False
        self.cycle_count = 0

    # ------------------------------------------------------------------
    # Desired state
    # ------------------------------------------------------------------

    def _window(self, days: int) -> Tuple[str, str]:
        now = self.clock()
        return now.isoformat(), (now + timedelta(days=days)).isoformat()

    def _source_events(self, mapping: Mapping, window_start: str,
                       window_end: str) -> List[Tuple[str, str, CalendarEvent]]:
        """Source events that should be mirrored, tagged with their account and calendar."""
        collected = []
        for source in mapping.sources:
            events = self.client.list_events(source.account, source.calendar_id, window_start, window_end)
            kept = 0
            for event in events:
                if event.get('status') == 'cancelled':
                    continue
                if mapping.all_day_mode is AllDayMode.IGNORE and is_all_day(event):
                    continue
                if excluded_by_safety(event, self.config):
                    continue
                collected.append((source.account, source.calendar_id, event))
                kept += 1
            self.logger.debug(f"  {source.account}/{source.calendar_id}: {kept} of {len(events)} events mirrored")
        return collected

    def _holds_from_sources(self, mapping: Mapping,
                            sources: List[Tuple[str, str, CalendarEvent]]) -> List[DesiredHold]:
        holds = []
        seen_keys = set()
        for account, calendar_id, event in sources:
            hold = desired_hold_from_source(account, calendar_id, event, self.hold_summary)
            key = hold_key(hold.source)
            if key in seen_keys:
                self.logger.warning(f"⚠️  {mapping.name}: duplicate source occurrence {key}, keeping the last one")
            seen_keys.add(key)
            holds.append(hold)
        return holds

    def collect_desired_holds(self, mapping: Mapping, window_start: str, window_end: str) -> List[DesiredHold]:
        return self._holds_from_sources(mapping, self._source_events(mapping, window_start, window_end))

    def source_snapshot(self, mapping: Mapping) -> Tuple[str, List[DesiredHold]]:
        """Desired holds for a mapping plus a signature of the source content behind them."""
        window_start, window_end = self._window(mapping.lookahead_days)
        sources = self._source_events(mapping, window_start, window_end)

        fingerprints = sorted(
            f"{account}|{calendar_id}|{event_fingerprint(event)}"
            for account, calendar_id, event in sources
        )
        signature = hashlib.md5('\n'.join(fingerprints).encode()).hexdigest()

        return signature, self._holds_from_sources(mapping, sources)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def plan(self, mapping: Mapping, desired_holds: Optional[List[DesiredHold]] = None) -> ReconcilePlan:
        window_start, window_end = self._window(mapping.lookahead_days)
        if desired_holds is None:
            desired_holds = self.collect_desired_holds(mapping, window_start, window_end)

        target_events = self.client.list_events(
            mapping.target_account, mapping.target_calendar_id, window_start, window_end
        )
        return plan_reconcile(
            desired_holds=desired_holds,
            target_events=target_events,
            overlap_policy=mapping.overlap_policy,
            max_changes_per_run=self.max_changes_per_run,
        )

    def apply_plan(self, mapping: Mapping, plan: ReconcilePlan, dry_run: bool) -> SyncResult:
        """Apply actions in plan order, one backend call at a time."""
        result = SyncResult(capped=plan.capped, dry_run=dry_run)
        account = mapping.target_account
        calendar_id = mapping.target_calendar_id

        for action in plan.actions:
            if isinstance(action, SkipOverlap):
                result.skipped += 1
                self.logger.debug(f"  Skipped {action.desired.source.event_id}: "
                                  f"overlaps {action.blocking_event_id}")
            elif isinstance(action, CreateHold):
                result.creates += 1
                if not dry_run:
                    self.client.create_event(account, calendar_id, action.desired.event)
            elif isinstance(action, UpdateHold):
                result.updates += 1
                if not dry_run:
                    self.client.update_event(account, calendar_id, action.existing['id'], action.desired.event)
            elif isinstance(action, DeleteHold):
                result.deletes += 1
                if not dry_run:
                    self.client.delete_event(account, calendar_id, action.existing['id'])
            else:
                raise TypeError(f"Unhandled reconcile action: {action!r}")

        if plan.capped:
            self.logger.warning(f"⚠️  {mapping.name}: change budget of {self.max_changes_per_run} reached, "
                                f"remaining changes wait for the next run")
        return result

    def execute_plan(self, mapping: Mapping, dry_run: bool = False,
                     desired_holds: Optional[List[DesiredHold]] = None) -> SyncResult:
        plan = self.plan(mapping, desired_holds)
        self.logger.info(f"🔄 {mapping.name}: {len(plan.actions)} actions planned "
                         f"(desired={plan.desired_count}, managed={plan.existing_managed_count})")
        return self.apply_plan(mapping, plan, dry_run)

    def status(self, mapping: Mapping) -> SyncResult:
        return self.execute_plan(mapping, dry_run=True)

    # ------------------------------------------------------------------
    # Drift backfill
    # ------------------------------------------------------------------

    def _looks_like_hold(self, event: CalendarEvent) -> bool:
        if decode_source_ref(event.get('description')):
            return False
        if (event.get('summary') or '') != self.hold_summary:
            return False
        if excluded_by_safety(event, self.config):
            return False
        if event.get('visibility', 'default') != 'private':
            return False
        if event.get('transparency', 'busy') != 'busy':
            return False
        return not (event.get('reminders') or {}).get('overrides')

    def backfill(self, mapping: Mapping, dry_run: bool = False) -> int:
        """
        Tag untagged holds so the planner manages them again.

        A target event is adopted only when it looks exactly like a hold and its
        time range matches a single source event. Returns the number adopted.
        """
        days = (self.config.get('scheduling') or {}).get('driftWindowDays') or mapping.lookahead_days
        window_start, window_end = self._window(days)

        sources_by_range: Dict[str, List[Tuple[str, str, CalendarEvent]]] = {}
        for source in self._source_events(mapping, window_start, window_end):
            sources_by_range.setdefault(_range_key(source[2]), []).append(source)

        target_events = self.client.list_events(
            mapping.target_account, mapping.target_calendar_id, window_start, window_end
        )

        updated = 0
        for target in target_events:
            if not self._looks_like_hold(target):
                continue

            candidates = sources_by_range.get(_range_key(target), [])
            if len(candidates) != 1:
                continue

            account, calendar_id, source_event = candidates[0]
            hold = desired_hold_from_source(account, calendar_id, source_event, self.hold_summary)
            adopted = dict(target)
            adopted.update({
                'description': hold.event['description'],
                'visibility': 'private',
                'transparency': 'busy',
                'reminders': dict(NO_REMINDERS),
            })

            updated += 1
            self.logger.info(f"  Adopting {target['id']} as hold for {source_event['id']}")
            if not dry_run:
                self.client.update_event(mapping.target_account, mapping.target_calendar_id, target['id'], adopted)

        return updated

    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------

    def poll_cycle(self, mappings: List[Mapping], signatures: Dict[str, str], dry_run: bool) -> int:
        """Re-plan every mapping whose sources changed. Returns how many were applied."""
        self.cycle_count += 1
        applied = 0

        for mapping in mappings:
            try:
                signature, holds = self.source_snapshot(mapping)
                if signatures.get(mapping.name) == signature:
                    continue

                result = self.execute_plan(mapping, dry_run=dry_run, desired_holds=holds)
                if result.capped:
                    # Leftover changes need another pass even if sources stay put
                    signatures.pop(mapping.name, None)
                else:
                    signatures[mapping.name] = signature
                applied += 1
                self.logger.info(f"✅ {mapping.name}: changed {result.summary()}")
            except Exception as e:
                # Keep watching the other mappings; this one is retried next cycle
                self.logger.error(f"❌ {mapping.name}: watch poll failed: {e}")

        return applied

    def _wait(self, seconds: float) -> bool:
        """Sleep in short steps so a stop request ends the wait early. False once stopped."""
        remaining = seconds
        while self.running and remaining > 0:
            step = min(1.0, remaining)
            self._sleep(step)
            remaining -= step
        return self.running

    def watch(self, mappings: List[Mapping], interval_seconds: float,
              dry_run: bool = False, skip_initial: bool = False) -> None:
        """Poll until stop() is called. The initial snapshot and apply are not guarded."""
        self.running = True

        signatures: Dict[str, str] = {}
        initial: Dict[str, List[DesiredHold]] = {}
        for mapping in mappings:
            signatures[mapping.name], initial[mapping.name] = self.source_snapshot(mapping)

        if not skip_initial:
            for mapping in mappings:
                result = self.execute_plan(mapping, dry_run=dry_run, desired_holds=initial[mapping.name])
                if result.capped:
                    del signatures[mapping.name]
                self.logger.info(f"✅ {mapping.name}: initial {result.summary()}")

        self.logger.info(f"🚀 Watch started: mappings={len(mappings)} interval={interval_seconds}s dryRun={dry_run}")

        while self._wait(interval_seconds):
            self.poll_cycle(mappings, signatures, dry_run)

        self.logger.info("👋 Watch stopped")

    def stop(self) -> None:
        self.running = False

    def shutdown(self, signum, frame):
        """Graceful shutdown handler."""
        self.logger.info(f"Received signal {signum}, shutting down...")
        self.stop()
