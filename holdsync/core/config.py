#!/usr/bin/env python3
"""
Hold Sync Configuration

File locations come from the environment; everything about what to mirror
lives in a JSON config file:

    {
      "mappings": [{"name": "work-holds", "targetAccount": "me@work.example",
                    "sources": [{"account": "me@home.example", "calendarId": "primary"}]}],
      "hold": {"summary": "Busy"},
      "scheduling": {"watchIntervalSeconds": 60},
      "safety": {"maxChangesPerRun": 50, "excludeIfSummaryMatches": ["^OOO"]},
      "google": {"credentialsFile": "~/.config/holdsync/service-account-key.json"}
    }

See config.example.json for every supported key.
"""

import json
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from holdsync.core.models import AllDayMode, OverlapPolicy

# Base configuration directory - where credentials and config are stored
CONFIG_DIR = os.path.expanduser(os.getenv('HOLDSYNC_CONFIG_DIR', '~/.config/holdsync'))
DEFAULT_CONFIG_PATH = os.getenv('HOLDSYNC_CONFIG', os.path.join(CONFIG_DIR, 'config.json'))

# Google Calendar API Settings
GOOGLE_CREDENTIALS_FILE = os.path.expanduser(
    os.getenv('HOLDSYNC_CREDENTIALS_FILE', os.path.join(CONFIG_DIR, 'service-account-key.json'))
)
GOOGLE_SCOPES = ['https://www.googleapis.com/auth/calendar']

# Defaults applied when a key is absent
DEFAULT_TARGET_CALENDAR = 'primary'
DEFAULT_LOOKAHEAD_DAYS = 30
DEFAULT_HOLD_SUMMARY = 'Busy'
DEFAULT_MAX_CHANGES_PER_RUN = 100
DEFAULT_WATCH_INTERVAL_SECONDS = 20
MIN_WATCH_INTERVAL_SECONDS = 5
DEFAULT_RECONCILE_CRON = '15 2 * * *'
DEFAULT_API_CALL_DELAY = 0.1
DEFAULT_MAX_RETRIES = 3
MAX_PATTERN_LENGTH = 512


class ConfigError(RuntimeError):
    """Raised when the config file is missing, unreadable or inconsistent."""


@dataclass(frozen=True)
class SourceCalendar:
    account: str
    calendar_id: str


@dataclass(frozen=True)
class Mapping:
    """One target calendar and the source calendars mirrored onto it."""

    name: str
    target_account: str
    target_calendar_id: str
    sources: Tuple[SourceCalendar, ...]
    lookahead_days: int
    all_day_mode: AllDayMode
    overlap_policy: OverlapPolicy


def load_config(path: str) -> Dict[str, Any]:
    """Load the JSON config file."""
    path = os.path.expanduser(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except OSError as e:
        raise ConfigError(f"Could not read config file {path}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}")

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return config


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_mapping(index: int, mapping: Any, names: set) -> List[str]:
    errors = []
    prefix = f"mappings[{index}]"

    if not isinstance(mapping, dict):
        return [f"{prefix} must be an object"]

    name = mapping.get('name')
    if not name:
        errors.append(f"{prefix}.name is required")
    elif not isinstance(name, str):
        errors.append(f"{prefix}.name must be a string")
    elif name in names:
        errors.append(f"{prefix}.name must be unique: {name}")
    else:
        names.add(name)

    if not mapping.get('targetAccount'):
        errors.append(f"{prefix}.targetAccount is required")

    sources = mapping.get('sources')
    if not isinstance(sources, list) or not sources:
        errors.append(f"{prefix}.sources must be a non-empty array")
    else:
        for source_index, source in enumerate(sources):
            source = source if isinstance(source, dict) else {}
            if not source.get('account'):
                errors.append(f"{prefix}.sources[{source_index}].account is required")
            if not source.get('calendarId'):
                errors.append(f"{prefix}.sources[{source_index}].calendarId is required")

    lookahead = mapping.get('lookaheadDays')
    if lookahead is not None and (not _is_int(lookahead) or lookahead < 1):
        errors.append(f"{prefix}.lookaheadDays must be >= 1")

    all_day_mode = mapping.get('allDayMode')
    if all_day_mode is not None and all_day_mode not in [m.value for m in AllDayMode]:
        errors.append(f"{prefix}.allDayMode must be ignore|mirror")

    overlap_policy = mapping.get('overlapPolicy')
    if overlap_policy is not None and overlap_policy not in [p.value for p in OverlapPolicy]:
        errors.append(f"{prefix}.overlapPolicy must be skip|allow")

    return errors


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Check a loaded config and return every problem found.

    An empty list means the config is usable.
    """
    errors: List[str] = []

    mappings = config.get('mappings')
    if not isinstance(mappings, list) or not mappings:
        errors.append("config.mappings must be a non-empty array")
        return errors

    names: set = set()
    for index, mapping in enumerate(mappings):
        errors.extend(_validate_mapping(index, mapping, names))

    sections = {}
    for section in ('hold', 'safety', 'scheduling', 'google'):
        value = config.get(section)
        if value is None:
            sections[section] = {}
        elif isinstance(value, dict):
            sections[section] = value
        else:
            errors.append(f"{section} must be an object")

    if 'hold' in sections:
        errors.extend(_validate_hold(sections['hold']))
    if 'safety' in sections:
        errors.extend(_validate_safety(sections['safety']))
    if 'scheduling' in sections:
        errors.extend(_validate_scheduling(sections['scheduling']))
    if 'google' in sections:
        errors.extend(_validate_google(sections['google']))

    return errors


def _validate_hold(hold: Dict[str, Any]) -> List[str]:
    errors = []
    if hold.get('summary') is not None and not isinstance(hold['summary'], str):
        errors.append("hold.summary must be a string")
    if hold.get('visibility', 'private') != 'private':
        errors.append("hold.visibility must be private")
    if hold.get('transparency', 'busy') != 'busy':
        errors.append("hold.transparency must be busy")
    return errors


def _validate_safety(safety: Dict[str, Any]) -> List[str]:
    errors = []
    max_changes = safety.get('maxChangesPerRun')
    if max_changes is not None and (not _is_int(max_changes) or max_changes < 1):
        errors.append("safety.maxChangesPerRun must be >= 1")

    patterns = safety.get('excludeIfSummaryMatches')
    if patterns is not None and not isinstance(patterns, list):
        errors.append("safety.excludeIfSummaryMatches must be an array")
        patterns = None

    for index, pattern in enumerate(patterns or []):
        if not isinstance(pattern, str):
            errors.append(f"safety.excludeIfSummaryMatches[{index}] must be a string")
            continue
        if len(pattern) > MAX_PATTERN_LENGTH:
            errors.append(f"safety.excludeIfSummaryMatches[{index}] exceeds max length ({MAX_PATTERN_LENGTH})")
            continue
        try:
            re.compile(pattern)
        except re.error as e:
            errors.append(f"safety.excludeIfSummaryMatches[{index}] is invalid regex: {e}")

    prefixes = safety.get('excludeIfDescriptionPrefix')
    if prefixes is not None and not isinstance(prefixes, list):
        errors.append("safety.excludeIfDescriptionPrefix must be an array")
        prefixes = None

    for index, prefix in enumerate(prefixes or []):
        if not isinstance(prefix, str):
            errors.append(f"safety.excludeIfDescriptionPrefix[{index}] must be a string")
    return errors


def _validate_scheduling(scheduling: Dict[str, Any]) -> List[str]:
    errors = []
    interval = scheduling.get('watchIntervalSeconds')
    if interval is not None and (not _is_number(interval) or interval < MIN_WATCH_INTERVAL_SECONDS):
        errors.append(f"scheduling.watchIntervalSeconds must be >= {MIN_WATCH_INTERVAL_SECONDS}")

    drift_days = scheduling.get('driftWindowDays')
    if drift_days is not None and (not _is_int(drift_days) or drift_days < 1):
        errors.append("scheduling.driftWindowDays must be >= 1")

    for key in ('reconcileCron', 'daytimeCron'):
        if scheduling.get(key) is not None and not isinstance(scheduling[key], str):
            errors.append(f"scheduling.{key} must be a string")
    return errors


def _validate_google(google: Dict[str, Any]) -> List[str]:
    errors = []
    if google.get('credentialsFile') is not None and not isinstance(google['credentialsFile'], str):
        errors.append("google.credentialsFile must be a string")

    delay = google.get('apiCallDelay')
    if delay is not None and (not _is_number(delay) or delay < 0):
        errors.append("google.apiCallDelay must be >= 0")

    retries = google.get('maxRetries')
    if retries is not None and (not _is_int(retries) or retries < 1):
        errors.append("google.maxRetries must be >= 1")
    return errors


def normalize_mapping(mapping: Dict[str, Any]) -> Mapping:
    """Apply defaults to a raw (already validated) mapping."""
    return Mapping(
        name=mapping['name'],
        target_account=mapping['targetAccount'],
        target_calendar_id=mapping.get('targetCalendarId') or DEFAULT_TARGET_CALENDAR,
        sources=tuple(
            SourceCalendar(account=source['account'], calendar_id=source['calendarId'])
            for source in mapping['sources']
        ),
        lookahead_days=mapping.get('lookaheadDays', DEFAULT_LOOKAHEAD_DAYS),
        all_day_mode=AllDayMode(mapping.get('allDayMode', AllDayMode.IGNORE.value)),
        overlap_policy=OverlapPolicy(mapping.get('overlapPolicy', OverlapPolicy.SKIP.value)),
    )


def select_mappings(config: Dict[str, Any], mapping_name: Optional[str], select_all: bool) -> List[Mapping]:
    """Pick the mappings a command should run against."""
    normalized = [normalize_mapping(mapping) for mapping in config['mappings']]

    if select_all:
        return normalized
    if not mapping_name:
        raise ConfigError("Select one mapping with --mapping <name> or use --all")

    for mapping in normalized:
        if mapping.name == mapping_name:
            return [mapping]
    raise ConfigError(f"Unknown mapping: {mapping_name}")


def hold_summary(config: Dict[str, Any]) -> str:
    return (config.get('hold') or {}).get('summary') or DEFAULT_HOLD_SUMMARY


def max_changes_per_run(config: Dict[str, Any]) -> int:
    return (config.get('safety') or {}).get('maxChangesPerRun', DEFAULT_MAX_CHANGES_PER_RUN)


def dry_run_forced(config: Dict[str, Any]) -> bool:
    return bool((config.get('safety') or {}).get('dryRun'))


def watch_interval_seconds(config: Dict[str, Any]) -> float:
    return (config.get('scheduling') or {}).get('watchIntervalSeconds', DEFAULT_WATCH_INTERVAL_SECONDS)


def credentials_file(config: Dict[str, Any]) -> str:
    configured = (config.get('google') or {}).get('credentialsFile')
    return os.path.expanduser(configured) if configured else GOOGLE_CREDENTIALS_FILE
