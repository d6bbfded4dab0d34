#!/usr/bin/env python3
"""
hold-sync command line

    hold-sync [--config PATH] [--log-level LEVEL] <command> [--mapping NAME | --all] [--dry-run]

Commands: validate-config, reconcile, status, backfill, install-cron, watch.
"""

import argparse
import logging
import os
import signal
import subprocess
import sys
from typing import List, Optional

from holdsync.core.config import (
    DEFAULT_CONFIG_PATH,
    MIN_WATCH_INTERVAL_SECONDS,
    ConfigError,
    dry_run_forced,
    load_config,
    select_mappings,
    validate_config,
    watch_interval_seconds,
)
from holdsync.core.google_calendar import CalendarError, GoogleCalendarClient
from holdsync.core.models import ValidationError
from holdsync.sync.cron import CronError, install_cron
from holdsync.sync.hold_sync_service import HoldSyncService

logger = logging.getLogger('hold-sync-cli')

MAPPING_COMMANDS = ('reconcile', 'status', 'backfill', 'install-cron')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='hold-sync', description='Calendar hold sync')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                        help='Path to JSON config file')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Set logging level')

    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('validate-config', help='Check the config file and report every problem')

    def add_selection(sub):
        sub.add_argument('--mapping', help='Mapping name')
        sub.add_argument('--all', action='store_true', help='Run for all mappings')
        sub.add_argument('--dry-run', action='store_true', help='Plan without changing any calendar')

    for name, help_text in [
        ('reconcile', 'Create, update and delete holds so targets match sources'),
        ('status', 'Show pending changes without applying them'),
        ('backfill', 'Tag untagged hold events that match a source event'),
        ('install-cron', 'Install crontab entries running reconcile'),
    ]:
        add_selection(subparsers.add_parser(name, help=help_text))

    watch_parser = subparsers.add_parser('watch', help='Poll sources and reconcile on change')
    add_selection(watch_parser)
    watch_parser.add_argument('--interval-seconds', type=float,
                              help='Poll interval in seconds (default from config)')
    watch_parser.add_argument('--skip-initial', action='store_true',
                              help='Do not reconcile before the first poll')

    return parser


def _load_valid_config(path: str) -> dict:
    config = load_config(path)
    errors = validate_config(config)
    if errors:
        raise ConfigError("Config invalid:\n" + '\n'.join(errors))
    return config


def _cmd_validate_config(path: str) -> int:
    config = load_config(path)
    errors = validate_config(config)
    if errors:
        for error in errors:
            print(f"ERROR: {error}", file=sys.stderr)
        return 1
    print("✅ Config valid")
    return 0


def _cmd_mappings(args) -> int:
    config = _load_valid_config(args.config)
    mappings = select_mappings(config, args.mapping, args.all)
    dry_run = args.dry_run or dry_run_forced(config)

    if args.command == 'install-cron':
        install_cron(config, os.path.abspath(args.config), [mapping.name for mapping in mappings])
        print(f"✅ Installed cron entries for {len(mappings)} mapping(s)")
        return 0

    service = HoldSyncService(config, GoogleCalendarClient.from_config(config))

    for mapping in mappings:
        if args.command == 'reconcile':
            result = service.execute_plan(mapping, dry_run=dry_run)
            print(f"{mapping.name}: {result.summary()}")
        elif args.command == 'status':
            result = service.status(mapping)
            print(f"{mapping.name}: pendingCreate={result.creates} pendingUpdate={result.updates} "
                  f"pendingDelete={result.deletes} skip={result.skipped} capped={result.capped}")
        elif args.command == 'backfill':
            updated = service.backfill(mapping, dry_run=dry_run)
            print(f"{mapping.name}: backfillUpdated={updated} dryRun={dry_run}")

    return 0


def _cmd_watch(args) -> int:
    config = _load_valid_config(args.config)
    mappings = select_mappings(config, args.mapping, args.all)
    dry_run = args.dry_run or dry_run_forced(config)

    interval = args.interval_seconds
    if interval is None:
        interval = watch_interval_seconds(config)
    if interval < MIN_WATCH_INTERVAL_SECONDS:
        raise ConfigError(f"watch interval must be a number >= {MIN_WATCH_INTERVAL_SECONDS} seconds")

    service = HoldSyncService(config, GoogleCalendarClient.from_config(config))

    # Register signal handlers
    signal.signal(signal.SIGTERM, service.shutdown)
    signal.signal(signal.SIGINT, service.shutdown)

    service.watch(mappings, interval, dry_run=dry_run, skip_initial=args.skip_initial)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        if args.command == 'validate-config':
            return _cmd_validate_config(args.config)
        if args.command == 'watch':
            return _cmd_watch(args)
        if args.command in MAPPING_COMMANDS:
            return _cmd_mappings(args)
    except (ConfigError, CalendarError, CronError, ValidationError, subprocess.CalledProcessError) as e:
        logger.error(f"❌ {args.command} failed: {e}")
        print(f"❌ {e}", file=sys.stderr)
        return 1

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == '__main__':
    sys.exit(main())
