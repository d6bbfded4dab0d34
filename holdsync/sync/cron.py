#!/usr/bin/env python3
"""
Crontab installer for scheduled reconcile runs.

Owns a single block in the user's crontab, delimited by marker comments, and
rewrites it in place on every install.
"""

import logging
import subprocess
import sys
from typing import Any, Dict, List, Optional

from holdsync.core.config import DEFAULT_RECONCILE_CRON

MANAGED_START = '# BEGIN hold-sync managed'
MANAGED_END = '# END hold-sync managed'

logger = logging.getLogger('hold-sync-cron')


class CronError(RuntimeError):
    """Raised when the crontab command cannot be run."""


def build_cron_block(config: Dict[str, Any], config_path: str, mapping_names: List[str],
                     executable: Optional[str] = None) -> str:
    """Cron lines running `reconcile` for each mapping, wrapped in the managed markers."""
    executable = executable or f"{sys.executable} -m holdsync.cli"
    scheduling = config.get('scheduling') or {}
    reconcile_cron = scheduling.get('reconcileCron') or DEFAULT_RECONCILE_CRON
    daytime_cron = scheduling.get('daytimeCron')
    known = {mapping.get('name') for mapping in config.get('mappings', [])}

    lines = [MANAGED_START]
    for name in mapping_names:
        if name not in known:
            continue
        command = f"{executable} --config {config_path} reconcile --mapping {name}"
        lines.append(f"{reconcile_cron} {command}")
        if daytime_cron:
            lines.append(f"{daytime_cron} {command}")
    lines.append(MANAGED_END)
    return '\n'.join(lines)


def _is_stray_reconcile(line: str) -> bool:
    return ' reconcile --mapping ' in line and ('hold-sync' in line or 'holdsync' in line)


def merge_crontab(current: str, block: str) -> str:
    """Replace any previous managed block (and stray reconcile lines) with `block`."""
    kept = []
    inside = False
    for line in current.splitlines():
        if MANAGED_START in line:
            inside = True
            continue
        if MANAGED_END in line:
            inside = False
            continue
        if inside or _is_stray_reconcile(line):
            continue
        kept.append(line)

    existing = '\n'.join(kept).strip()
    return '\n'.join(part for part in [existing, block] if part) + '\n'


def install_cron(config: Dict[str, Any], config_path: str, mapping_names: List[str]) -> str:
    """Write the managed block into the current user's crontab. Returns the new crontab."""
    try:
        result = subprocess.run(['crontab', '-l'], capture_output=True, text=True)
        # crontab -l exits non-zero when the user has no crontab yet
        current = result.stdout if result.returncode == 0 else ''

        updated = merge_crontab(current, build_cron_block(config, config_path, mapping_names))
        subprocess.run(['crontab', '-'], input=updated, text=True, check=True)
    except OSError as e:
        logger.error(f"❌ Could not run crontab: {e}")
        raise CronError(f"Could not run crontab: {e}") from e
    logger.info(f"✅ Installed cron entries for {len(mapping_names)} mapping(s)")
    return updated
