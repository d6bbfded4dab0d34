"""Tests for the managed crontab block."""

import subprocess
from unittest.mock import patch

import pytest

from holdsync.sync.cron import (
    MANAGED_END,
    MANAGED_START,
    CronError,
    build_cron_block,
    install_cron,
    merge_crontab,
)


def make_config(**scheduling):
    return {
        'mappings': [{'name': 'work-holds'}, {'name': 'side-holds'}],
        'scheduling': scheduling,
    }


def test_block_has_one_line_per_mapping():
    block = build_cron_block(make_config(), '/etc/holdsync.json', ['work-holds', 'side-holds'],
                             executable='hold-sync')

    assert block.splitlines() == [
        MANAGED_START,
        '15 2 * * * hold-sync --config /etc/holdsync.json reconcile --mapping work-holds',
        '15 2 * * * hold-sync --config /etc/holdsync.json reconcile --mapping side-holds',
        MANAGED_END,
    ]


def test_block_adds_daytime_schedule_and_skips_unknown_mappings():
    config = make_config(reconcileCron='0 3 * * *', daytimeCron='*/30 8-18 * * 1-5')

    block = build_cron_block(config, '/c.json', ['work-holds', 'missing'], executable='hold-sync')

    assert block.splitlines()[1:-1] == [
        '0 3 * * * hold-sync --config /c.json reconcile --mapping work-holds',
        '*/30 8-18 * * 1-5 hold-sync --config /c.json reconcile --mapping work-holds',
    ]


def test_merge_keeps_foreign_lines_and_replaces_old_block():
    current = '\n'.join([
        'MAILTO=me@example.com',
        '0 * * * * backup.sh',
        MANAGED_START,
        '15 2 * * * hold-sync --config /old.json reconcile --mapping gone',
        MANAGED_END,
        '5 4 * * * /usr/bin/hold-sync --config /x.json reconcile --mapping stray',
    ])
    block = f"{MANAGED_START}\nnew line\n{MANAGED_END}"

    merged = merge_crontab(current, block)

    assert merged == (
        'MAILTO=me@example.com\n'
        '0 * * * * backup.sh\n'
        f'{MANAGED_START}\nnew line\n{MANAGED_END}\n'
    )


def test_merge_into_empty_crontab():
    block = f"{MANAGED_START}\n{MANAGED_END}"
    assert merge_crontab('', block) == block + '\n'


def test_install_cron_writes_merged_crontab():
    existing = subprocess.CompletedProcess(['crontab', '-l'], 0, stdout='0 * * * * backup.sh\n', stderr='')
    written = subprocess.CompletedProcess(['crontab', '-'], 0)

    with patch('holdsync.sync.cron.subprocess.run', side_effect=[existing, written]) as run:
        result = install_cron(make_config(), '/etc/holdsync.json', ['work-holds'])

    install_call = run.call_args_list[1]
    assert install_call.args[0] == ['crontab', '-']
    assert install_call.kwargs['input'] == result
    assert install_call.kwargs['check'] is True
    assert result.startswith('0 * * * * backup.sh\n' + MANAGED_START)
    assert 'reconcile --mapping work-holds' in result


def test_install_cron_without_existing_crontab():
    missing = subprocess.CompletedProcess(['crontab', '-l'], 1, stdout='', stderr='no crontab for user')
    written = subprocess.CompletedProcess(['crontab', '-'], 0)

    with patch('holdsync.sync.cron.subprocess.run', side_effect=[missing, written]):
        result = install_cron(make_config(), '/etc/holdsync.json', ['work-holds'])

    assert result.startswith(MANAGED_START)


def test_install_cron_without_crontab_binary_raises_cron_error():
    with patch('holdsync.sync.cron.subprocess.run', side_effect=FileNotFoundError(2, 'No such file', 'crontab')):
        with pytest.raises(CronError, match='Could not run crontab'):
            install_cron(make_config(), '/etc/holdsync.json', ['work-holds'])
