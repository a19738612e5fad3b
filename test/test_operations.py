"""Tests for the maintenance operations and their scheduled triggers."""

import os
from datetime import datetime, timedelta

import pytest

from engine.executor import CommandResult, OperationExecutor
from engine.models import Config, RetentionPolicy
from engine.operations import MaintenanceOperations, ValidationError
from conftest import FakeRunner, make_snapshots


def _configure(state, **values):
    state.config = Config.from_dict(values)


def _finish(executor, entry_id):
    assert executor.wait(entry_id, timeout=5)


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

@pytest.mark.parametrize('call', [
    lambda ops: ops.scrub(),
    lambda ops: ops.balance('status'),
    lambda ops: ops.defrag(),
    lambda ops: ops.compsize(),
    lambda ops: ops.trigger_snapshot(),
    lambda ops: ops.trigger_purge_all(),
])
def test_missing_paths_reject_before_launch(state, runner, operations, call):
    with pytest.raises(ValidationError):
        call(operations)

    assert state.get_history() == []
    assert runner.calls == []


def test_scheduled_triggers_without_target_are_noops(state, runner, operations):
    assert operations.scheduled_scrub() is None
    assert operations.scheduled_balance() is None
    assert operations.perform_snapshot() is False

    assert runner.calls == []
    assert state.get_history() == []


# ----------------------------------------------------------------------
# Scrub / balance / defrag / compsize
# ----------------------------------------------------------------------

@pytest.mark.parametrize('action, op_type, args', [
    ('start', 'SCRUB START', ('scrub', 'start', '-B', '/mnt/pool')),
    ('status', 'SCRUB CHECK', ('scrub', 'status', '/mnt/pool')),
    ('cancel', 'SCRUB STOP', ('scrub', 'cancel', '/mnt/pool')),
    ('bogus', 'SCRUB START', ('scrub', 'start', '-B', '/mnt/pool')),
])
def test_scrub_actions(state, runner, executor, operations, action, op_type, args):
    _configure(state, target_drive='/mnt/pool')

    entry_id = operations.scrub(action)
    _finish(executor, entry_id)

    assert runner.calls == [('btrfs', *args)]
    assert state.get_entry(entry_id).type == op_type


@pytest.mark.parametrize('action, op_type, args', [
    ('start', 'BALANCE START', ('balance', 'start', '--full-balance', '/mnt/pool')),
    ('status', 'BALANCE CHECK', ('balance', 'status', '/mnt/pool')),
    ('cancel', 'BALANCE STOP', ('balance', 'cancel', '/mnt/pool')),
])
def test_balance_actions(state, runner, executor, operations, action, op_type, args):
    _configure(state, target_drive='/mnt/pool')

    entry_id = operations.balance(action)
    _finish(executor, entry_id)

    assert runner.calls == [('btrfs', *args)]
    assert state.get_entry(entry_id).type == op_type


def test_defrag_and_compsize(state, runner, executor, operations):
    _configure(state, target_drive='/mnt/pool')

    _finish(executor, operations.defrag())
    _finish(executor, operations.compsize())

    assert runner.calls == [
        ('btrfs', 'filesystem', 'defragment', '-r', '/mnt/pool'),
        ('compsize', '/mnt/pool'),
    ]
    assert [e.type for e in state.get_history()] == ['COMPSIZE', 'DEFRAG']


def test_scheduled_scrub_and_balance(state, runner, executor, operations):
    _configure(state, target_drive='/mnt/pool')

    _finish(executor, operations.scheduled_scrub())
    _finish(executor, operations.scheduled_balance())

    assert [e.type for e in state.get_history()] == ['AUTO BALANCE', 'AUTO SCRUB']
    assert runner.calls[0] == ('btrfs', 'scrub', 'start', '-B', '/mnt/pool')


def test_cancel_is_a_new_tracked_operation(state):
    _configure(state, target_drive='/mnt/pool')
    runner = FakeRunner(lambda cmd: CommandResult(1, 'ERROR: scrub is running: Operation in progress')
                        if cmd[2] == 'start' else None)
    ops = MaintenanceOperations(state, OperationExecutor(state, runner))

    start_id = ops.scrub('start')
    ops.executor.wait(start_id, timeout=5)
    cancel_id = ops.scrub('cancel')
    ops.executor.wait(cancel_id, timeout=5)

    assert state.get_entry(start_id).status == 'Warning'
    assert state.get_entry(cancel_id).status == 'Success'
    assert len(state.get_history()) == 2


def test_trigger_for_maps_schedule_names(operations):
    assert operations.trigger_for('snapshot') == operations.scheduled_snapshot
    assert operations.trigger_for('scrub') == operations.scheduled_scrub
    assert operations.trigger_for('balance') == operations.scheduled_balance


# ----------------------------------------------------------------------
# Snapshot + retention
# ----------------------------------------------------------------------

def test_snapshot_success_runs_retention(state, runner, operations, tmp_path):
    dest = str(tmp_path / 'snaps')
    _configure(state, snapshot_source='/mnt/pool/@data', snapshot_dest=dest)
    state.config.retention = RetentionPolicy(enabled=True, mode='count', value=5)
    now = datetime.now()
    older = make_snapshots(dest, [now - timedelta(hours=i) for i in range(1, 7)])

    assert operations.perform_snapshot() is True

    history = state.get_history()
    assert [e.type for e in history] == ['RETENTION', 'SNAPSHOT']
    assert history[0].output == 'Cleaned up 2 old snapshots'
    assert history[1].status == 'Success'
    assert history[1].path.startswith('/mnt/pool/@data ➡️ ')
    remaining = set(os.listdir(dest))
    assert len(remaining) == 5
    assert not remaining & set(older[-2:])


def test_snapshot_creates_destination(state, runner, operations, tmp_path):
    dest = str(tmp_path / 'new' / 'snaps')
    _configure(state, snapshot_source='/mnt/pool/@data', snapshot_dest=dest)

    assert operations.perform_snapshot() is True

    cmd = runner.commands('btrfs', 'subvolume', 'snapshot')[0]
    assert cmd[:5] == ('btrfs', 'subvolume', 'snapshot', '-r', '/mnt/pool/@data')
    assert os.path.dirname(cmd[5]) == dest
    assert os.path.isdir(dest)


def test_failed_snapshot_skips_retention(state, tmp_path):
    dest = str(tmp_path / 'snaps')
    runner = FakeRunner(lambda cmd: CommandResult(1, 'ERROR: not a subvolume')
                        if cmd[2] == 'snapshot' else None)
    ops = MaintenanceOperations(state, OperationExecutor(state, runner))
    _configure(state, snapshot_source='/mnt/pool/data', snapshot_dest=dest)
    state.config.retention = RetentionPolicy(enabled=True, mode='count', value=0)
    make_snapshots(dest, [datetime.now() - timedelta(days=1)])

    assert ops.perform_snapshot() is False

    history = state.get_history()
    assert len(history) == 1
    assert history[0].status == 'Failed'
    assert history[0].output == 'exit status 1 : ERROR: not a subvolume'
    assert runner.commands('btrfs', 'subvolume', 'delete') == []


def test_trigger_snapshot_runs_in_background(state, runner, operations, tmp_path):
    _configure(state, snapshot_source='/src', snapshot_dest=str(tmp_path / 'snaps'))

    thread = operations.trigger_snapshot()
    thread.join(5)

    assert not thread.is_alive()
    assert state.get_history()[0].type == 'SNAPSHOT'


def test_trigger_purge_all(state, runner, operations, dest):
    _configure(state, snapshot_dest=dest)
    make_snapshots(dest, [datetime.now() - timedelta(days=i) for i in range(3)])
    os.makedirs(os.path.join(dest, 'not-a-date'))

    operations.trigger_purge_all().join(5)

    assert os.listdir(dest) == ['not-a-date']
    assert state.get_history()[0].output == 'Deleted 3 snapshots'
