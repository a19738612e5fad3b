"""Shared fixtures for the maintenance engine tests."""

import os
import threading
from datetime import datetime

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from engine.executor import CommandResult, OperationExecutor
from engine.operations import MaintenanceOperations
from engine.retention import snapshot_name
from engine.scheduler import ScheduleRegistry
from engine.state import AppState


class FakeRunner:
    """Stands in for CommandRunner: records every command, never spawns a process.

    ``handler(cmd)`` may return a CommandResult; otherwise the command succeeds
    with empty output. Subvolume create/delete are mirrored on the real
    filesystem so tests can inspect the destination directory afterwards.
    """

    def __init__(self, handler=None, fail_deletes=()):
        self.calls = []
        self.handler = handler
        self.fail_deletes = set(fail_deletes)
        self._lock = threading.Lock()

    def run(self, program, *args):
        cmd = (program, *args)
        with self._lock:
            self.calls.append(cmd)

        if self.handler:
            result = self.handler(cmd)
            if result is not None:
                return result

        if cmd[:3] == ('btrfs', 'subvolume', 'delete'):
            path = cmd[3]
            if os.path.basename(path) in self.fail_deletes:
                return CommandResult(returncode=1, output=f"ERROR: cannot delete '{path}'")
            os.rmdir(path)
        elif cmd[:3] == ('btrfs', 'subvolume', 'snapshot'):
            os.makedirs(cmd[-1])
        return CommandResult(returncode=0, output='')

    def commands(self, *prefix):
        with self._lock:
            return [c for c in self.calls if c[:len(prefix)] == prefix]

    def terminate_all(self):
        return 0


def make_snapshots(dest, moments):
    """Create snapshot-named directories in dest for each datetime."""
    names = []
    for moment in moments:
        name = snapshot_name(moment)
        os.makedirs(os.path.join(dest, name))
        names.append(name)
    return names


@pytest.fixture
def state(tmp_path):
    return AppState(str(tmp_path / 'state.json'))


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def executor(state, runner):
    return OperationExecutor(state, runner)


@pytest.fixture
def operations(state, executor):
    return MaintenanceOperations(state, executor)


@pytest.fixture
def paused_scheduler():
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.start(paused=True)
    yield scheduler
    if scheduler.running:
        scheduler.shutdown(wait=False)


@pytest.fixture
def registry(state, operations, paused_scheduler):
    return ScheduleRegistry(state, operations, paused_scheduler)


@pytest.fixture
def dest(tmp_path):
    path = tmp_path / 'snapshots'
    path.mkdir()
    return str(path)


@pytest.fixture
def now():
    return datetime(2026, 10, 18, 12, 0)
