"""
Maintenance operations: snapshot with retention, scrub, balance, defragment,
compression report and purge.

On-demand entry points validate the configured paths first and raise
ValidationError before anything is launched. Scheduled triggers skip quietly
when a path is missing. After launch, every outcome ends up in the history.
"""

import os
import logging
import threading

from engine.models import STATUS_FAILED, STATUS_SUCCESS
from engine.retention import enforce_retention, purge_all_snapshots, snapshot_name

logger = logging.getLogger(__name__)

ACTION_START = 'start'
ACTION_STATUS = 'status'
ACTION_CANCEL = 'cancel'


class ValidationError(Exception):
    """A required path is not configured; the operation was not launched."""


# (type, emoji, subcommand args before the target path) per action
_SCRUB_COMMANDS = {
    ACTION_STATUS: ('SCRUB CHECK', '🩺', ('scrub', 'status')),
    ACTION_CANCEL: ('SCRUB STOP', '🛑', ('scrub', 'cancel')),
    ACTION_START: ('SCRUB START', '🧹', ('scrub', 'start', '-B')),
}

_BALANCE_COMMANDS = {
    ACTION_STATUS: ('BALANCE CHECK', '⚖️', ('balance', 'status')),
    ACTION_CANCEL: ('BALANCE STOP', '🛑', ('balance', 'cancel')),
    ACTION_START: ('BALANCE START', '⚖️', ('balance', 'start', '--full-balance')),
}


class MaintenanceOperations:

    def __init__(self, state, executor):
        self.state = state
        self.executor = executor
        self.runner = executor.runner

    def _target(self):
        with self.state.lock:
            return self.state.config.target_drive

    def _require_target(self):
        target = self._target()
        if not target:
            raise ValidationError('Target drive not set')
        return target

    def _snapshot_paths(self):
        with self.state.lock:
            return self.state.config.snapshot_source, self.state.config.snapshot_dest

    def _spawn(self, target, name):
        t = threading.Thread(target=target, name=name, daemon=True)
        t.start()
        return t

    # =========================================================================
    # SNAPSHOT + RETENTION
    # =========================================================================

    def perform_snapshot(self):
        """
        Take a read-only snapshot of the source into the destination, then
        apply retention if it succeeded. Blocks the calling thread.

        Returns:
            True if the snapshot was created.
        """
        src, dest = self._snapshot_paths()
        if not src or not dest:
            logger.info("Snapshot skipped: source or destination not set")
            return False

        try:
            os.makedirs(dest, mode=0o755, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create snapshot destination {dest}: {e}")

        name = snapshot_name()
        full_dest = os.path.join(dest.rstrip('/') or '/', name)
        visual_path = f"{src} ➡️ {name}"

        result = self.runner.run('btrfs', 'subvolume', 'snapshot', '-r', src, full_dest)
        if result.ok:
            status, details = STATUS_SUCCESS, result.output
            logger.info(f"Snapshot created: {full_dest}")
        else:
            error = result.error or f'exit status {result.returncode}'
            status, details = STATUS_FAILED, f"{error} : {result.output}"
            logger.error(f"Snapshot of {src} failed: {error}")

        self.state.log_history('SNAPSHOT', '📸', visual_path, status, details)

        if status == STATUS_SUCCESS:
            enforce_retention(self.state, self.runner, dest)
        return status == STATUS_SUCCESS

    def _snapshot_job(self):
        try:
            self.perform_snapshot()
        except Exception:
            logger.exception("Snapshot flow crashed")

    def trigger_snapshot(self):
        """On-demand snapshot: validate, then run the flow on its own thread."""
        src, dest = self._snapshot_paths()
        if not src or not dest:
            raise ValidationError('Snapshot source and destination must be set')
        return self._spawn(self._snapshot_job, 'snapshot')

    # =========================================================================
    # PURGE
    # =========================================================================

    def purge_all(self):
        """Delete every snapshot in the destination. Blocks the calling thread."""
        _, dest = self._snapshot_paths()
        if not dest:
            logger.info("Purge skipped: destination not set")
            return 0
        return purge_all_snapshots(self.state, self.runner, dest)

    def _purge_job(self):
        try:
            self.purge_all()
        except Exception:
            logger.exception("Purge crashed")

    def trigger_purge_all(self):
        _, dest = self._snapshot_paths()
        if not dest:
            raise ValidationError('Snapshot destination not set')
        return self._spawn(self._purge_job, 'purge-all')

    # =========================================================================
    # SCRUB / BALANCE / DEFRAG / COMPSIZE
    # =========================================================================

    def scrub(self, action=ACTION_START):
        target = self._require_target()
        op_type, emoji, args = _SCRUB_COMMANDS.get(action, _SCRUB_COMMANDS[ACTION_START])
        return self.executor.launch(op_type, emoji, target, 'btrfs', *args, target)

    def balance(self, action=ACTION_START):
        target = self._require_target()
        op_type, emoji, args = _BALANCE_COMMANDS.get(action, _BALANCE_COMMANDS[ACTION_START])
        return self.executor.launch(op_type, emoji, target, 'btrfs', *args, target)

    def defrag(self):
        target = self._require_target()
        return self.executor.launch('DEFRAG', '📦', target, 'btrfs', 'filesystem', 'defragment', '-r', target)

    def compsize(self):
        target = self._require_target()
        return self.executor.launch('COMPSIZE', '📊', target, 'compsize', target)

    # =========================================================================
    # SCHEDULED TRIGGERS
    # =========================================================================

    def scheduled_snapshot(self):
        self._snapshot_job()

    def scheduled_scrub(self):
        target = self._target()
        if not target:
            logger.info("Scheduled scrub skipped: target drive not set")
            return None
        return self.executor.launch('AUTO SCRUB', '🧹', target, 'btrfs', 'scrub', 'start', '-B', target)

    def scheduled_balance(self):
        target = self._target()
        if not target:
            logger.info("Scheduled balance skipped: target drive not set")
            return None
        return self.executor.launch('AUTO BALANCE', '⚖️', target,
                                    'btrfs', 'balance', 'start', '--full-balance', target)

    def trigger_for(self, schedule_name):
        """Return the function a schedule named 'snapshot', 'scrub' or 'balance' fires."""
        return {
            'snapshot': self.scheduled_snapshot,
            'scrub': self.scheduled_scrub,
            'balance': self.scheduled_balance,
        }[schedule_name]
