"""
Runs external maintenance commands (btrfs, compsize) and records their outcome.

``OperationExecutor.launch`` returns as soon as a Running history entry exists;
the command itself runs on a daemon thread that owns nothing but the entry id.
"""

import time
import logging
import threading
import subprocess
from dataclasses import dataclass
from typing import Optional

from engine.models import STATUS_FAILED, STATUS_SUCCESS, STATUS_WARNING

logger = logging.getLogger(__name__)

# btrfs prints one of these and exits 1 when a scrub/balance is already active
IN_PROGRESS_MARKERS = ('Operation in progress', 'inprogress')
IN_PROGRESS_NOTE = "\n\n⚠️ NOTE: A scrub/balance is already running in the background."


@dataclass
class CommandResult:
    returncode: int
    output: str = ''
    error: Optional[str] = None

    @property
    def ok(self):
        return self.error is None and self.returncode == 0


def format_duration(seconds):
    """Render elapsed seconds rounded to the millisecond: 0s, 150ms, 1.234s, 2m3.5s, 1h0m2s."""
    millis = int(round(seconds * 1000))
    if millis <= 0:
        return '0s'
    if millis < 1000:
        return f'{millis}ms'

    hours, rest = divmod(millis, 3600 * 1000)
    minutes, rest = divmod(rest, 60 * 1000)
    secs = f'{rest / 1000:.3f}'.rstrip('0').rstrip('.')

    if hours:
        return f'{hours}h{minutes}m{secs}s'
    if minutes:
        return f'{minutes}m{secs}s'
    return f'{secs}s'


def classify_result(result):
    """Map a finished command to (status, output) for its history entry."""
    output = result.output or ''
    if result.ok:
        return STATUS_SUCCESS, output

    if any(marker in output for marker in IN_PROGRESS_MARKERS):
        return STATUS_WARNING, output + IN_PROGRESS_NOTE

    detail = result.error or f'exit status {result.returncode}'
    return STATUS_FAILED, output + f'\nError: {detail}'


class CommandRunner:
    """Runs a program to completion, capturing stdout and stderr together.

    Live child processes are tracked so they can be terminated when the
    service stops. There is no timeout: a scrub may legitimately run for hours.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._processes = set()

    def run(self, program, *args):
        cmd = [program, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                    text=True, encoding='utf-8', errors='replace')
        except OSError as e:
            logger.error(f"Could not start {program}: {e}")
            return CommandResult(returncode=-1, output='', error=str(e))

        with self._lock:
            self._processes.add(proc)
        try:
            output, _ = proc.communicate()
        finally:
            with self._lock:
                self._processes.discard(proc)

        return CommandResult(returncode=proc.returncode, output=output or '')

    def running_count(self):
        with self._lock:
            return len(self._processes)

    def terminate_all(self):
        """Send SIGTERM to every child still running. Returns how many were signalled."""
        with self._lock:
            processes = list(self._processes)
        for proc in processes:
            try:
                proc.terminate()
            except OSError as e:
                logger.warning(f"Could not terminate pid {proc.pid}: {e}")
        if processes:
            logger.info(f"Terminated {len(processes)} running maintenance command(s)")
        return len(processes)


class OperationExecutor:

    def __init__(self, state, runner=None):
        self.state = state
        self.runner = runner or CommandRunner()
        self._threads = {}
        self._threads_lock = threading.Lock()

    def launch(self, op_type, emoji, path, program, *args):
        """
        Start a maintenance command in the background.

        Args:
            op_type: history type tag, e.g. 'SCRUB START'
            emoji: glyph shown next to the entry
            path: path or description the operation acts on
            program: executable to run
            *args: its arguments

        Returns:
            The correlation id of the Running history entry.
        """
        started = time.monotonic()
        command_line = ' '.join([program, *args])
        entry_id = self.state.start_entry(op_type, emoji, path, output=f'Command: {command_line}')

        t = threading.Thread(target=self._run, args=(entry_id, started, program, args),
                             name=f'op-{entry_id}', daemon=True)
        with self._threads_lock:
            self._threads[entry_id] = t
        t.start()

        logger.info(f"{op_type} launched on {path} (id {entry_id})")
        return entry_id

    def _run(self, entry_id, started, program, args):
        try:
            try:
                result = self.runner.run(program, *args)
            except Exception as e:
                logger.exception(f"Command {program} crashed")
                result = CommandResult(returncode=-1, output='', error=str(e))

            status, output = classify_result(result)
            duration = format_duration(time.monotonic() - started)
            self.state.finish_entry(entry_id, status, output, duration)
            logger.info(f"Operation {entry_id} finished: {status} in {duration}")
        finally:
            with self._threads_lock:
                self._threads.pop(entry_id, None)

    def wait(self, entry_id, timeout=None):
        """Block until the command behind entry_id has finished. True if it has."""
        with self._threads_lock:
            t = self._threads.get(entry_id)
        if t is None:
            return True
        t.join(timeout)
        return not t.is_alive()
