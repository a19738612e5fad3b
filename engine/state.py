"""
Shared application state: configuration plus the bounded operation history.

One AppState instance is created per process and handed to every component.
All reads and writes of the configuration and the history go through
``state.lock``; the JSON state file is rewritten under that same lock right
after every change, so a flush is never interleaved with a mutation.
"""

import os
import json
import time
import logging
import threading
from datetime import datetime

from engine.models import (Config, HistoryEntry, MAX_HISTORY, STATUS_RUNNING,
                           TERMINAL_STATUSES)

logger = logging.getLogger(__name__)

DISPLAY_TIME_FORMAT = '%d-%m-%Y %H:%M %Z'


def display_timestamp(moment=None):
    """Format a moment (default: now) the way history entries show it."""
    moment = moment or datetime.now().astimezone()
    return moment.strftime(DISPLAY_TIME_FORMAT)


class AppState:

    def __init__(self, state_file=None, config=None):
        self.state_file = state_file
        self.config = config or Config()
        self.history = []
        self.lock = threading.Lock()
        self._last_id = 0

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def load(self):
        """Load config and history from the state file.

        A missing or unreadable file leaves the defaults in place.
        """
        if not self.state_file or not os.path.exists(self.state_file):
            logger.info(f"No state file at {self.state_file}, starting with defaults")
            return False

        try:
            with open(self.state_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            config = Config.from_dict(data.get('config'))
            history = [HistoryEntry.from_dict(e) for e in (data.get('history') or [])]
        except (OSError, ValueError, AttributeError, TypeError) as e:
            logger.warning(f"Could not load state from {self.state_file}: {e}")
            return False

        with self.lock:
            self.config = config
            self.history = history[:MAX_HISTORY]
            if self.history:
                self._last_id = max(e.id for e in self.history)
        logger.info(f"Loaded state: {len(self.history)} history entries")
        return True

    def _save_locked(self):
        """Write the aggregate to disk. Caller must hold the lock.

        Failures are logged and ignored; in-memory state stays authoritative.
        """
        if not self.state_file:
            return False

        data = {
            'config': self.config.to_dict(),
            'history': [e.to_dict() for e in self.history],
        }
        tmp = f"{self.state_file}.tmp"
        try:
            directory = os.path.dirname(self.state_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp, self.state_file)
            return True
        except OSError as e:
            logger.warning(f"Could not save state to {self.state_file}: {e}")
            return False

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    def get_config(self):
        with self.lock:
            return self.config

    def replace_config(self, config):
        """Swap in a whole new configuration and flush it.

        The caller is responsible for rebuilding the schedules afterwards.
        """
        with self.lock:
            self.config = config
            self._save_locked()

    # =========================================================================
    # HISTORY
    # =========================================================================

    def _next_id_locked(self):
        # Nanosecond timestamps, bumped when two launches land on the same tick
        entry_id = max(time.time_ns(), self._last_id + 1)
        self._last_id = entry_id
        return entry_id

    def _insert_locked(self, entry):
        self.history.insert(0, entry)
        del self.history[MAX_HISTORY:]

    def start_entry(self, op_type, emoji, path, output='', started=None):
        """Insert a Running entry at the head of the history and return its id."""
        with self.lock:
            entry = HistoryEntry(
                id=self._next_id_locked(),
                type=op_type,
                emoji=emoji,
                path=path,
                timestamp=display_timestamp(started),
                status=STATUS_RUNNING,
                output=output,
            )
            self._insert_locked(entry)
            self._save_locked()
            return entry.id

    def finish_entry(self, entry_id, status, output, duration):
        """Move a Running entry to its terminal status.

        Returns False when the entry is gone (cleared or truncated away) or
        already terminal; the result is then dropped.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")

        with self.lock:
            for entry in self.history:
                if entry.id != entry_id:
                    continue
                if entry.status != STATUS_RUNNING:
                    logger.warning(f"History entry {entry_id} already finished as {entry.status}")
                    return False
                entry.status = status
                entry.output = output
                entry.duration = duration
                del self.history[MAX_HISTORY:]
                self._save_locked()
                return True

        logger.info(f"History entry {entry_id} no longer present, dropping its result ({status})")
        return False

    def log_history(self, op_type, emoji, path, status, output):
        """Append an already-finished entry (synchronous operations)."""
        with self.lock:
            entry = HistoryEntry(
                id=self._next_id_locked(),
                type=op_type,
                emoji=emoji,
                path=path,
                timestamp=display_timestamp(),
                status=status,
                output=output,
                duration='0s',
            )
            self._insert_locked(entry)
            self._save_locked()
            return entry.id

    def get_history(self):
        """Return a copy of the history, newest first."""
        with self.lock:
            return [HistoryEntry(**e.to_dict()) for e in self.history]

    def get_entry(self, entry_id):
        with self.lock:
            for entry in self.history:
                if entry.id == entry_id:
                    return HistoryEntry(**entry.to_dict())
        return None

    def clear_history(self):
        with self.lock:
            self.history = []
            self._save_locked()
