"""
Configuration and history models for the BTRFS maintenance engine.

The JSON layout matches the state file written by earlier releases, so an
existing /data/state.json keeps loading after an upgrade.
"""

from dataclasses import dataclass, field, asdict

# Schedule kinds
SCHEDULE_INTERVAL = 'interval'
SCHEDULE_CRON = 'cron'
_INTERVAL_ALIASES = (SCHEDULE_INTERVAL, 'every_x')

# Retention modes
RETENTION_COUNT = 'count'
RETENTION_AGE = 'age'
_AGE_ALIASES = (RETENTION_AGE, 'time')

# History statuses
STATUS_RUNNING = 'Running'
STATUS_SUCCESS = 'Success'
STATUS_WARNING = 'Warning'
STATUS_FAILED = 'Failed'
TERMINAL_STATUSES = (STATUS_SUCCESS, STATUS_WARNING, STATUS_FAILED)

MAX_HISTORY = 100

SCHEDULE_NAMES = ('snapshot', 'scrub', 'balance')


def _as_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _as_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class ScheduleDescriptor:
    """When a recurring task fires: every N units, or a cron expression.

    Only 'interval' (or legacy 'every_x') is an interval; any other type,
    including a missing one, means ``value`` is a cron expression.
    """
    enabled: bool = False
    type: str = SCHEDULE_CRON
    value: str = ''
    unit: str = 'minutes'

    @property
    def is_interval(self):
        return self.type in _INTERVAL_ALIASES

    @classmethod
    def from_dict(cls, data, default_unit='minutes'):
        data = data or {}
        value = data.get('value', '')
        return cls(
            enabled=_as_bool(data.get('enabled', False)),
            type=str(data.get('type') or SCHEDULE_CRON),
            value='' if value is None else str(value).strip(),
            unit=str(data.get('unit') or default_unit),
        )

    def to_dict(self):
        return asdict(self)


@dataclass
class RetentionPolicy:
    """Which snapshots get pruned: keep the N newest, or drop older than N units."""
    enabled: bool = False
    mode: str = RETENTION_COUNT
    value: int = 5
    unit: str = 'days'

    @property
    def is_age(self):
        return self.mode in _AGE_ALIASES

    @property
    def is_count(self):
        return self.mode == RETENTION_COUNT

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            enabled=_as_bool(data.get('enabled', False)),
            mode=str(data.get('mode') or RETENTION_COUNT),
            value=_as_int(data.get('value'), 5),
            unit=str(data.get('unit') or 'days'),
        )

    def to_dict(self):
        return asdict(self)


@dataclass
class Config:
    target_drive: str = ''
    snapshot_source: str = ''
    snapshot_dest: str = ''
    snapshot_sched: ScheduleDescriptor = field(default_factory=ScheduleDescriptor)
    scrub_sched: ScheduleDescriptor = field(default_factory=ScheduleDescriptor)
    balance_sched: ScheduleDescriptor = field(default_factory=ScheduleDescriptor)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)

    def schedule_for(self, name):
        """Return the descriptor for 'snapshot', 'scrub' or 'balance'."""
        return getattr(self, f'{name}_sched')

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            target_drive=str(data.get('target_drive') or '').strip(),
            snapshot_source=str(data.get('snapshot_source') or '').strip(),
            snapshot_dest=str(data.get('snapshot_dest') or '').strip(),
            snapshot_sched=ScheduleDescriptor.from_dict(data.get('snapshot_sched')),
            scrub_sched=ScheduleDescriptor.from_dict(data.get('scrub_sched')),
            balance_sched=ScheduleDescriptor.from_dict(data.get('balance_sched')),
            retention=RetentionPolicy.from_dict(data.get('retention')),
        )

    def to_dict(self):
        return asdict(self)


@dataclass
class HistoryEntry:
    """One recorded attempt of a maintenance operation."""
    id: int
    type: str
    emoji: str
    path: str
    timestamp: str
    status: str = STATUS_RUNNING
    output: str = ''
    duration: str = ''

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=_as_int(data.get('id'), 0),
            type=str(data.get('type', '')),
            emoji=str(data.get('emoji', '')),
            path=str(data.get('path', '')),
            timestamp=str(data.get('timestamp', '')),
            status=str(data.get('status', '')),
            output=str(data.get('output', '')),
            duration=str(data.get('duration', '')),
        )

    def to_dict(self):
        return asdict(self)
