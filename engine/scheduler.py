"""
Schedule registry for automatic snapshot, scrub and balance runs.

Uses APScheduler BackgroundScheduler running in-process. Schedules are
described as ``@every <duration>`` or as a 5-field cron expression read as
crontab reads it: Sunday is day 0, and when both day-of-month and day-of-week
are restricted a day matches if either does. The registry is torn down and
rebuilt from scratch whenever the configuration is replaced.
"""

import re
import logging

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from engine.models import SCHEDULE_NAMES, STATUS_FAILED

logger = logging.getLogger(__name__)

MISFIRE_GRACE_SECONDS = 300

_UNIT_SUFFIXES = {'minutes': 'm', 'hours': 'h', 'days': 'd'}

_DESCRIPTORS = {
    '@yearly': '0 0 1 1 *',
    '@annually': '0 0 1 1 *',
    '@monthly': '0 0 1 * *',
    '@weekly': '0 0 * * 0',
    '@daily': '0 0 * * *',
    '@midnight': '0 0 * * *',
    '@hourly': '0 * * * *',
}

_DURATION_UNITS = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600, 'd': 86400}
_DURATION_TOKEN = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h|d)')

# crontab numbering, 7 is Sunday again
_CRON_DAY_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun')
_NUMERIC_DOW = re.compile(r'\*|\d+(?:-\d+)?')


def build_timer_spec(descriptor):
    """Turn a ScheduleDescriptor into '@every <n><m|h|d>' or the raw cron expression."""
    if descriptor.is_interval:
        suffix = _UNIT_SUFFIXES.get(descriptor.unit, 'm')
        return f'@every {descriptor.value}{suffix}'
    return descriptor.value


def parse_duration(text):
    """Parse '90m', '1h30m', '2d' or '1.5h' into seconds."""
    text = text.strip()
    pos = 0
    total = 0.0
    for match in _DURATION_TOKEN.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if not text or pos != len(text):
        raise ValueError(f"Invalid duration: '{text}'")
    if total <= 0:
        raise ValueError(f"Duration must be positive: '{text}'")
    return total


def _translate_day_of_week(field):
    # APScheduler 3 counts Monday as 0, so numeric crontab days become names
    days = []
    for item in field.split(','):
        expr, _, step = item.partition('/')
        if not _NUMERIC_DOW.fullmatch(expr):
            days.append(item)
            continue
        if expr == '*' and not step:
            return '*'
        if expr == '*':
            first, last = 0, 6
        elif '-' in expr:
            first, last = (int(v) for v in expr.split('-'))
        else:
            first = last = int(expr)
            if step:
                last = 6
        if step and not step.isdigit():
            raise ValueError(f"Invalid day-of-week step: '{item}'")
        step_n = int(step) if step else 1
        if last > 7 or first > last or step_n <= 0:
            raise ValueError(f"Invalid day-of-week: '{item}'")
        days.extend(_CRON_DAY_NAMES[d] for d in range(first, last + 1, step_n))
    return ','.join(dict.fromkeys(days))


def parse_timer_spec(spec, timezone=None):
    """
    Build an APScheduler trigger from a timer spec.

    Args:
        spec: '@every <duration>', a descriptor such as '@daily', or a
              5-field cron expression
        timezone: timezone for cron triggers (default: local)

    Returns:
        IntervalTrigger, CronTrigger, or OrTrigger of two CronTriggers

    Raises:
        ValueError if the spec cannot be parsed
    """
    spec = (spec or '').strip()
    if not spec:
        raise ValueError('Empty schedule')

    if spec.startswith('@every'):
        return IntervalTrigger(seconds=parse_duration(spec[len('@every'):]), timezone=timezone)

    spec = _DESCRIPTORS.get(spec.lower(), spec)
    fields = spec.split()
    if len(fields) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(fields)}: '{spec}'")
    minute, hour, day, month, day_of_week = fields
    either_day = not day.startswith('*') and not day_of_week.startswith('*')
    day_of_week = _translate_day_of_week(day_of_week)
    if not either_day:
        return CronTrigger(minute=minute, hour=hour, day=day, month=month,
                           day_of_week=day_of_week, timezone=timezone)

    # Both day fields restricted: crontab fires when either one matches
    return OrTrigger([
        CronTrigger(minute=minute, hour=hour, day=day, month=month, timezone=timezone),
        CronTrigger(minute=minute, hour=hour, month=month, day_of_week=day_of_week,
                    timezone=timezone),
    ])


class ScheduleRegistry:
    """Keeps one APScheduler job per enabled schedule ('snapshot', 'scrub', 'balance')."""

    def __init__(self, state, operations, scheduler=None):
        self.state = state
        self.operations = operations
        self.scheduler = scheduler or BackgroundScheduler(daemon=True)
        self._jobs = {}

    def start(self, paused=False):
        """Start the background scheduler and register the configured schedules."""
        if not self.scheduler.running:
            self.scheduler.start(paused=paused)
        return self.rebuild()

    def shutdown(self):
        """Shut down the scheduler without waiting for running jobs."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self._jobs = {}

    def jobs(self):
        with self.state.lock:
            return dict(self._jobs)

    def rebuild(self):
        """
        Drop every registered job and register the enabled schedules again.

        A schedule whose spec does not parse is left unregistered; the error
        is logged and recorded as a failed SCHEDULE history entry.

        Returns:
            dict of schedule name -> error message for schedules that failed
        """
        errors = {}
        with self.state.lock:
            for job in self._jobs.values():
                try:
                    self.scheduler.remove_job(job.id)
                except JobLookupError:
                    pass
            self._jobs = {}

            config = self.state.config
            for name in SCHEDULE_NAMES:
                descriptor = config.schedule_for(name)
                if not descriptor.enabled:
                    continue

                spec = build_timer_spec(descriptor)
                try:
                    trigger = parse_timer_spec(spec)
                except ValueError as e:
                    errors[name] = f"Invalid schedule '{spec}': {e}"
                    continue

                self._jobs[name] = self.scheduler.add_job(
                    self.operations.trigger_for(name), trigger,
                    id=name, name=f'{name} schedule', replace_existing=True,
                    max_instances=1, coalesce=True,
                    misfire_grace_time=MISFIRE_GRACE_SECONDS,
                )
                logger.info(f"Schedule '{name}' registered: {spec}")

            registered = sorted(self._jobs)

        for name, message in errors.items():
            logger.warning(f"Schedule '{name}' not registered: {message}")
            self.state.log_history('SCHEDULE', '⏰', name, STATUS_FAILED, message)

        logger.info(f"Schedules rebuilt: {', '.join(registered) or 'none active'}")
        return errors
