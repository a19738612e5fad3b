"""
Snapshot naming and retention cleanup.

Snapshots live as read-only subvolumes named after their creation time,
``DD-MM-YYYY-HH-MM-TZ`` (for example ``18-10-2026-14-05-CEST``). Only
directories whose names parse in that format are ever considered for
deletion; anything else under the destination is left alone.
"""

import os
import re
import calendar
import logging
from datetime import datetime, timedelta

from engine.models import STATUS_SUCCESS

logger = logging.getLogger(__name__)

SNAPSHOT_NAME_FORMAT = '%d-%m-%Y-%H-%M-%Z'

# Zone is an abbreviation (UTC, CEST, ChST) or a bare offset (+03, -0530)
_SNAPSHOT_NAME_RE = re.compile(
    r'^(\d{2})-(\d{2})-(\d{4})-(\d{2})-(\d{2})-([A-Z][A-Za-z]{2,4}|[+-]\d{2}(?:\d{2})?)$'
)

UNIT_DAYS = 'days'
UNIT_WEEKS = 'weeks'
UNIT_MONTHS = 'months'
UNIT_YEARS = 'years'


def snapshot_name(moment=None):
    """Name for a snapshot taken at ``moment`` (default: now, local zone)."""
    moment = moment or datetime.now().astimezone()
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return moment.strftime(SNAPSHOT_NAME_FORMAT)


def parse_snapshot_name(name):
    """Return the naive local datetime encoded in a snapshot name, or None.

    The zone suffix is validated but not applied: snapshots are named on the
    host that also prunes them.
    """
    match = _SNAPSHOT_NAME_RE.match(name)
    if not match:
        return None
    day, month, year, hour, minute = (int(g) for g in match.groups()[:5])
    try:
        return datetime(year, month, day, hour, minute)
    except ValueError:
        return None


def list_snapshots(dest_path):
    """
    List snapshot directories under dest_path, newest first.

    Returns:
        list of (name, datetime) tuples

    Raises:
        OSError if the directory cannot be read
    """
    snaps = []
    with os.scandir(dest_path) as it:
        for entry in it:
            if not entry.is_dir(follow_symlinks=False):
                continue
            taken = parse_snapshot_name(entry.name)
            if taken is not None:
                snaps.append((entry.name, taken))
    snaps.sort(key=lambda s: s[1], reverse=True)
    return snaps


def _shift_months(moment, months):
    # Calendar month arithmetic, clamping to the last day of the target month
    total = moment.year * 12 + (moment.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def retention_cutoff(value, unit, now=None):
    """Oldest moment a snapshot may have and still be kept under an age policy."""
    now = now or datetime.now()
    if unit == UNIT_WEEKS:
        return now - timedelta(days=7 * value)
    if unit == UNIT_MONTHS:
        return _shift_months(now, -value)
    if unit == UNIT_YEARS:
        return _shift_months(now, -12 * value)
    return now - timedelta(days=value)


def select_for_deletion(snapshots, policy, now=None):
    """
    Pick the snapshots a retention policy no longer keeps.

    Args:
        snapshots: (name, datetime) tuples sorted newest first
        policy: RetentionPolicy
        now: reference time for age policies

    Returns:
        list of snapshot names to delete, newest first
    """
    if policy.is_count:
        keep = max(policy.value, 0)
        return [name for name, _ in snapshots[keep:]]

    if policy.is_age:
        cutoff = retention_cutoff(policy.value, policy.unit, now)
        return [name for name, taken in snapshots if taken < cutoff]

    logger.warning(f"Unknown retention mode '{policy.mode}', nothing selected")
    return []


def delete_snapshots(runner, dest_path, names):
    """Delete each named subvolume. Returns the number that were removed."""
    deleted = 0
    for name in names:
        path = os.path.join(dest_path, name)
        result = runner.run('btrfs', 'subvolume', 'delete', path)
        if result.ok:
            deleted += 1
            logger.info(f"Deleted snapshot {path}")
        else:
            logger.warning(f"Failed to delete snapshot {path}: {result.error or result.output.strip()}")
    return deleted


def enforce_retention(state, runner, dest_path, now=None):
    """
    Apply the configured retention policy to the snapshots in dest_path.

    A single summary history entry is written when anything was selected,
    counting only the deletions that succeeded.

    Returns:
        dict with 'selected' and 'deleted' counts
    """
    result = {'selected': 0, 'deleted': 0}

    with state.lock:
        policy = state.config.retention
    if not policy.enabled:
        return result

    try:
        snapshots = list_snapshots(dest_path)
    except OSError as e:
        logger.warning(f"Retention skipped, cannot read {dest_path}: {e}")
        return result

    to_delete = select_for_deletion(snapshots, policy, now)
    result['selected'] = len(to_delete)
    if not to_delete:
        return result

    logger.info(f"Retention: {len(to_delete)} of {len(snapshots)} snapshots selected in {dest_path}")
    result['deleted'] = delete_snapshots(runner, dest_path, to_delete)
    state.log_history('RETENTION', '🗑️', dest_path, STATUS_SUCCESS,
                      f"Cleaned up {result['deleted']} old snapshots")
    return result


def purge_all_snapshots(state, runner, dest_path):
    """Delete every snapshot-named directory in dest_path, regardless of policy."""
    try:
        names = [name for name, _ in list_snapshots(dest_path)]
    except OSError as e:
        logger.warning(f"Purge: cannot read {dest_path}: {e}")
        names = []

    deleted = delete_snapshots(runner, dest_path, names)
    state.log_history('PURGE ALL', '🔥', dest_path, STATUS_SUCCESS, f"Deleted {deleted} snapshots")
    logger.info(f"Purge: deleted {deleted} of {len(names)} snapshots in {dest_path}")
    return deleted
