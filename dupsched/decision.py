"""Decide which kind of backup, if any, is due for a target."""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional, Union

from .config import WEEKDAY_NAMES

# Stand-in for a backup that has never been taken.
NEVER = datetime(1950, 1, 1, 0, 0, 1)


class BackupType(str, Enum):
    """Kind of backup to run for a target."""

    FULL = "full"
    INCREMENTAL = "incremental"
    NONE = "none"


def _as_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def weekday_matches(day: date, full_bak_day: str) -> bool:
    """
    Check whether a date falls on the configured full backup day.

    The configured day matches when it is a case-insensitive prefix of the
    English weekday name, so "Sat", "sat" and "Saturday" all match a Saturday.
    """
    wanted = full_bak_day.strip().lower()
    if not wanted:
        return False
    return WEEKDAY_NAMES[day.weekday()].startswith(wanted)


def decide_backup_type(
    today: Union[date, datetime],
    full_interval: int,
    diff_interval: int,
    full_bak_day: str,
    last_full: Optional[datetime] = None,
    last_diff: Optional[datetime] = None,
) -> BackupType:
    """
    Work out whether a full, incremental or no backup is due today.

    Due dates are computed from the most recent full and incremental
    backups; a missing timestamp counts as a backup taken in 1950. Dates
    are compared at day granularity.

    A full backup is only started on the configured full backup day, unless
    full_interval is 0, which forces a full backup on every run. While a
    full is overdue but it is not yet the full backup day, incrementals
    keep running on their own interval. An incremental is never chosen
    when there is no full backup to build on.

    Args:
        today: Date of the current run
        full_interval: Weeks between full backups
        diff_interval: Days between incremental backups
        full_bak_day: Weekday name (or prefix) on which fulls run
        last_full: Start time of the latest full backup, if any
        last_diff: Time of the latest incremental backup, if any

    Returns:
        The backup type to run
    """
    today = _as_date(today)
    has_full = last_full is not None

    full_due = _as_date((last_full or NEVER) + timedelta(weeks=full_interval))
    diff_due = _as_date((last_diff or NEVER) + timedelta(days=diff_interval))

    if today >= full_due:
        if weekday_matches(today, full_bak_day):
            return BackupType.FULL
        if full_interval == 0:
            return BackupType.FULL
        if today >= diff_due and has_full:
            return BackupType.INCREMENTAL
        return BackupType.NONE

    if today >= diff_due and has_full:
        return BackupType.INCREMENTAL

    return BackupType.NONE
