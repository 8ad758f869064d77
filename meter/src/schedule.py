"""
Wall-clock scheduling helpers for the flush and rollover loops.

Pure functions: the caller passes the current time.  Daily occurrences are
resolved in the system local timezone (``TZ``).

CHANGELOG:
- 2026-10-19: Resolve the daily time per target date across DST changes
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime, time, timedelta


def seconds_until_next_boundary(now: datetime, interval_s: int) -> float:
    """Seconds until the next multiple of *interval_s* since local midnight.

    With ``interval_s=60`` this fires on every minute like ``* * * * *``;
    with 3600 on every full hour.  Never returns 0, so a loop that just
    fired waits for the following boundary.
    """
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = (now - midnight).total_seconds()
    remaining = interval_s - (elapsed % interval_s)
    return remaining if remaining > 0 else float(interval_s)


def next_daily_occurrence(now: datetime, at: time) -> datetime:
    """Return the first instant strictly after *now* when the local clock shows *at*.

    The candidate is built as a naive local time and localized per day, so
    the UTC offset of the target date applies.  On DST change days the
    result is still *at* on the wall clock, 23 or 25 hours after the
    previous occurrence.
    """
    local_now = now.astimezone()
    day = local_now.date()
    while True:
        candidate = datetime.combine(day, at).astimezone()
        if candidate > local_now:
            return candidate
        day += timedelta(days=1)


def seconds_until_daily(now: datetime, at: time) -> float:
    return (next_daily_occurrence(now, at) - now.astimezone()).total_seconds()
