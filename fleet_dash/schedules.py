"""Upcoming-run forecasts for recurring agent schedules.

Each schedule carries a cron expression and the IANA timezone it is
evaluated in.  :func:`build_schedule_timeline` expands every schedule over a
bounded future window and merges the results into one time-ordered list;
:func:`find_next_schedule` picks the single soonest run for the stats card.

A schedule whose expression or timezone cannot be parsed is skipped and
logged; it never affects the occurrences of other schedules.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from fleet_dash.models import ScheduleDefinition

logger = logging.getLogger(__name__)

#: Maximum number of occurrences returned by a timeline.
MAX_TIMELINE_ITEMS = 20

RANGE_TODAY = "today"
RANGE_WEEK = "week"
SCHEDULE_RANGES = frozenset({RANGE_TODAY, RANGE_WEEK})

# Errors raised by croniter / zoneinfo for malformed expressions or zones.
# croniter's own exceptions derive from ValueError; ZoneInfoNotFoundError
# derives from KeyError.
_PARSE_ERRORS = (ValueError, KeyError, TypeError)


def parse_schedule_range(value: Optional[str], default: str = RANGE_TODAY) -> str:
    """Validate a timeline range token.

    Raises:
        ValueError: If *value* is neither ``'today'`` nor ``'week'``.
    """
    if not value:
        return default
    token = value.strip().lower()
    if token not in SCHEDULE_RANGES:
        raise ValueError(
            f"Unsupported schedule range {value!r}; expected one of {sorted(SCHEDULE_RANGES)}"
        )
    return token


def schedule_window(range_: str, now: datetime) -> tuple[datetime, datetime]:
    """Return ``(start, end)`` of the forecast window.

    ``'today'`` ends at the last microsecond of *now*'s calendar day (in
    *now*'s timezone); ``'week'`` ends seven days after *now*.
    """
    range_ = parse_schedule_range(range_)
    if range_ == RANGE_TODAY:
        end = datetime.combine(now.date(), time.max, tzinfo=now.tzinfo)
    else:
        end = now + timedelta(days=7)
    return now, end


def expand_schedule(
    schedule: ScheduleDefinition,
    start: datetime,
    end: datetime,
    limit: Optional[int] = None,
) -> list[datetime]:
    """Return the run times of *schedule* strictly after *start* and up to *end*.

    Args:
        schedule: The schedule to expand.
        start: Anchor instant; the first occurrence is the next one after it.
        end: Inclusive upper bound of the window.
        limit: Stop after this many occurrences.

    Returns:
        Ascending, timezone-aware run times in the schedule's timezone.

    Raises:
        ValueError, KeyError, TypeError: If the cron expression or timezone
            is malformed.
    """
    zone = ZoneInfo(schedule.timezone)
    iterator = croniter(schedule.cron_expression, start.astimezone(zone))
    runs: list[datetime] = []
    while limit is None or len(runs) < limit:
        run = iterator.get_next(datetime)
        if run > end:
            break
        runs.append(run)
    return runs


def build_schedule_timeline(
    schedules: Iterable[ScheduleDefinition],
    range_: str = RANGE_TODAY,
    now: Optional[datetime] = None,
    limit: int = MAX_TIMELINE_ITEMS,
) -> list[dict[str, Any]]:
    """Forecast the soonest upcoming runs across all *schedules*.

    Args:
        schedules: Active schedule definitions.
        range_: ``'today'`` or ``'week'``.
        now: Reference instant; defaults to the current UTC time.
        limit: Maximum number of occurrences to return.

    Returns:
        At most *limit* dicts sorted by ``next_run_at`` ascending::

            {
                "schedule_id":     str,
                "schedule_name":   str,
                "agent":           AgentRef,
                "cron_expression": str,
                "next_run_at":     datetime,
            }
    """
    now = now or datetime.now(tz=timezone.utc)
    start, end = schedule_window(range_, now)

    occurrences: list[dict[str, Any]] = []
    for schedule in schedules:
        try:
            # A schedule never contributes more than `limit` runs to the
            # global top `limit`, so its expansion can stop there.
            runs = expand_schedule(schedule, start, end, limit=limit)
        except _PARSE_ERRORS as exc:
            logger.warning(
                "Skipping schedule %s (%r, tz=%s): %s",
                schedule.id, schedule.cron_expression, schedule.timezone, exc,
            )
            continue
        occurrences.extend(
            {
                "schedule_id": schedule.id,
                "schedule_name": schedule.name,
                "agent": schedule.agent,
                "cron_expression": schedule.cron_expression,
                "next_run_at": run,
            }
            for run in runs
        )

    occurrences.sort(key=lambda item: item["next_run_at"])
    return occurrences[:limit]


def find_next_schedule(
    schedules: Iterable[ScheduleDefinition],
    now: Optional[datetime] = None,
) -> Optional[dict[str, Any]]:
    """Return the single soonest upcoming run, or ``None`` if there is none.

    Returns:
        ``None`` or a dict::

            {
                "schedule_id":            str,
                "schedule_name":          str,
                "agent":                  AgentRef,
                "cron_expression":        str,
                "next_run_at":            datetime,
                "minutes_until_next_run": int,
            }
    """
    now = now or datetime.now(tz=timezone.utc)
    closest: Optional[ScheduleDefinition] = None
    closest_run: Optional[datetime] = None

    for schedule in schedules:
        try:
            zone = ZoneInfo(schedule.timezone)
            run = croniter(schedule.cron_expression, now.astimezone(zone)).get_next(datetime)
        except _PARSE_ERRORS as exc:
            logger.warning("Skipping schedule %s: %s", schedule.id, exc)
            continue
        if closest_run is None or run < closest_run:
            closest, closest_run = schedule, run

    if closest is None or closest_run is None:
        return None

    return {
        "schedule_id": closest.id,
        "schedule_name": closest.name,
        "agent": closest.agent,
        "cron_expression": closest.cron_expression,
        "next_run_at": closest_run,
        "minutes_until_next_run": int((closest_run - now).total_seconds() // 60),
    }
