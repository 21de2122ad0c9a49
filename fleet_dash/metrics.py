"""Metrics computation engine for fleet_dash.

This module turns already-fetched log rows into the figures the dashboard
displays:

* :func:`aggregate_chart_data` – hourly / daily buckets of total, success,
  and error counts over a lookback window.
* :func:`aggregate_agent_performance` – per-agent execution counts, success
  rate, average duration, and last run.
* :func:`aggregate_server_health` – per-server request counts, error rate,
  and average latency.
* :func:`aggregate_pii_stats` – PII detection totals, info-type breakdown,
  and detection trend.
* :func:`summarize_activity` – today / yesterday / last-24h counters for the
  stats cards.

Every function here is pure: no database access, no Flask context, no global
state.  Inputs are the validated row types from :mod:`fleet_dash.models`;
outputs are plain dicts and lists so callers can serialise them directly.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from operator import attrgetter
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

from fleet_dash.models import Agent, ExecutionRow, RequestRow, Server
from fleet_dash.utils import (
    TIME_RANGE_24H,
    calculate_start_date,
    group_by,
    parse_time_range,
    percentage,
    round_half_up,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: HTTP statuses at or above this value count as request errors.
_HTTP_ERROR_THRESHOLD = 400


# ---------------------------------------------------------------------------
# Success predicates
# ---------------------------------------------------------------------------

def execution_succeeded(row: ExecutionRow) -> bool:
    """Return ``True`` for executions that finished successfully."""
    return row.success is True


def request_succeeded(row: RequestRow) -> bool:
    """Return ``True`` for requests answered with a 2xx or 3xx status."""
    return row.http_status is not None and 200 <= row.http_status < _HTTP_ERROR_THRESHOLD


def pii_detected(row: RequestRow) -> bool:
    """Return ``True`` when PII was found in the request or the response."""
    return (row.pii_detected_request_count or 0) + (row.pii_detected_response_count or 0) > 0


# ---------------------------------------------------------------------------
# Time buckets
# ---------------------------------------------------------------------------

def bucket_labels(
    time_range: str,
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> list[str]:
    """Return the ordered, de-duplicated bucket labels for a window ending at *now*.

    Hourly windows (``'24h'``) walk every hour from the hour containing the
    window start to the hour containing *now*, labelled ``"HH"``.  Daily
    windows walk calendar days, labelled ``"M/D"``.  Labels are computed in
    *tz* (default: ``now.tzinfo``); a label seen twice keeps its first slot.
    """
    tz = tz or now.tzinfo or timezone.utc
    time_range = parse_time_range(time_range)
    start = calculate_start_date(time_range, now)
    labels: dict[str, None] = {}

    if time_range == TIME_RANGE_24H:
        # Step in UTC so DST transitions neither skip nor repeat an hour.
        cursor = start.astimezone(tz).replace(minute=0, second=0, microsecond=0)
        cursor = cursor.astimezone(timezone.utc)
        while cursor <= now:
            labels.setdefault(_hour_label(cursor, tz), None)
            cursor += timedelta(hours=1)
    else:
        day = start.astimezone(tz).date()
        last_day = now.astimezone(tz).date()
        while day <= last_day:
            labels.setdefault(_day_label(day), None)
            day += timedelta(days=1)

    return list(labels)


def bucket_label(moment: datetime, time_range: str, tz: tzinfo) -> str:
    """Return the bucket label *moment* falls into for *time_range*."""
    if time_range == TIME_RANGE_24H:
        return _hour_label(moment, tz)
    return _day_label(moment.astimezone(tz).date())


def aggregate_chart_data(
    rows: Iterable[T],
    time_range: str,
    is_success: Callable[[T], bool],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    timestamp: Callable[[T], datetime] = attrgetter("created_at"),
) -> dict[str, Any]:
    """Bucket *rows* into time slots and count successes and errors.

    Args:
        rows: Log rows of any kind.
        time_range: ``'24h'`` (hourly buckets), ``'7d'`` or ``'30d'`` (daily).
        is_success: Predicate deciding whether a row counts as a success;
            every other row in range counts as an error.
        now: Reference end of the window; defaults to the current UTC time.
        tz: Display timezone for labels; defaults to ``now.tzinfo``.
        timestamp: Extracts the aware event time from a row.

    Returns:
        A dict with the following structure::

            {
                "data": [
                    {"label": str, "count": int,
                     "success_count": int, "error_count": int},
                    ...
                ],
                "total":         int,
                "success_total": int,
                "error_total":   int,
            }

        Every slot of the window is present even when it has no rows.
    """
    now = now or datetime.now(tz=timezone.utc)
    tz = tz or now.tzinfo or timezone.utc
    time_range = parse_time_range(time_range)
    start = calculate_start_date(time_range, now)

    buckets = {
        label: {"label": label, "count": 0, "success_count": 0, "error_count": 0}
        for label in bucket_labels(time_range, now, tz)
    }

    in_range = (row for row in rows if start <= timestamp(row) <= now)
    by_label = group_by(in_range, lambda row: bucket_label(timestamp(row), time_range, tz))

    total = success_total = error_total = 0
    for label, grouped in by_label.items():
        bucket = buckets.get(label)
        if bucket is None:
            continue
        for row in grouped:
            bucket["count"] += 1
            total += 1
            if is_success(row):
                bucket["success_count"] += 1
                success_total += 1
            else:
                bucket["error_count"] += 1
                error_total += 1

    return {
        "data": list(buckets.values()),
        "total": total,
        "success_total": success_total,
        "error_total": error_total,
    }


# ---------------------------------------------------------------------------
# Agent performance
# ---------------------------------------------------------------------------

def aggregate_agent_performance(
    agents: Sequence[Agent],
    rows: Iterable[ExecutionRow],
) -> list[dict[str, Any]]:
    """Compute per-agent execution statistics.

    In-flight rows (``success is None``) are ignored here; they surface via
    the running-agent counter and the execution log pager instead.

    Args:
        agents: Agents to report on, in display order.
        rows: Execution rows; rows for unknown agents are ignored.

    Returns:
        One dict per agent (agents without rows included)::

            {
                "agent_id":               str,
                "name":                   str,
                "slug":                   str,
                "icon_path":              str | None,
                "total_executions":       int,
                "success_count":          int,
                "error_count":            int,
                "success_rate":           float | None,  # 0.0 – 100.0
                "avg_duration_ms":        int | None,
                "last_execution_at":      datetime | None,
                "last_execution_success": bool | None,
            }
    """
    completed = (row for row in rows if row.success is not None)
    by_agent = group_by(completed, attrgetter("agent_id"))

    results: list[dict[str, Any]] = []
    for agent in agents:
        agent_rows = by_agent.get(agent.id, [])
        total = len(agent_rows)
        success = sum(1 for row in agent_rows if row.success)
        durations = [row.duration_ms for row in agent_rows if row.duration_ms is not None]

        # Linear scan for the most recent row; ties keep the first one seen.
        latest: Optional[ExecutionRow] = None
        for row in agent_rows:
            if latest is None or row.created_at > latest.created_at:
                latest = row

        results.append({
            "agent_id": agent.id,
            "name": agent.name,
            "slug": agent.slug,
            "icon_path": agent.icon_path,
            "total_executions": total,
            "success_count": success,
            "error_count": total - success,
            "success_rate": percentage(success, total),
            "avg_duration_ms": _mean_ms(durations),
            "last_execution_at": latest.created_at if latest else None,
            "last_execution_success": latest.success if latest else None,
        })
    return results


# ---------------------------------------------------------------------------
# Server health
# ---------------------------------------------------------------------------

def aggregate_server_health(
    servers: Sequence[Server],
    rows: Iterable[RequestRow],
) -> list[dict[str, Any]]:
    """Compute per-server request volume, error rate, and latency.

    Args:
        servers: Servers to report on, in display order.
        rows: Request rows; rows for unknown servers are ignored.

    Returns:
        One dict per server (servers without requests included)::

            {
                "server_id":       str,
                "name":            str,
                "slug":            str,
                "icon_path":       str | None,
                "status":          str | None,
                "request_count":   int,
                "error_count":     int,
                "error_rate":      float,       # 0.0 when no requests
                "avg_duration_ms": int | None,
            }
    """
    by_server = group_by(rows, attrgetter("server_id"))

    results: list[dict[str, Any]] = []
    for server in servers:
        server_rows = by_server.get(server.id, [])
        count = len(server_rows)
        errors = sum(
            1 for row in server_rows
            if row.http_status is not None and row.http_status >= _HTTP_ERROR_THRESHOLD
        )
        durations = [row.duration_ms for row in server_rows if row.duration_ms is not None]
        results.append({
            "server_id": server.id,
            "name": server.name,
            "slug": server.slug,
            "icon_path": resolve_server_icon(server),
            "status": server.status,
            "request_count": count,
            "error_count": errors,
            "error_rate": percentage(errors, count) or 0.0,
            "avg_duration_ms": _mean_ms(durations),
        })
    return results


def resolve_server_icon(server: Server) -> Optional[str]:
    """Return the server's own icon, else its first template icon, else ``None``."""
    if server.icon_path:
        return server.icon_path
    if server.template_icon_paths:
        return server.template_icon_paths[0] or None
    return None


# ---------------------------------------------------------------------------
# PII detection
# ---------------------------------------------------------------------------

def aggregate_pii_stats(
    rows: Iterable[RequestRow],
    time_range: str,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> dict[str, Any]:
    """Summarise PII detections over requests that were scanned.

    *rows* must already be limited to requests whose server had masking
    enabled.  The trend reuses :func:`aggregate_chart_data`, with a request
    counting as a "success" when anything was detected in it.

    Returns:
        A dict with the following structure::

            {
                "total_detections":     int,
                "request_detections":   int,
                "response_detections":  int,
                "masked_request_count": int,
                "info_type_breakdown":  [{"info_type": str, "count": int}, ...],
                "trend_data":           dict,  # aggregate_chart_data output
            }

        The breakdown counts requests per info type, most frequent first;
        ties keep first-seen order.
    """
    rows = list(rows)
    request_detections = sum(row.pii_detected_request_count or 0 for row in rows)
    response_detections = sum(row.pii_detected_response_count or 0 for row in rows)

    info_type_counts: dict[str, int] = {}
    for row in rows:
        for info_type in row.pii_detected_info_types:
            info_type_counts[info_type] = info_type_counts.get(info_type, 0) + 1
    breakdown = sorted(
        ({"info_type": info_type, "count": count} for info_type, count in info_type_counts.items()),
        key=lambda entry: -entry["count"],
    )

    return {
        "total_detections": request_detections + response_detections,
        "request_detections": request_detections,
        "response_detections": response_detections,
        "masked_request_count": len(rows),
        "info_type_breakdown": breakdown,
        "trend_data": aggregate_chart_data(rows, time_range, pii_detected, now=now, tz=tz),
    }


# ---------------------------------------------------------------------------
# Activity summary
# ---------------------------------------------------------------------------

def summarize_activity(
    executions: Iterable[ExecutionRow],
    requests: Iterable[RequestRow],
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Compute the headline counters shown on the dashboard stats cards.

    "Today" and "yesterday" are calendar days in ``now``'s timezone.  Only
    completed executions count towards the daily figures; in-flight ones
    feed ``running_execution_count``.

    Returns:
        A dict with the following structure::

            {
                "running_execution_count":   int,
                "today_execution_count":     int,
                "today_success_count":       int,
                "today_error_count":         int,
                "yesterday_execution_count": int,
                "today_request_count":       int,
                "last24h_request_count":     int,
                "last24h_error_count":       int,
                "error_rate":                float,  # last 24h, 0.0 when idle
            }
    """
    now = now or datetime.now(tz=timezone.utc)
    today_start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    yesterday_start = today_start - timedelta(days=1)
    last24h = now - timedelta(hours=24)

    running = today = today_success = yesterday = 0
    for row in executions:
        if row.success is None:
            running += 1
        elif row.created_at >= today_start:
            today += 1
            if row.success:
                today_success += 1
        elif row.created_at >= yesterday_start:
            yesterday += 1

    today_requests = last24h_requests = last24h_errors = 0
    for row in requests:
        if row.created_at >= today_start:
            today_requests += 1
        if row.created_at >= last24h:
            last24h_requests += 1
            if row.http_status is not None and row.http_status >= _HTTP_ERROR_THRESHOLD:
                last24h_errors += 1

    return {
        "running_execution_count": running,
        "today_execution_count": today,
        "today_success_count": today_success,
        "today_error_count": today - today_success,
        "yesterday_execution_count": yesterday,
        "today_request_count": today_requests,
        "last24h_request_count": last24h_requests,
        "last24h_error_count": last24h_errors,
        "error_rate": percentage(last24h_errors, last24h_requests) or 0.0,
    }


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _hour_label(moment: datetime, tz: tzinfo) -> str:
    return f"{moment.astimezone(tz).hour:02d}"


def _day_label(day: date) -> str:
    return f"{day.month}/{day.day}"


def _mean_ms(durations: list[float]) -> Optional[int]:
    """Return the integer-rounded mean of *durations*, or ``None`` if empty."""
    if not durations:
        return None
    return round_half_up(sum(durations) / len(durations))
