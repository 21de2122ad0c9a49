"""Dashboard service layer: fetch rows, run the engine, return plain dicts.

Each ``get_*`` function corresponds to one dashboard panel.  They pull
validated rows through :mod:`fleet_dash.db` and hand them to the pure
aggregators in :mod:`fleet_dash.metrics`, :mod:`fleet_dash.costs`,
:mod:`fleet_dash.schedules` and :mod:`fleet_dash.pager`.

All functions must be called within an active Flask application context.
Pricing and the display timezone are resolved from ``current_app.config``.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo

from fleet_dash.costs import (
    DEFAULT_PRICING,
    ModelRate,
    PricingTable,
    aggregate_agent_cost_breakdown,
    aggregate_cost_trend,
    estimate_token_cost,
)
from fleet_dash.db import (
    count_rows,
    count_running_executions,
    fetch_agents,
    fetch_execution_page_rows,
    fetch_execution_rows,
    fetch_request_page_rows,
    fetch_pii_scanned_rows,
    fetch_request_rows,
    fetch_schedules,
    fetch_servers,
    fetch_token_summaries,
    sum_tokens,
)
from fleet_dash.metrics import (
    aggregate_agent_performance,
    aggregate_chart_data,
    aggregate_pii_stats,
    aggregate_server_health,
    execution_succeeded,
    request_succeeded,
    resolve_server_icon,
    summarize_activity,
)
from fleet_dash.pager import DEFAULT_PAGE_SIZE, paginate
from fleet_dash.schedules import (
    MAX_TIMELINE_ITEMS,
    build_schedule_timeline,
    find_next_schedule,
    parse_schedule_range,
)
from fleet_dash.utils import calculate_start_date, parse_time_range

logger = logging.getLogger(__name__)

#: Server health always looks back over this window.
_HEALTH_WINDOW = timedelta(hours=24)


# ---------------------------------------------------------------------------
# Charts
# ---------------------------------------------------------------------------

def get_execution_chart(
    organization_id: str,
    time_range: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Completed agent executions bucketed over *time_range*."""
    time_range = parse_time_range(time_range)
    now = now or _now()
    rows = fetch_execution_rows(
        organization_id,
        since=calculate_start_date(time_range, now),
        until=now,
        completed_only=True,
    )
    return aggregate_chart_data(rows, time_range, execution_succeeded, now=now, tz=_display_tz())


def get_request_chart(
    organization_id: str,
    time_range: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Server requests bucketed over *time_range*; 2xx/3xx count as success."""
    time_range = parse_time_range(time_range)
    now = now or _now()
    rows = fetch_request_rows(
        organization_id, since=calculate_start_date(time_range, now), until=now
    )
    return aggregate_chart_data(rows, time_range, request_succeeded, now=now, tz=_display_tz())


def get_cost_trend(
    organization_id: str,
    time_range: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Token usage and estimated cost bucketed over *time_range*."""
    time_range = parse_time_range(time_range)
    now = now or _now()
    rows = fetch_request_rows(
        organization_id, since=calculate_start_date(time_range, now), until=now
    )
    return aggregate_cost_trend(rows, time_range, get_pricing(), now=now, tz=_display_tz())


# ---------------------------------------------------------------------------
# Per-entity panels
# ---------------------------------------------------------------------------

def get_agent_performance(
    organization_id: str,
    time_range: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Per-agent execution statistics over *time_range*.

    Returns:
        ``{"agents": [...]}`` as produced by
        :func:`fleet_dash.metrics.aggregate_agent_performance`.
    """
    time_range = parse_time_range(time_range)
    now = now or _now()
    agents = fetch_agents(organization_id)
    rows = fetch_execution_rows(
        organization_id,
        since=calculate_start_date(time_range, now),
        until=now,
        completed_only=True,
    )
    return {"agents": aggregate_agent_performance(agents, rows)}


def get_server_health(
    organization_id: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Per-server request health over the last 24 hours."""
    now = now or _now()
    servers = fetch_servers(organization_id)
    rows = fetch_request_rows(organization_id, since=now - _HEALTH_WINDOW, until=now)
    return {"servers": aggregate_server_health(servers, rows)}


def get_agent_cost_breakdown(
    organization_id: str,
    time_range: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Server token usage attributed to agents and priced per agent model."""
    time_range = parse_time_range(time_range)
    now = now or _now()
    agents = fetch_agents(organization_id)
    summaries = fetch_token_summaries(
        organization_id, since=calculate_start_date(time_range, now), until=now
    )
    return aggregate_agent_cost_breakdown(agents, summaries, get_pricing())


def get_pii_stats(
    organization_id: str,
    time_range: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """PII detection panel over *time_range*.

    Only requests served with masking enabled are counted; see
    :func:`fleet_dash.metrics.aggregate_pii_stats` for the returned dict.
    """
    time_range = parse_time_range(time_range)
    now = now or _now()
    rows = fetch_pii_scanned_rows(
        organization_id, since=calculate_start_date(time_range, now), until=now
    )
    return aggregate_pii_stats(rows, time_range, now=now, tz=_display_tz())


def get_schedule_timeline(
    organization_id: str,
    range_: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Upcoming scheduled runs, soonest first.

    Returns:
        ``{"items": [...]}`` as produced by
        :func:`fleet_dash.schedules.build_schedule_timeline`.
    """
    range_ = parse_schedule_range(range_)
    now = now or _now()
    limit = int(_config("SCHEDULE_TIMELINE_LIMIT", MAX_TIMELINE_ITEMS))
    schedules = fetch_schedules(organization_id)
    return {"items": build_schedule_timeline(schedules, range_, now=now, limit=limit)}


# ---------------------------------------------------------------------------
# Log pages
# ---------------------------------------------------------------------------

def get_recent_executions(
    organization_id: str,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    agent_id: Optional[str] = None,
) -> dict[str, Any]:
    """One page of completed executions, newest first, with agent details.

    Each item carries the execution fields plus ``agent_name``,
    ``agent_slug``, ``agent_icon_path`` and ``server_icons`` (one
    ``{"id", "icon_path"}`` entry per server the agent depends on).

    Raises:
        ValueError: If *limit* is outside ``1..100``.
    """
    if limit is None:
        limit = int(_config("PAGE_SIZE", DEFAULT_PAGE_SIZE))
    page = paginate(
        lambda after, take: fetch_execution_page_rows(
            organization_id, after, take, agent_id=agent_id, completed_only=True
        ),
        limit=limit,
        cursor=cursor,
    )

    agents = {agent.id: agent for agent in fetch_agents(organization_id)}
    server_icons = {
        server.id: resolve_server_icon(server) for server in fetch_servers(organization_id)
    }
    items = []
    for row in page["items"]:
        agent = agents.get(row.agent_id)
        items.append({
            **dataclasses.asdict(row),
            "agent_name": agent.name if agent else None,
            "agent_slug": agent.slug if agent else None,
            "agent_icon_path": agent.icon_path if agent else None,
            "server_icons": [
                {"id": server_id, "icon_path": server_icons.get(server_id)}
                for server_id in (agent.server_ids if agent else ())
            ],
        })
    page["items"] = items
    return page


def get_request_log_page(
    organization_id: str,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    server_id: Optional[str] = None,
) -> dict[str, Any]:
    """One page of server request logs, newest first.

    Raises:
        ValueError: If *limit* is outside ``1..100``.
    """
    if limit is None:
        limit = int(_config("PAGE_SIZE", DEFAULT_PAGE_SIZE))
    return paginate(
        lambda after, take: fetch_request_page_rows(
            organization_id, after, take, server_id=server_id
        ),
        limit=limit,
        cursor=cursor,
    )


# ---------------------------------------------------------------------------
# Stats cards
# ---------------------------------------------------------------------------

def get_dashboard_stats(
    organization_id: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Return the headline figures for the dashboard stats cards.

    Returns:
        The counters of :func:`fleet_dash.metrics.summarize_activity` plus::

            {
                "generated_at":              str,
                "agent_count":               int,
                "server_count":              int,
                "schedule_count":            int,
                "next_schedule":             dict | None,
                "monthly_input_tokens":      int,
                "monthly_output_tokens":     int,
                "monthly_estimated_cost":    float | None,
                "last_month_estimated_cost": float | None,
            }

        ``running_execution_count`` covers every in-flight execution, not
        only those started since yesterday.
    """
    now = now or _now()
    today_start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    yesterday_start = today_start - timedelta(days=1)
    month_start = today_start.replace(day=1)
    last_month_start = (month_start - timedelta(days=1)).replace(day=1)
    window_start = min(yesterday_start, now - timedelta(hours=24))

    executions = fetch_execution_rows(organization_id, since=window_start, until=now)
    requests_ = fetch_request_rows(organization_id, since=window_start, until=now)
    stats = summarize_activity(executions, requests_, now=now)
    stats["running_execution_count"] = count_running_executions(organization_id)

    pricing = get_pricing()
    monthly_input, monthly_output = sum_tokens(organization_id, since=month_start, until=now)
    last_input, last_output = sum_tokens(
        organization_id,
        since=last_month_start,
        until=month_start - timedelta(microseconds=1),
    )

    stats.update({
        "generated_at": datetime.now(tz=timezone.utc).isoformat(),
        "agent_count": count_rows("agents", organization_id),
        "server_count": count_rows("servers", organization_id),
        "schedule_count": count_rows("schedules", organization_id),
        "next_schedule": find_next_schedule(fetch_schedules(organization_id), now=now),
        "monthly_input_tokens": monthly_input,
        "monthly_output_tokens": monthly_output,
        "monthly_estimated_cost": estimate_token_cost(monthly_input, monthly_output, pricing),
        "last_month_estimated_cost": estimate_token_cost(last_input, last_output, pricing),
    })
    return stats


# ---------------------------------------------------------------------------
# Configuration helpers
# ---------------------------------------------------------------------------

class PricingConfigError(RuntimeError):
    """Raised when ``MODEL_PRICING`` or the default rates are misconfigured."""


def get_pricing() -> PricingTable:
    """Build the pricing table from ``MODEL_PRICING`` and the default rate config.

    ``MODEL_PRICING`` may be a mapping or a JSON string of the form
    ``{"model-id": {"input_cost_per_1k": x, "output_cost_per_1k": y}}``;
    its entries override the built-in rates.

    Raises:
        PricingConfigError: If the configured pricing is malformed.  This is
            a server fault, so the API answers it with HTTP 500.
    """
    try:
        default = ModelRate(
            input_cost_per_1k=float(
                _config("DEFAULT_INPUT_COST_PER_1K", DEFAULT_PRICING.default.input_cost_per_1k)
            ),
            output_cost_per_1k=float(
                _config("DEFAULT_OUTPUT_COST_PER_1K", DEFAULT_PRICING.default.output_cost_per_1k)
            ),
        )
    except (TypeError, ValueError) as exc:
        raise PricingConfigError(f"Default token rates are not numeric: {exc}") from exc

    configured = _config("MODEL_PRICING", None) or {}
    if isinstance(configured, str):
        try:
            configured = json.loads(configured)
        except json.JSONDecodeError as exc:
            raise PricingConfigError(f"MODEL_PRICING is not valid JSON: {exc}") from exc
    if not isinstance(configured, Mapping):
        raise PricingConfigError("MODEL_PRICING must be an object keyed by model id")
    try:
        overrides = PricingTable.from_mapping(configured)
    except ValueError as exc:
        raise PricingConfigError(f"MODEL_PRICING: {exc}") from exc
    return PricingTable(rates={**DEFAULT_PRICING.rates, **overrides.rates}, default=default)


def _display_tz() -> tzinfo:
    name = _config("DISPLAY_TIMEZONE", "UTC") or "UTC"
    try:
        return ZoneInfo(name)
    except (KeyError, ValueError):
        logger.warning("Unknown DISPLAY_TIMEZONE %r; falling back to UTC.", name)
        return timezone.utc


def _now() -> datetime:
    return datetime.now(tz=_display_tz())


def _config(key: str, default: Any) -> Any:
    """Read *key* from the app config, or *default* outside an app context."""
    try:
        from flask import current_app
        return current_app.config.get(key, default)
    except RuntimeError:
        return default
