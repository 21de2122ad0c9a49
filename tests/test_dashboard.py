"""Integration tests for fleet_dash.dashboard – panels served from the log store.

A small fleet is seeded into a temp-file database and every panel is computed
at a fixed "now" so the expected numbers can be worked out by hand.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from fleet_dash import dashboard
from fleet_dash.app import create_app
from fleet_dash.costs import DEFAULT_PRICING, ModelRate
from fleet_dash.db import (
    insert_execution_logs_batch,
    insert_request_logs_batch,
    upsert_agent,
    upsert_schedule,
    upsert_server,
)
from fleet_dash.models import Agent, AgentRef, ExecutionRow, RequestRow, ScheduleDefinition, Server


NOW = datetime(2024, 3, 15, 12, 30, tzinfo=timezone.utc)
ORG = "org1"


def _at(day: int, hour: int, month: int = 3) -> datetime:
    return datetime(2024, month, day, hour, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def app(tmp_path):
    return create_app({
        "DATABASE": str(tmp_path / "dashboard.db"),
        "TESTING": True,
        "SECRET_KEY": "test",
        "ENABLE_SYNC": False,
        "DISPLAY_TIMEZONE": "UTC",
        "DEFAULT_INPUT_COST_PER_1K": 1.0,
        "DEFAULT_OUTPUT_COST_PER_1K": 2.0,
        "MODEL_PRICING": {"pricey": {"input_cost_per_1k": 10, "output_cost_per_1k": 20}},
    })


@pytest.fixture()
def fleet(app):
    """Two agents sharing server s1; a2 also uses s2."""
    with app.app_context():
        upsert_server(Server(id="s1", name="Search", slug="search", icon_path="/s1.png", status="ACTIVE"), ORG)
        upsert_server(Server(id="s2", name="Files", slug="files", template_icon_paths=("/t2.png",)), ORG)
        upsert_agent(Agent(id="a1", name="Alpha", slug="alpha", icon_path="/a1.png",
                           model_id="pricey", server_ids=("s1",)), ORG)
        upsert_agent(Agent(id="a2", name="Beta", slug="beta", server_ids=("s1", "s2")), ORG)
        upsert_schedule(ScheduleDefinition(
            id="sc1", name="hourly", cron_expression="0 * * * *", timezone="UTC",
            agent=AgentRef(id="a1", name="Alpha", slug="alpha", icon_path="/a1.png"),
        ), ORG)

        insert_execution_logs_batch([
            ExecutionRow(id="e1", agent_id="a1", created_at=_at(15, 10), success=True, duration_ms=1000),
            ExecutionRow(id="e2", agent_id="a1", created_at=_at(15, 11), success=False, duration_ms=3000),
            ExecutionRow(id="e3", agent_id="a2", created_at=_at(14, 15), success=True),
            ExecutionRow(id="run1", agent_id="a1", created_at=_at(15, 12), success=None),
            ExecutionRow(id="old", agent_id="a1", created_at=_at(1, 9), success=True),
        ], ORG)
        insert_request_logs_batch([
            RequestRow(id="r1", server_id="s1", created_at=_at(15, 10), http_status=200,
                       input_tokens=100, output_tokens=50),
            RequestRow(id="r2", server_id="s1", created_at=_at(15, 11), http_status=500),
            RequestRow(id="r3", server_id="s2", created_at=_at(14, 20), http_status=200,
                       input_tokens=1000, output_tokens=0),
            RequestRow(id="rold", server_id="s1", created_at=_at(20, 9, month=2), http_status=200,
                       input_tokens=2000, output_tokens=1000),
        ], ORG)
    return app


@pytest.fixture()
def ctx(fleet):
    with fleet.app_context():
        yield fleet


# ---------------------------------------------------------------------------
# Charts
# ---------------------------------------------------------------------------

class TestCharts:
    def test_execution_chart_ignores_in_flight_runs(self, ctx):
        chart = dashboard.get_execution_chart(ORG, "24h", now=NOW)
        assert len(chart["data"]) == 24
        assert chart["total"] == 3
        assert chart["success_total"] == 2
        assert chart["error_total"] == 1

    def test_request_chart_7d(self, ctx):
        chart = dashboard.get_request_chart(ORG, "7d", now=NOW)
        by_label = {b["label"]: b for b in chart["data"]}
        assert by_label["3/15"]["count"] == 2
        assert by_label["3/15"]["error_count"] == 1
        assert by_label["3/14"]["success_count"] == 1
        assert chart["total"] == 3

    def test_cost_trend_uses_configured_default_rate(self, ctx):
        trend = dashboard.get_cost_trend(ORG, "7d", now=NOW)
        assert trend["total_input_tokens"] == 1100
        assert trend["total_output_tokens"] == 50
        assert trend["total_cost"] == 1.2

    def test_bad_range(self, ctx):
        with pytest.raises(ValueError):
            dashboard.get_execution_chart(ORG, "1y", now=NOW)

    def test_other_organization_is_empty(self, ctx):
        assert dashboard.get_execution_chart("org2", "30d", now=NOW)["total"] == 0


# ---------------------------------------------------------------------------
# Panels
# ---------------------------------------------------------------------------

class TestPanels:
    def test_agent_performance(self, ctx):
        result = {a["agent_id"]: a for a in dashboard.get_agent_performance(ORG, "7d", now=NOW)["agents"]}
        assert result["a1"]["total_executions"] == 2
        assert result["a1"]["success_rate"] == 50.0
        assert result["a1"]["avg_duration_ms"] == 2000
        assert result["a1"]["last_execution_success"] is False
        assert result["a2"]["success_rate"] == 100.0

    def test_server_health_last_24h(self, ctx):
        result = {s["server_id"]: s for s in dashboard.get_server_health(ORG, now=NOW)["servers"]}
        assert result["s1"]["request_count"] == 2
        assert result["s1"]["error_rate"] == 50.0
        assert result["s1"]["icon_path"] == "/s1.png"
        assert result["s2"]["request_count"] == 1
        assert result["s2"]["error_rate"] == 0.0
        assert result["s2"]["icon_path"] == "/t2.png"

    def test_agent_cost_breakdown(self, ctx):
        result = dashboard.get_agent_cost_breakdown(ORG, "7d", now=NOW)
        agents = result["agents"]
        # s1: 100/50 split over a1 and a2; s2: 1000/0 for a2 alone.
        assert [a["agent_id"] for a in agents] == ["a2", "a1"]
        assert (agents[0]["input_tokens"], agents[0]["output_tokens"]) == (1050, 25)
        assert agents[0]["estimated_cost"] == 1.1
        assert (agents[1]["input_tokens"], agents[1]["output_tokens"]) == (50, 25)
        assert agents[1]["estimated_cost"] == 1.0
        assert result["total_cost"] == 2.1

    def test_pii_stats_count_masked_requests_only(self, ctx):
        insert_request_logs_batch([
            RequestRow(id="p1", server_id="s1", created_at=_at(15, 9), pii_masking_mode="BOTH",
                       pii_detected_request_count=2, pii_detected_info_types=("EMAIL_ADDRESS",)),
            RequestRow(id="p2", server_id="s2", created_at=_at(13, 9), pii_masking_mode="RESPONSE",
                       pii_detected_response_count=0),
            RequestRow(id="p3", server_id="s1", created_at=_at(15, 8), pii_masking_mode="DISABLED",
                       pii_detected_request_count=5),
        ], ORG)
        stats = dashboard.get_pii_stats(ORG, "7d", now=NOW)
        assert stats["masked_request_count"] == 2
        assert stats["total_detections"] == 2
        assert stats["info_type_breakdown"] == [{"info_type": "EMAIL_ADDRESS", "count": 1}]
        by_label = {b["label"]: b for b in stats["trend_data"]["data"]}
        assert by_label["3/15"]["success_count"] == 1
        assert by_label["3/13"]["error_count"] == 1

    def test_pii_stats_without_masking(self, ctx):
        stats = dashboard.get_pii_stats(ORG, "24h", now=NOW)
        assert stats["masked_request_count"] == 0
        assert stats["trend_data"]["total"] == 0

    def test_schedule_timeline(self, ctx):
        items = dashboard.get_schedule_timeline(ORG, "today", now=NOW)["items"]
        assert len(items) == 11
        assert items[0]["next_run_at"] == _at(15, 13)
        assert items[0]["agent"].name == "Alpha"

    def test_schedule_timeline_limit_from_config(self, ctx):
        ctx.config["SCHEDULE_TIMELINE_LIMIT"] = 3
        assert len(dashboard.get_schedule_timeline(ORG, "week", now=NOW)["items"]) == 3


# ---------------------------------------------------------------------------
# Log pages
# ---------------------------------------------------------------------------

class TestLogPages:
    def test_recent_executions_enriched(self, ctx):
        page = dashboard.get_recent_executions(ORG, limit=2)
        assert [i["id"] for i in page["items"]] == ["e2", "e1"]
        assert page["next_cursor"] == "e1"

        item = page["items"][0]
        assert item["agent_name"] == "Alpha"
        assert item["agent_icon_path"] == "/a1.png"
        assert item["server_icons"] == [{"id": "s1", "icon_path": "/s1.png"}]

    def test_recent_executions_second_page(self, ctx):
        page = dashboard.get_recent_executions(ORG, limit=2, cursor="e1")
        assert [i["id"] for i in page["items"]] == ["e3", "old"]
        assert "next_cursor" not in page

    def test_recent_executions_agent_filter(self, ctx):
        page = dashboard.get_recent_executions(ORG, limit=10, agent_id="a2")
        assert [i["id"] for i in page["items"]] == ["e3"]
        assert sorted(s["id"] for s in page["items"][0]["server_icons"]) == ["s1", "s2"]

    def test_request_page_uses_configured_size(self, ctx):
        ctx.config["PAGE_SIZE"] = 2
        page = dashboard.get_request_log_page(ORG)
        assert [r.id for r in page["items"]] == ["r2", "r1"]
        assert page["next_cursor"] == "r1"

    def test_zero_limit_rejected(self, ctx):
        with pytest.raises(ValueError):
            dashboard.get_request_log_page(ORG, limit=0)


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

class TestDashboardStats:
    def test_headline_figures(self, ctx):
        stats = dashboard.get_dashboard_stats(ORG, now=NOW)
        assert stats["running_execution_count"] == 1
        assert stats["today_execution_count"] == 2
        assert stats["today_success_count"] == 1
        assert stats["today_error_count"] == 1
        assert stats["yesterday_execution_count"] == 1
        assert stats["today_request_count"] == 2
        assert stats["last24h_request_count"] == 3
        assert stats["error_rate"] == 33.3
        assert stats["agent_count"] == 2
        assert stats["server_count"] == 2
        assert stats["schedule_count"] == 1

    def test_monthly_tokens_and_costs(self, ctx):
        stats = dashboard.get_dashboard_stats(ORG, now=NOW)
        assert (stats["monthly_input_tokens"], stats["monthly_output_tokens"]) == (1100, 50)
        assert stats["monthly_estimated_cost"] == 1.2
        assert stats["last_month_estimated_cost"] == 4.0

    def test_next_schedule(self, ctx):
        nxt = dashboard.get_dashboard_stats(ORG, now=NOW)["next_schedule"]
        assert nxt["schedule_id"] == "sc1"
        assert nxt["minutes_until_next_run"] == 30

    def test_empty_organization(self, ctx):
        stats = dashboard.get_dashboard_stats("org2", now=NOW)
        assert stats["agent_count"] == 0
        assert stats["next_schedule"] is None
        assert stats["monthly_estimated_cost"] is None
        assert stats["error_rate"] == 0.0


# ---------------------------------------------------------------------------
# Configuration helpers
# ---------------------------------------------------------------------------

class TestGetPricing:
    def test_overrides_merge_over_builtin_rates(self, ctx):
        pricing = dashboard.get_pricing()
        assert pricing.rate_for("pricey") == ModelRate(10.0, 20.0)
        assert pricing.rate_for("openai/gpt-4o") == DEFAULT_PRICING.rates["openai/gpt-4o"]
        assert pricing.default == ModelRate(1.0, 2.0)

    def test_json_string(self, ctx):
        ctx.config["MODEL_PRICING"] = json.dumps({"m": {"input_cost_per_1k": 1, "output_cost_per_1k": 1}})
        assert dashboard.get_pricing().rate_for("m") == ModelRate(1.0, 1.0)

    def test_invalid_json(self, ctx):
        ctx.config["MODEL_PRICING"] = "{nope"
        with pytest.raises(dashboard.PricingConfigError, match="MODEL_PRICING"):
            dashboard.get_pricing()

    @pytest.mark.parametrize("value", [
        {"m": {"input_cost_per_1k": "cheap", "output_cost_per_1k": 1}},
        {"m": {"input_cost_per_1k": 1}},
        "[1, 2]",
    ])
    def test_malformed_entries(self, ctx, value):
        ctx.config["MODEL_PRICING"] = value
        with pytest.raises(dashboard.PricingConfigError):
            dashboard.get_pricing()

    def test_misconfiguration_is_not_a_value_error(self, ctx):
        ctx.config["DEFAULT_INPUT_COST_PER_1K"] = "free"
        with pytest.raises(dashboard.PricingConfigError) as excinfo:
            dashboard.get_pricing()
        assert not isinstance(excinfo.value, ValueError)

    def test_outside_app_context_uses_builtin_default(self):
        assert dashboard.get_pricing().default == DEFAULT_PRICING.default


class TestDisplayTimezone:
    def test_unknown_zone_falls_back_to_utc(self, ctx):
        ctx.config["DISPLAY_TIMEZONE"] = "Mars/Olympus"
        assert dashboard._display_tz() == timezone.utc
