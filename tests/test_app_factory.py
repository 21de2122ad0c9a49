"""Tests for the Flask application factory defined in fleet_dash.app.

Verifies that the app can be created and configured, and that the JSON API
routes respond correctly, including their 400 handling of bad parameters.
"""

from __future__ import annotations

import io
import json
from datetime import datetime, timedelta, timezone

import pytest

from fleet_dash import __version__, create_app
from fleet_dash.db import insert_execution_logs_batch, insert_request_logs_batch, upsert_agent, upsert_server
from fleet_dash.models import Agent, ExecutionRow, RequestRow, Server


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def app(tmp_path):
    """Create a test Flask application pointing at a temporary database."""
    test_config = {
        "DATABASE": str(tmp_path / "test_fleet_dash.db"),
        "UPLOAD_FOLDER": str(tmp_path / "uploads"),
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "ENABLE_SYNC": False,
        "DEFAULT_ORGANIZATION_ID": "org1",
        "DISPLAY_TIMEZONE": "UTC",
    }
    return create_app(test_config)


@pytest.fixture()
def client(app):
    """Return a Flask test client."""
    return app.test_client()


@pytest.fixture()
def seeded(app):
    """One agent on one server with a few recent log rows."""
    now = datetime.now(tz=timezone.utc)
    with app.app_context():
        upsert_server(Server(id="s1", name="Search", slug="search", icon_path="/s1.png"), "org1")
        upsert_agent(Agent(id="a1", name="Alpha", slug="alpha", server_ids=("s1",)), "org1")
        insert_execution_logs_batch([
            ExecutionRow(id=f"e{i}", agent_id="a1", created_at=now - timedelta(minutes=10 * (i + 1)),
                         success=i != 0)
            for i in range(3)
        ], "org1")
        insert_request_logs_batch([
            RequestRow(id="r1", server_id="s1", created_at=now - timedelta(minutes=5),
                       http_status=200, input_tokens=1000, output_tokens=100),
        ], "org1")
    return app


# ---------------------------------------------------------------------------
# Factory tests
# ---------------------------------------------------------------------------

class TestCreateApp:
    def test_custom_database_path(self, app, tmp_path):
        assert app.config["DATABASE"] == str(tmp_path / "test_fleet_dash.db")

    def test_testing_flag(self, app):
        assert app.config["TESTING"] is True

    def test_default_config_values(self, app):
        assert app.config["ALLOWED_EXTENSIONS"] == frozenset({"csv", "json"})
        assert app.config["MAX_CONTENT_LENGTH"] == 16 * 1024 * 1024
        assert app.config["PAGE_SIZE"] == 20

    def test_upload_folder_created(self, app, tmp_path):
        assert (tmp_path / "uploads").is_dir()

    def test_env_database_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLEET_DASH_DATABASE_URL", str(tmp_path / "env.db"))
        application = create_app({"TESTING": True, "UPLOAD_FOLDER": str(tmp_path / "up")})
        assert application.config["DATABASE"] == str(tmp_path / "env.db")

    def test_config_object_wins_over_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLEET_DASH_DATABASE_URL", str(tmp_path / "env.db"))
        application = create_app({"DATABASE": str(tmp_path / "explicit.db"), "UPLOAD_FOLDER": str(tmp_path / "up")})
        assert application.config["DATABASE"] == str(tmp_path / "explicit.db")

    def test_malformed_pricing_fails_at_startup(self, tmp_path):
        from fleet_dash.dashboard import PricingConfigError

        with pytest.raises(PricingConfigError):
            create_app({
                "DATABASE": str(tmp_path / "p.db"),
                "UPLOAD_FOLDER": str(tmp_path / "up"),
                "MODEL_PRICING": "{nope",
            })


class TestPackage:
    def test_version_string(self):
        assert isinstance(__version__, str)
        assert __version__


# ---------------------------------------------------------------------------
# Route tests
# ---------------------------------------------------------------------------

class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok", "version": __version__}

    def test_unknown_route_returns_404(self, client):
        assert client.get("/nonexistent-route-xyz").status_code == 404


class TestDashboardRoutes:
    @pytest.mark.parametrize("path", [
        "/api/stats",
        "/api/charts/executions",
        "/api/charts/requests",
        "/api/charts/costs",
        "/api/agents/performance",
        "/api/servers/health",
        "/api/pii/stats",
        "/api/costs/agents",
        "/api/schedules/timeline",
        "/api/executions",
        "/api/requests",
        "/api/sync/status",
    ])
    def test_empty_store_returns_200(self, client, path):
        response = client.get(path)
        assert response.status_code == 200
        assert response.get_json() is not None

    def test_stats(self, client, seeded):
        data = client.get("/api/stats").get_json()
        assert data["agent_count"] == 1
        assert data["server_count"] == 1
        assert data["last24h_request_count"] == 1
        assert data["next_schedule"] is None

    def test_org_param_scopes_results(self, client, seeded):
        assert client.get("/api/stats?org=other").get_json()["agent_count"] == 0

    def test_execution_chart_range(self, client, seeded):
        data = client.get("/api/charts/executions?range=7d").get_json()
        assert len(data["data"]) == 8
        assert data["total"] == 3
        assert data["error_total"] == 1

    def test_agent_performance(self, client, seeded):
        agents = client.get("/api/agents/performance?range=24h").get_json()["agents"]
        assert agents[0]["agent_id"] == "a1"
        assert agents[0]["total_executions"] == 3
        assert isinstance(agents[0]["last_execution_at"], str)

    def test_server_health(self, client, seeded):
        servers = client.get("/api/servers/health").get_json()["servers"]
        assert servers[0]["icon_path"] == "/s1.png"
        assert servers[0]["request_count"] == 1

    def test_pii_stats_from_imported_requests(self, client, app):
        created_at = datetime.now(tz=timezone.utc).isoformat()
        payload = json.dumps([{
            "id": "p1", "mcpServerId": "s1", "createdAt": created_at, "piiMaskingMode": "BOTH",
            "piiDetectedRequestCount": 1, "piiDetectedResponseCount": 2,
            "piiDetectedInfoTypes": ["EMAIL_ADDRESS"],
        }])
        client.post(
            "/api/import",
            data={"file": (io.BytesIO(payload.encode()), "pii.json"), "kind": "requests"},
            content_type="multipart/form-data",
        )
        data = client.get("/api/pii/stats?range=24h").get_json()
        assert data["total_detections"] == 3
        assert data["masked_request_count"] == 1
        assert data["info_type_breakdown"] == [{"info_type": "EMAIL_ADDRESS", "count": 1}]
        assert data["trend_data"]["success_total"] == 1

    def test_cost_breakdown(self, client, seeded):
        data = client.get("/api/costs/agents?range=30d").get_json()
        assert data["agents"][0]["input_tokens"] == 1000

    @pytest.mark.parametrize("path", [
        "/api/charts/executions?range=1y",
        "/api/charts/costs?range=week",
        "/api/agents/performance?range=forever",
        "/api/pii/stats?range=1y",
        "/api/schedules/timeline?range=month",
        "/api/executions?limit=abc",
        "/api/executions?limit=0",
        "/api/requests?limit=101",
    ])
    def test_bad_parameters_return_400(self, client, path):
        response = client.get(path)
        assert response.status_code == 400
        assert "error" in response.get_json()

    def test_pricing_broken_after_startup_is_a_server_error(self, client, app):
        app.config["MODEL_PRICING"] = "{nope"
        response = client.get("/api/costs/agents")
        assert response.status_code == 500
        assert response.get_json() == {"error": "Internal server error"}


class TestLogPageRoutes:
    def test_executions_paginate(self, client, seeded):
        first = client.get("/api/executions?limit=2").get_json()
        assert [i["id"] for i in first["items"]] == ["e0", "e1"]
        assert first["items"][0]["agent_name"] == "Alpha"
        assert first["next_cursor"] == "e1"

        second = client.get(f"/api/executions?limit=2&cursor={first['next_cursor']}").get_json()
        assert [i["id"] for i in second["items"]] == ["e2"]
        assert "next_cursor" not in second

    def test_executions_agent_filter(self, client, seeded):
        assert client.get("/api/executions?agent=nobody").get_json() == {"items": []}

    def test_requests_server_filter(self, client, seeded):
        items = client.get("/api/requests?server=s1").get_json()["items"]
        assert [i["id"] for i in items] == ["r1"]
        assert items[0]["created_at"].endswith("+00:00")

    def test_unknown_cursor_gives_empty_page(self, client, seeded):
        assert client.get("/api/requests?cursor=missing").get_json() == {"items": []}


class TestImportRoute:
    def _post(self, client, content: bytes, filename: str, kind: str = "executions", **form):
        data = {"file": (io.BytesIO(content), filename), "kind": kind, **form}
        return client.post("/api/import", data=data, content_type="multipart/form-data")

    def test_import_csv(self, client, app):
        csv = b"id,agent_id,success,created_at\ne1,a1,true,2024-03-15T10:00:00Z\n"
        response = self._post(client, csv, "runs.csv")
        assert response.status_code == 200
        assert response.get_json() == {"imported": 1, "filename": "runs.csv"}

    def test_import_json_for_other_org(self, client, app):
        payload = json.dumps([{"id": "r1", "server_id": "s1", "created_at": "2024-03-15T10:00:00Z"}])
        response = self._post(client, payload.encode(), "reqs.json", kind="requests", org="org9")
        assert response.get_json()["imported"] == 1
        assert client.get("/api/requests?org=org9").get_json()["items"][0]["id"] == "r1"

    def test_uploaded_file_is_removed(self, client, app, tmp_path):
        self._post(client, b"id,agent_id,created_at\n", "empty.csv")
        assert list((tmp_path / "uploads").iterdir()) == []

    def test_no_file(self, client):
        response = client.post("/api/import", data={"kind": "executions"})
        assert response.status_code == 400

    def test_bad_extension(self, client):
        response = self._post(client, b"x", "runs.txt")
        assert response.status_code == 400
        assert "not allowed" in response.get_json()["error"]

    def test_unknown_kind(self, client):
        response = self._post(client, b"id\n1\n", "runs.csv", kind="metrics")
        assert response.status_code == 400
        assert "Unknown log kind" in response.get_json()["error"]

    def test_malformed_json(self, client):
        response = self._post(client, b"{nope", "runs.json")
        assert response.status_code == 400
        assert "could not be parsed" in response.get_json()["error"]


class TestSyncStatusRoute:
    def test_not_running(self, client):
        data = client.get("/api/sync/status").get_json()
        assert data["running"] is False
        assert data["recent_runs"] == []

    def test_lists_recorded_runs(self, client, app):
        from fleet_dash.db import record_sync_run

        with app.app_context():
            record_sync_run("executions", "2024-03-15T10:00:00+00:00", "2024-03-15T10:00:01+00:00", 4)
        runs = client.get("/api/sync/status").get_json()["recent_runs"]
        assert runs[0]["records_fetched"] == 4
