"""Flask application factory, route registration, and server entry point.

This module defines the ``create_app`` factory function which initialises the
Flask application with configuration, the database, and the JSON API routes.
It also provides a ``main`` entry point consumed by the ``fleet-dash`` CLI
command declared in ``pyproject.toml``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from flask import Flask

# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Load .env file from project root (if present)
# ---------------------------------------------------------------------------

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")


# ---------------------------------------------------------------------------
# Default configuration
# ---------------------------------------------------------------------------

class DefaultConfig:
    """Default configuration values for the fleet_dash Flask application."""

    #: SQLite database file path (can be overridden via FLEET_DASH_DATABASE_URL env var)
    DATABASE: str = str(_PROJECT_ROOT / "fleet_dash.db")

    #: Flask secret key (must be overridden in production)
    SECRET_KEY: str = os.environ.get("SECRET_KEY", "dev-secret-change-in-production")

    #: Maximum content length for file uploads (16 MB)
    MAX_CONTENT_LENGTH: int = 16 * 1024 * 1024

    #: Allowed extensions for log file uploads
    ALLOWED_EXTENSIONS: frozenset = frozenset({"csv", "json"})

    #: Tenant used when a request carries no ``org`` parameter
    DEFAULT_ORGANIZATION_ID: str = os.environ.get("DEFAULT_ORGANIZATION_ID", "default")

    #: IANA timezone used for chart labels and "today"
    DISPLAY_TIMEZONE: str = os.environ.get("DISPLAY_TIMEZONE", "UTC")

    #: Per-model token prices as JSON (overrides the built-in table)
    MODEL_PRICING: Optional[str] = os.environ.get("FLEET_DASH_MODEL_PRICING")

    #: Fallback USD price per 1,000 tokens for unknown models
    DEFAULT_INPUT_COST_PER_1K: float = float(os.environ.get("DEFAULT_INPUT_COST_PER_1K", "0.003"))
    DEFAULT_OUTPUT_COST_PER_1K: float = float(os.environ.get("DEFAULT_OUTPUT_COST_PER_1K", "0.015"))

    #: Maximum number of upcoming runs on the schedule timeline
    SCHEDULE_TIMELINE_LIMIT: int = int(os.environ.get("SCHEDULE_TIMELINE_LIMIT", "20"))

    #: Default page size of the log pagers
    PAGE_SIZE: int = int(os.environ.get("PAGE_SIZE", "20"))

    #: Whether to start the background log sync on app startup
    ENABLE_SYNC: bool = os.environ.get("ENABLE_SYNC", "false").lower() == "true"

    #: Sync interval in seconds
    SYNC_INTERVAL_SECONDS: int = int(os.environ.get("SYNC_INTERVAL_SECONDS", "300"))

    #: Remote log-export API (optional; only needed for sync mode)
    LOG_SOURCE_URL: Optional[str] = os.environ.get("LOG_SOURCE_URL")
    LOG_SOURCE_TOKEN: Optional[str] = os.environ.get("LOG_SOURCE_TOKEN")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(config_object: Optional[object] = None) -> Flask:
    """Create and configure the Flask application instance.

    Args:
        config_object: An optional configuration object or dict that will be
            loaded on top of :class:`DefaultConfig`.

    Returns:
        A fully configured :class:`flask.Flask` application instance.

    Example::

        app = create_app({"DATABASE": "/tmp/fleet.db"})
        app.run(debug=True)
    """
    app = Flask(__name__)

    app.config.from_object(DefaultConfig)

    if db_url := os.environ.get("FLEET_DASH_DATABASE_URL"):
        app.config["DATABASE"] = db_url
        logger.info("Using database path from FLEET_DASH_DATABASE_URL: %s", db_url)

    if config_object is not None:
        if isinstance(config_object, dict):
            app.config.update(config_object)
        else:
            app.config.from_object(config_object)
        logger.debug("Loaded custom configuration: %s", config_object)

    _ensure_directory(Path(app.config["DATABASE"]).parent)

    upload_folder = Path(app.config.get("UPLOAD_FOLDER") or _PROJECT_ROOT / "uploads")
    _ensure_directory(upload_folder)
    app.config["UPLOAD_FOLDER"] = str(upload_folder)

    from fleet_dash.db import wire_db
    wire_db(app)

    # Fail at startup rather than on the first cost request.
    from fleet_dash.dashboard import get_pricing
    with app.app_context():
        get_pricing()

    _register_routes(app)

    if app.config.get("ENABLE_SYNC", False):
        from fleet_dash.sync import start_sync
        start_sync(app)

    logger.info(
        "fleet_dash application created | database=%s | sync=%s",
        app.config["DATABASE"],
        app.config["ENABLE_SYNC"],
    )
    return app


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _ensure_directory(path: Path) -> None:
    """Create *path* and all intermediate parents if they do not already exist.

    Raises:
        OSError: If the directory cannot be created due to permission issues.
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Failed to create directory %s: %s", path, exc)
        raise


def _allowed_file(filename: str, allowed_extensions: frozenset) -> bool:
    """Return True if the filename has an allowed extension."""
    return (
        "." in filename
        and filename.rsplit(".", 1)[1].lower() in allowed_extensions
    )


def _register_routes(app: Flask) -> None:
    """Register all URL routes on the Flask application."""
    from flask import jsonify, request
    from werkzeug.utils import secure_filename

    from fleet_dash import dashboard
    from fleet_dash.utils import to_jsonable

    def org_param() -> str:
        return request.args.get("org") or app.config["DEFAULT_ORGANIZATION_ID"]

    def respond(endpoint: str, compute: Callable[[], Any]):
        """Run *compute* and map its result or failure onto a JSON response."""
        try:
            return jsonify(to_jsonable(compute())), 200
        except ValueError as exc:
            logger.info("Bad request to %s: %s", endpoint, exc)
            return jsonify({"error": str(exc)}), 400
        except Exception as exc:
            logger.exception("Error in %s: %s", endpoint, exc)
            return jsonify({"error": "Internal server error"}), 500

    # ------------------------------------------------------------------
    # Health check
    # ------------------------------------------------------------------

    @app.route("/health", methods=["GET"])
    def health_check():
        """Return ``{"status": "ok", "version": ...}``."""
        from fleet_dash import __version__
        return jsonify({"status": "ok", "version": __version__}), 200

    # ------------------------------------------------------------------
    # Stats and charts
    # ------------------------------------------------------------------

    @app.route("/api/stats", methods=["GET"])
    def api_stats():
        """Headline counters for the stats cards."""
        return respond("/api/stats", lambda: dashboard.get_dashboard_stats(org_param()))

    @app.route("/api/charts/executions", methods=["GET"])
    def api_execution_chart():
        """Execution counts per bucket.  Query: ``range`` = 24h | 7d | 30d."""
        return respond(
            "/api/charts/executions",
            lambda: dashboard.get_execution_chart(org_param(), request.args.get("range")),
        )

    @app.route("/api/charts/requests", methods=["GET"])
    def api_request_chart():
        """Request counts per bucket.  Query: ``range``."""
        return respond(
            "/api/charts/requests",
            lambda: dashboard.get_request_chart(org_param(), request.args.get("range")),
        )

    @app.route("/api/charts/costs", methods=["GET"])
    def api_cost_chart():
        """Token usage and estimated cost per bucket.  Query: ``range``."""
        return respond(
            "/api/charts/costs",
            lambda: dashboard.get_cost_trend(org_param(), request.args.get("range")),
        )

    # ------------------------------------------------------------------
    # Per-entity panels
    # ------------------------------------------------------------------

    @app.route("/api/agents/performance", methods=["GET"])
    def api_agent_performance():
        return respond(
            "/api/agents/performance",
            lambda: dashboard.get_agent_performance(org_param(), request.args.get("range")),
        )

    @app.route("/api/servers/health", methods=["GET"])
    def api_server_health():
        return respond("/api/servers/health", lambda: dashboard.get_server_health(org_param()))

    @app.route("/api/costs/agents", methods=["GET"])
    def api_agent_costs():
        return respond(
            "/api/costs/agents",
            lambda: dashboard.get_agent_cost_breakdown(org_param(), request.args.get("range")),
        )

    @app.route("/api/pii/stats", methods=["GET"])
    def api_pii_stats():
        """PII detections on masked requests.  Query: ``range``."""
        return respond(
            "/api/pii/stats",
            lambda: dashboard.get_pii_stats(org_param(), request.args.get("range")),
        )

    @app.route("/api/schedules/timeline", methods=["GET"])
    def api_schedule_timeline():
        """Upcoming runs.  Query: ``range`` = today | week."""
        return respond(
            "/api/schedules/timeline",
            lambda: dashboard.get_schedule_timeline(org_param(), request.args.get("range")),
        )

    # ------------------------------------------------------------------
    # Log pages
    # ------------------------------------------------------------------

    @app.route("/api/executions", methods=["GET"])
    def api_executions():
        """Completed executions, newest first.  Query: ``limit``, ``cursor``, ``agent``."""
        return respond(
            "/api/executions",
            lambda: dashboard.get_recent_executions(
                org_param(),
                limit=_int_arg(request.args.get("limit")),
                cursor=request.args.get("cursor") or None,
                agent_id=request.args.get("agent") or None,
            ),
        )

    @app.route("/api/requests", methods=["GET"])
    def api_requests():
        """Server request logs, newest first.  Query: ``limit``, ``cursor``, ``server``."""
        return respond(
            "/api/requests",
            lambda: dashboard.get_request_log_page(
                org_param(),
                limit=_int_arg(request.args.get("limit")),
                cursor=request.args.get("cursor") or None,
                server_id=request.args.get("server") or None,
            ),
        )

    # ------------------------------------------------------------------
    # File import
    # ------------------------------------------------------------------

    @app.route("/api/import", methods=["POST"])
    def api_import():
        """Import an uploaded CSV / JSON execution or request log export.

        Form fields: ``file`` (the upload) and ``kind`` (``executions`` or
        ``requests``).

        Returns:
            ``{"imported": int, "filename": str}`` on success.
        """
        from fleet_dash.ingest import IngestError, MalformedLogError, ingest_file

        if "file" not in request.files:
            return jsonify({"error": "No file part in the request."}), 400

        file = request.files["file"]
        if not file or file.filename == "":
            return jsonify({"error": "No file selected."}), 400

        filename = secure_filename(file.filename or "")
        if not _allowed_file(filename, app.config["ALLOWED_EXTENSIONS"]):
            return jsonify({"error": "File type not allowed. Upload a CSV or JSON file."}), 400

        kind = (request.form.get("kind") or "").strip().lower()
        organization_id = request.form.get("org") or org_param()

        file_path = Path(app.config["UPLOAD_FOLDER"]) / filename
        try:
            file.save(str(file_path))
        except OSError as exc:
            logger.error("Failed to save uploaded file: %s", exc)
            return jsonify({"error": "Failed to save uploaded file."}), 500

        try:
            count = ingest_file(file_path, kind, organization_id)
            logger.info("Imported %d %s records from uploaded file '%s'.", count, kind, filename)
            return jsonify({"imported": count, "filename": filename}), 200
        except MalformedLogError as exc:
            return jsonify({"error": f"File could not be parsed: {exc}"}), 400
        except IngestError as exc:
            return jsonify({"error": f"Ingestion failed: {exc}"}), 400
        except Exception as exc:
            logger.exception("Unexpected error during file ingest: %s", exc)
            return jsonify({"error": "An unexpected error occurred during import."}), 500
        finally:
            try:
                os.remove(str(file_path))
            except OSError:
                logger.debug("Uploaded file %s already removed.", file_path)

    # ------------------------------------------------------------------
    # Sync status
    # ------------------------------------------------------------------

    @app.route("/api/sync/status", methods=["GET"])
    def api_sync_status():
        """Background sync thread state plus the latest recorded attempts."""
        from fleet_dash.db import get_recent_sync_runs
        from fleet_dash.sync import get_sync_status

        def compute() -> dict[str, Any]:
            status = get_sync_status()
            status["recent_runs"] = get_recent_sync_runs(limit=10)
            return status

        return respond("/api/sync/status", compute)

    logger.debug(
        "Routes registered: %s",
        [str(rule) for rule in app.url_map.iter_rules()],
    )


def _int_arg(value: Optional[str]) -> Optional[int]:
    """Parse an optional integer query parameter.

    Raises:
        ValueError: If *value* is present but not an integer.
    """
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Expected an integer, got {value!r}") from None


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """CLI entry point invoked by the ``fleet-dash`` console script.

    Reads host, port, and debug settings from environment variables::

        FLASK_HOST  (default: 127.0.0.1)
        FLASK_PORT  (default: 5000)
        FLASK_DEBUG (default: false)
    """
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", "5000"))
    debug = os.environ.get("FLASK_DEBUG", "false").lower() == "true"

    app = create_app()
    logger.info("Starting fleet_dash on %s:%d (debug=%s)", host, port, debug)
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    main()
