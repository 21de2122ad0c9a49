"""fleet_dash - usage analytics and schedule forecasting for agent fleets.

This package turns execution logs, server request logs, and recurring
schedule definitions into dashboard figures: time-bucketed success/error
counts, per-agent performance, per-server health, token cost attributed to
agents, and a merged forecast of upcoming scheduled runs.  A Flask JSON API
over a SQLite log store serves the figures.

Usage::

    from fleet_dash import create_app

    app = create_app()
    app.run()

Or via the CLI entry point::

    fleet-dash
"""

__version__ = "0.1.0"

from fleet_dash.app import create_app  # noqa: E402

__all__ = ["create_app"]
