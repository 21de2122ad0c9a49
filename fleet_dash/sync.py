"""Background log source sync for fleet_dash.

This module provides a background thread that periodically pulls new
execution and request log rows from a remote log-export API and stores them
through the ingest and DB modules.

Design overview
---------------
* :class:`SyncThread` is a daemon :class:`threading.Thread` subclass that
  runs forever, sleeping for ``SYNC_INTERVAL_SECONDS`` between cycles.
* :class:`LogSource` is the shared HTTP client; :class:`ExecutionLogSource` and
  :class:`RequestLogSource` pull one log kind each.
* :func:`start_sync` creates and starts the background thread; it is called
  from the Flask app factory when ``ENABLE_SYNC=true``.
* :func:`stop_sync` signals the thread to stop (for graceful shutdown).

Sync is incremental: each cycle asks the source only for rows created at or
after the newest ``created_at`` already stored.  Duplicate ids are ignored
on insert, so the overlap at the boundary is harmless.

Log source API
--------------
``GET {LOG_SOURCE_URL}/executions`` and ``GET {LOG_SOURCE_URL}/requests``
with query parameters ``organization_id``, ``since`` (ISO-8601, optional)
and ``cursor`` (optional).  Responses are JSON in any shape understood by
:func:`fleet_dash.ingest.unwrap_json_records`; an object response may carry
``next_cursor`` to request the following page.

All network errors are caught and recorded in the ``sync_runs`` table so
operators can diagnose connectivity problems without crashing the server.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional

import requests

from fleet_dash.db import latest_created_at, record_sync_run
from fleet_dash.ingest import (
    KIND_EXECUTIONS,
    KIND_REQUESTS,
    ingest_records,
    unwrap_json_records,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_SYNC_INTERVAL = 300  # seconds
_REQUEST_TIMEOUT = 30  # seconds per HTTP request
_MAX_PAGES_PER_CYCLE = 50


# ---------------------------------------------------------------------------
# Log sources
# ---------------------------------------------------------------------------

class LogSource:
    """Base class for remote log-export endpoints.

    Args:
        base_url: Root URL of the log-export API; ``None`` disables the source.
        token: Bearer token sent with every request, if any.
        organization_id: Tenant whose rows are requested.
        session: A :class:`requests.Session` to use for HTTP calls.  A new
            session is created if ``None``.
    """

    #: Log kind passed to :func:`fleet_dash.ingest.ingest_records`.
    kind: str = ""
    #: Path appended to ``base_url``.
    path: str = ""

    def __init__(
        self,
        base_url: Optional[str],
        token: Optional[str] = None,
        organization_id: str = "default",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.token = token
        self.organization_id = organization_id
        self.session = session or requests.Session()
        self._configure_session()

    def _configure_session(self) -> None:
        self.session.headers.update({
            "User-Agent": "fleet_dash/0.1.0",
            "Accept": "application/json",
        })
        if self.token:
            self.session.headers["Authorization"] = f"Bearer {self.token}"

    def is_configured(self) -> bool:
        """Return ``True`` if a base URL has been supplied for this source."""
        return bool(self.base_url)

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.path}"

    def fetch_records(self, since: Optional[datetime] = None) -> list[dict[str, Any]]:
        """Fetch raw log records created at or after *since*.

        Follows ``next_cursor`` links until the source reports no more pages
        or the per-cycle page cap is reached.

        Returns:
            Raw record dicts, possibly empty.

        Raises:
            requests.RequestException: On network or HTTP errors.
            ValueError: If a response body is not valid JSON.
        """
        if not self.is_configured():
            logger.debug("%s: no base URL configured; skipping.", type(self).__name__)
            return []

        params: dict[str, Any] = {"organization_id": self.organization_id}
        if since is not None:
            params["since"] = since.astimezone(timezone.utc).isoformat()

        records: list[dict[str, Any]] = []
        for _ in range(_MAX_PAGES_PER_CYCLE):
            try:
                response = self.session.get(self.url, params=params, timeout=_REQUEST_TIMEOUT)
                response.raise_for_status()
            except requests.HTTPError as exc:
                logger.warning(
                    "%s: HTTP %d from %s: %s",
                    type(self).__name__,
                    exc.response.status_code if exc.response is not None else -1,
                    self.url,
                    exc,
                )
                raise
            except requests.RequestException as exc:
                logger.warning("%s: network error: %s", type(self).__name__, exc)
                raise

            payload = response.json()
            records.extend(unwrap_json_records(payload))
            next_cursor = payload.get("next_cursor") if isinstance(payload, dict) else None
            if not next_cursor:
                break
            params["cursor"] = next_cursor
        else:
            logger.warning(
                "%s: stopped after %d pages; remaining rows are fetched next cycle.",
                type(self).__name__, _MAX_PAGES_PER_CYCLE,
            )

        logger.debug("%s: fetched %d records.", type(self).__name__, len(records))
        return records


class ExecutionLogSource(LogSource):
    """Agent execution logs."""

    kind = KIND_EXECUTIONS
    path = "executions"


class RequestLogSource(LogSource):
    """Server request logs."""

    kind = KIND_REQUESTS
    path = "requests"


# ---------------------------------------------------------------------------
# Sync thread
# ---------------------------------------------------------------------------

class SyncThread(threading.Thread):
    """Background daemon thread that syncs log sources on a fixed schedule.

    Call :meth:`stop` to request a clean shutdown.

    Args:
        app: The Flask application instance.  Used to push an application
            context so DB helpers work correctly inside the thread.
        interval: Seconds to sleep between sync cycles.
        sources: Log sources to pull each cycle.  Defaults to the sources
            built from the app's config.
    """

    def __init__(
        self,
        app: Any,  # flask.Flask
        interval: int = _DEFAULT_SYNC_INTERVAL,
        sources: Optional[list[LogSource]] = None,
    ) -> None:
        super().__init__(name="fleet_dash-sync", daemon=True)
        self._app = app
        self.interval = interval
        self._sources = sources if sources is not None else build_sources(app)
        self._stop_event = threading.Event()

    def run(self) -> None:
        """Main loop: sync all sources, wait, repeat."""
        logger.info(
            "SyncThread started (interval=%ds, sources=%s).",
            self.interval,
            [s.kind for s in self._sources],
        )
        while not self._stop_event.is_set():
            self.run_cycle()
            self._stop_event.wait(self.interval)
        logger.info("SyncThread stopped.")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the thread to stop and wait up to *timeout* seconds."""
        logger.info("SyncThread: stop requested.")
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)

    def run_cycle(self) -> None:
        """Execute one sync cycle across all configured sources."""
        logger.debug("SyncThread: beginning sync cycle.")
        with self._app.app_context():
            for source in self._sources:
                if not source.is_configured():
                    logger.debug("Skipping %s source: not configured.", source.kind)
                    continue
                self._sync_one(source)
        logger.debug("SyncThread: sync cycle complete.")

    def _sync_one(self, source: LogSource) -> None:
        """Pull one source, store the rows, and record the attempt."""
        started_at = _utcnow_iso()
        records_fetched = 0
        error_message: Optional[str] = None

        try:
            since = latest_created_at(source.kind, source.organization_id)
            raw_records = source.fetch_records(since)
            records_fetched = len(raw_records)
            if raw_records:
                inserted = ingest_records(
                    raw_records, source.kind, source.organization_id, source_format="api"
                )
                logger.info("Sync: inserted %d new %s records.", inserted, source.kind)
            else:
                logger.info("Sync: no %s records returned.", source.kind)
        except Exception as exc:  # noqa: BLE001
            error_message = str(exc)
            logger.error("Sync: error fetching %s: %s", source.kind, exc)

        try:
            record_sync_run(
                source=source.kind,
                started_at=started_at,
                finished_at=_utcnow_iso(),
                records_fetched=records_fetched,
                error_message=error_message,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Sync: failed to record sync_run for %s: %s", source.kind, exc)


# ---------------------------------------------------------------------------
# Module-level singleton management
# ---------------------------------------------------------------------------

_sync_thread: Optional[SyncThread] = None
_sync_lock = threading.Lock()


def start_sync(app: Any) -> Optional[SyncThread]:
    """Create and start the background sync thread.

    Idempotent: calling it when a thread is already running returns the
    existing thread.

    Returns:
        The running :class:`SyncThread`, or ``None`` when no log source URL
        is configured.
    """
    global _sync_thread  # noqa: PLW0603

    with _sync_lock:
        if _sync_thread is not None and _sync_thread.is_alive():
            logger.info("start_sync: thread already running; skipping.")
            return _sync_thread

        interval = int(app.config.get("SYNC_INTERVAL_SECONDS", _DEFAULT_SYNC_INTERVAL))
        sources = [s for s in build_sources(app) if s.is_configured()]
        if not sources:
            logger.info("start_sync: LOG_SOURCE_URL not configured; sync not started.")
            return None

        thread = SyncThread(app, interval=interval, sources=sources)
        thread.start()
        _sync_thread = thread
        logger.info("start_sync: thread started (interval=%ds).", interval)
        return thread


def stop_sync(timeout: float = 5.0) -> None:
    """Stop the running background sync thread, if any."""
    global _sync_thread  # noqa: PLW0603

    with _sync_lock:
        if _sync_thread is None or not _sync_thread.is_alive():
            logger.debug("stop_sync: no running thread to stop.")
            _sync_thread = None
            return
        _sync_thread.stop(timeout=timeout)
        _sync_thread = None
        logger.info("stop_sync: thread stopped.")


def get_sync_status() -> dict[str, Any]:
    """Return a dict describing the current sync thread status.

    Returns:
        ``{"running": bool, "thread_name": str | None,
        "interval_seconds": int | None}``
    """
    with _sync_lock:
        if _sync_thread is None or not _sync_thread.is_alive():
            return {"running": False, "thread_name": None, "interval_seconds": None}
        return {
            "running": True,
            "thread_name": _sync_thread.name,
            "interval_seconds": _sync_thread.interval,
        }


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def build_sources(app: Any) -> list[LogSource]:
    """Instantiate the execution and request log sources from app config."""
    base_url: Optional[str] = app.config.get("LOG_SOURCE_URL")
    token: Optional[str] = app.config.get("LOG_SOURCE_TOKEN")
    organization_id: str = app.config.get("DEFAULT_ORGANIZATION_ID", "default")
    return [
        ExecutionLogSource(base_url, token=token, organization_id=organization_id),
        RequestLogSource(base_url, token=token, organization_id=organization_id),
    ]


def _utcnow_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
