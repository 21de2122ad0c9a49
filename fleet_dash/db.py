"""SQLite database initialization, schema creation, and query helpers.

This module owns the full database lifecycle for fleet_dash:

* :func:`init_db` – creates all tables if they do not exist.
* :func:`get_db` – returns a per-request ``sqlite3.Connection`` stored on
  Flask's ``g`` proxy, creating it on first call.
* :func:`close_db` – teardown function registered with the app to close the
  connection at the end of each request.
* :func:`wire_db` – called from the app factory to register ``close_db`` and
  run ``init_db`` against the configured database path.

It is also the log store gateway of the dashboard: every fetcher below
returns validated model objects built by :mod:`fleet_dash.ingest`, so the
analytics engine never sees a raw ``sqlite3.Row``.

Schema overview
---------------
Every table carries an ``organization_id`` and every read is scoped by it.
Timestamps are stored as UTC ISO-8601 text with microsecond precision so
that lexical order is chronological order.

Table: ``agents``
    id, organization_id, name, slug, icon_path, model_id, created_at

Table: ``servers``
    id, organization_id, name, slug, icon_path, template_icon_path, status

Table: ``agent_servers``
    agent_id, server_id          -- which servers an agent depends on

Table: ``execution_logs``
    id, organization_id, agent_id, success (NULL while running),
    duration_ms, model_id, schedule_name, created_at, imported_at

Table: ``request_logs``
    id, organization_id, server_id, http_status, duration_ms,
    input_tokens, output_tokens, pii_masking_mode,
    pii_detected_request_count, pii_detected_response_count,
    pii_detected_info_types (JSON array), created_at, imported_at

Table: ``schedules``
    id, organization_id, agent_id, name, cron_expression, timezone, is_active

Table: ``sync_runs``
    id, source, started_at, finished_at, records_fetched, error_message
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from flask import Flask, g

from fleet_dash.ingest import (
    parse_agent,
    parse_execution_row,
    parse_request_row,
    parse_schedule,
    parse_server,
    parse_timestamp,
    parse_token_summary,
)
from fleet_dash.models import (
    Agent,
    ExecutionRow,
    RequestRow,
    ScheduleDefinition,
    Server,
    TokenSummary,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# SQL DDL statements
# ---------------------------------------------------------------------------

_DDL_AGENTS = """
CREATE TABLE IF NOT EXISTS agents (
    id              TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    name            TEXT NOT NULL,
    slug            TEXT NOT NULL,
    icon_path       TEXT,
    model_id        TEXT,
    created_at      TEXT NOT NULL
);
"""

_DDL_SERVERS = """
CREATE TABLE IF NOT EXISTS servers (
    id                 TEXT PRIMARY KEY,
    organization_id    TEXT NOT NULL,
    name               TEXT NOT NULL,
    slug               TEXT NOT NULL,
    icon_path          TEXT,
    template_icon_path TEXT,
    status             TEXT
);
"""

_DDL_AGENT_SERVERS = """
CREATE TABLE IF NOT EXISTS agent_servers (
    agent_id  TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    server_id TEXT NOT NULL,
    PRIMARY KEY (agent_id, server_id)
);
"""

_DDL_EXECUTION_LOGS = """
CREATE TABLE IF NOT EXISTS execution_logs (
    id              TEXT PRIMARY KEY,
    organization_id TEXT    NOT NULL,
    agent_id        TEXT    NOT NULL,
    success         INTEGER,
    duration_ms     REAL,
    model_id        TEXT,
    schedule_name   TEXT,
    created_at      TEXT    NOT NULL,
    imported_at     TEXT    NOT NULL
);
"""

_DDL_REQUEST_LOGS = """
CREATE TABLE IF NOT EXISTS request_logs (
    id                          TEXT PRIMARY KEY,
    organization_id             TEXT    NOT NULL,
    server_id                   TEXT    NOT NULL,
    http_status                 INTEGER,
    duration_ms                 REAL,
    input_tokens                INTEGER,
    output_tokens               INTEGER,
    pii_masking_mode            TEXT,
    pii_detected_request_count  INTEGER,
    pii_detected_response_count INTEGER,
    pii_detected_info_types     TEXT    NOT NULL DEFAULT '[]',
    created_at                  TEXT    NOT NULL,
    imported_at                 TEXT    NOT NULL
);
"""

_DDL_SCHEDULES = """
CREATE TABLE IF NOT EXISTS schedules (
    id              TEXT PRIMARY KEY,
    organization_id TEXT    NOT NULL,
    agent_id        TEXT    NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    name            TEXT    NOT NULL,
    cron_expression TEXT    NOT NULL,
    timezone        TEXT    NOT NULL DEFAULT 'UTC',
    is_active       INTEGER NOT NULL DEFAULT 1
);
"""

_DDL_SYNC_RUNS = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    source          TEXT    NOT NULL,
    started_at      TEXT    NOT NULL,
    finished_at     TEXT,
    records_fetched INTEGER NOT NULL DEFAULT 0,
    error_message   TEXT
);
"""

_DDL_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_execution_logs_org_created ON execution_logs (organization_id, created_at, id);",
    "CREATE INDEX IF NOT EXISTS idx_execution_logs_agent_id    ON execution_logs (agent_id);",
    "CREATE INDEX IF NOT EXISTS idx_request_logs_org_created   ON request_logs   (organization_id, created_at, id);",
    "CREATE INDEX IF NOT EXISTS idx_request_logs_server_id     ON request_logs   (server_id);",
    "CREATE INDEX IF NOT EXISTS idx_schedules_org              ON schedules      (organization_id);",
    "CREATE INDEX IF NOT EXISTS idx_sync_runs_source           ON sync_runs      (source);",
]

_TABLES = [
    _DDL_AGENTS,
    _DDL_SERVERS,
    _DDL_AGENT_SERVERS,
    _DDL_EXECUTION_LOGS,
    _DDL_REQUEST_LOGS,
    _DDL_SCHEDULES,
    _DDL_SYNC_RUNS,
]

# Log tables that support incremental sync and keyset paging.
_LOG_TABLES = {"executions": "execution_logs", "requests": "request_logs"}

# Columns added after the first release; older databases get them on startup.
_ADDED_COLUMNS = {
    "request_logs": [
        ("pii_masking_mode", "TEXT"),
        ("pii_detected_request_count", "INTEGER"),
        ("pii_detected_response_count", "INTEGER"),
        ("pii_detected_info_types", "TEXT NOT NULL DEFAULT '[]'"),
    ],
}

_REQUEST_COLUMNS = (
    "id, server_id, http_status, duration_ms, input_tokens, output_tokens, "
    "pii_masking_mode, pii_detected_request_count, pii_detected_response_count, "
    "pii_detected_info_types, created_at"
)

#: Masking mode under which a server does not scan for PII.
PII_MASKING_DISABLED = "DISABLED"


# ---------------------------------------------------------------------------
# Low-level connection factory
# ---------------------------------------------------------------------------

def _open_connection(database_path: str) -> sqlite3.Connection:
    """Open a SQLite connection with sensible defaults.

    * ``row_factory`` is set to :class:`sqlite3.Row` so callers can access
      columns by name as well as index.
    * ``PRAGMA journal_mode=WAL`` reduces write contention for concurrent
      readers (background sync thread + web requests).
    * ``PRAGMA foreign_keys=ON`` enforces referential integrity.

    Args:
        database_path: File-system path to the SQLite database file.

    Returns:
        A configured :class:`sqlite3.Connection`.

    Raises:
        sqlite3.OperationalError: If the database file cannot be opened.
    """
    conn = sqlite3.connect(database_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------

def init_db(database_path: str) -> None:
    """Create all tables and indexes if they do not already exist.

    Idempotent, so it can be called on every startup without data loss.

    Raises:
        sqlite3.Error: If schema creation fails for any reason.
    """
    logger.info("Initialising database schema at: %s", database_path)
    conn = _open_connection(database_path)
    try:
        with conn:
            for stmt in _TABLES:
                conn.execute(stmt)
            _add_missing_columns(conn)
            for stmt in _DDL_INDEXES:
                conn.execute(stmt)
        logger.info("Database schema ready.")
    except sqlite3.Error as exc:
        logger.error("Failed to initialise database schema: %s", exc)
        raise
    finally:
        conn.close()


def _add_missing_columns(conn: sqlite3.Connection) -> None:
    for table, columns in _ADDED_COLUMNS.items():
        existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table});")}
        for name, decl in columns:
            if name not in existing:
                logger.info("Adding column %s.%s", table, name)
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl};")


# ---------------------------------------------------------------------------
# Flask per-request connection management
# ---------------------------------------------------------------------------

def get_db() -> sqlite3.Connection:
    """Return the per-request SQLite connection, opening it if necessary.

    Must be called within an active Flask application context.

    Raises:
        RuntimeError: If called outside a Flask application context.
    """
    from flask import current_app  # imported here to avoid circular imports

    if "db" not in g:
        database_path: str = current_app.config["DATABASE"]
        logger.debug("Opening database connection to: %s", database_path)
        g.db = _open_connection(database_path)
    return g.db  # type: ignore[return-value]


def close_db(exception: Optional[BaseException] = None) -> None:
    """Close the per-request database connection if one was opened.

    Registered as an app-context teardown function; *exception* is required
    by Flask's teardown API but unused.
    """
    db: Optional[sqlite3.Connection] = g.pop("db", None)
    if db is not None:
        db.close()
        logger.debug("Database connection closed.")


def wire_db(app: Flask) -> None:
    """Run :func:`init_db` and register :func:`close_db` on *app*.

    Raises:
        sqlite3.Error: Propagated from :func:`init_db`.
    """
    init_db(app.config["DATABASE"])
    app.teardown_appcontext(close_db)
    logger.info("Database wired to Flask app (teardown registered).")


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------

def query(
    sql: str,
    params: tuple[Any, ...] | list[Any] = (),
) -> list[sqlite3.Row]:
    """Execute a SELECT statement and return all rows."""
    return get_db().execute(sql, params).fetchall()


def query_one(
    sql: str,
    params: tuple[Any, ...] | list[Any] = (),
) -> Optional[sqlite3.Row]:
    """Execute a SELECT statement and return the first row, or ``None``."""
    return get_db().execute(sql, params).fetchone()


def execute(
    sql: str,
    params: tuple[Any, ...] | list[Any] = (),
) -> sqlite3.Cursor:
    """Execute a single DML statement within an auto-commit transaction.

    Returns:
        The :class:`sqlite3.Cursor` produced by the statement (useful for
        ``lastrowid`` on INSERT statements).

    Raises:
        sqlite3.Error: On any database error; the transaction is rolled back.
    """
    conn = get_db()
    with conn:
        cursor = conn.execute(sql, params)
    return cursor


def executemany(
    sql: str,
    param_seq: list[tuple[Any, ...]] | list[list[Any]],
) -> sqlite3.Cursor:
    """Execute a DML statement for each item in *param_seq* in one transaction.

    Raises:
        sqlite3.Error: On any database error; the whole batch is rolled back.
    """
    conn = get_db()
    with conn:
        cursor = conn.executemany(sql, param_seq)
    return cursor


# ---------------------------------------------------------------------------
# Readers: entities
# ---------------------------------------------------------------------------

def fetch_agents(organization_id: str) -> list[Agent]:
    """Return the organization's agents with their server dependencies, by name."""
    rows = query(
        """
        SELECT a.id, a.name, a.slug, a.icon_path, a.model_id,
               json_group_array(s.server_id) AS server_ids
        FROM agents a
        LEFT JOIN agent_servers s ON s.agent_id = a.id
        WHERE a.organization_id = ?
        GROUP BY a.id
        ORDER BY a.name, a.id;
        """,
        (organization_id,),
    )
    agents = []
    for row in rows:
        record = dict(row)
        # An agent without servers aggregates to [null].
        record["server_ids"] = [s for s in json.loads(record["server_ids"]) if s is not None]
        agents.append(parse_agent(record))
    return agents


def fetch_servers(organization_id: str) -> list[Server]:
    """Return the organization's servers ordered by name."""
    rows = query(
        """
        SELECT id, name, slug, icon_path, template_icon_path, status
        FROM servers
        WHERE organization_id = ?
        ORDER BY name, id;
        """,
        (organization_id,),
    )
    return [parse_server(dict(row)) for row in rows]


def fetch_schedules(organization_id: str) -> list[ScheduleDefinition]:
    """Return the organization's active schedules with their agents."""
    rows = query(
        """
        SELECT sc.id, sc.name, sc.cron_expression, sc.timezone,
               a.id AS agent_id, a.name AS agent_name,
               a.slug AS agent_slug, a.icon_path AS agent_icon_path
        FROM schedules sc
        JOIN agents a ON a.id = sc.agent_id
        WHERE sc.organization_id = ? AND sc.is_active = 1
        ORDER BY sc.name, sc.id;
        """,
        (organization_id,),
    )
    return [parse_schedule(dict(row)) for row in rows]


# ---------------------------------------------------------------------------
# Readers: logs
# ---------------------------------------------------------------------------

def fetch_execution_rows(
    organization_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    agent_id: Optional[str] = None,
    completed_only: bool = False,
) -> list[ExecutionRow]:
    """Return execution rows in ``[since, until]``, oldest first.

    With *completed_only*, in-flight rows (``success`` NULL) are left out.
    """
    where, params = _log_filters(organization_id, since, until)
    if agent_id is not None:
        where.append("agent_id = ?")
        params.append(agent_id)
    if completed_only:
        where.append("success IS NOT NULL")
    rows = query(
        f"""
        SELECT id, agent_id, success, duration_ms, model_id, schedule_name, created_at
        FROM execution_logs
        WHERE {" AND ".join(where)}
        ORDER BY created_at, id;
        """,
        params,
    )
    return [parse_execution_row(dict(row)) for row in rows]


def fetch_request_rows(
    organization_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    server_id: Optional[str] = None,
) -> list[RequestRow]:
    """Return request rows in ``[since, until]``, oldest first."""
    where, params = _log_filters(organization_id, since, until)
    if server_id is not None:
        where.append("server_id = ?")
        params.append(server_id)
    rows = query(
        f"""
        SELECT {_REQUEST_COLUMNS}
        FROM request_logs
        WHERE {" AND ".join(where)}
        ORDER BY created_at, id;
        """,
        params,
    )
    return [_request_row(row) for row in rows]


def fetch_pii_scanned_rows(
    organization_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> list[RequestRow]:
    """Return request rows whose server had PII masking on, oldest first.

    Rows with no masking mode recorded count as unscanned.
    """
    where, params = _log_filters(organization_id, since, until)
    where.append("pii_masking_mode IS NOT NULL AND pii_masking_mode != ?")
    params.append(PII_MASKING_DISABLED)
    rows = query(
        f"""
        SELECT {_REQUEST_COLUMNS}
        FROM request_logs
        WHERE {" AND ".join(where)}
        ORDER BY created_at, id;
        """,
        params,
    )
    return [_request_row(row) for row in rows]


def fetch_token_summaries(
    organization_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> list[TokenSummary]:
    """Return summed token usage per server over the window."""
    where, params = _log_filters(organization_id, since, until)
    rows = query(
        f"""
        SELECT server_id,
               SUM(input_tokens)  AS input_tokens,
               SUM(output_tokens) AS output_tokens
        FROM request_logs
        WHERE {" AND ".join(where)}
        GROUP BY server_id
        ORDER BY server_id;
        """,
        params,
    )
    return [parse_token_summary(dict(row)) for row in rows]


def sum_tokens(
    organization_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> tuple[int, int]:
    """Return ``(input_tokens, output_tokens)`` summed over the window."""
    where, params = _log_filters(organization_id, since, until)
    row = query_one(
        f"""
        SELECT COALESCE(SUM(input_tokens), 0)  AS input_tokens,
               COALESCE(SUM(output_tokens), 0) AS output_tokens
        FROM request_logs
        WHERE {" AND ".join(where)};
        """,
        params,
    )
    if row is None:
        return 0, 0
    return int(row["input_tokens"]), int(row["output_tokens"])


def count_running_executions(organization_id: str) -> int:
    """Return the number of executions still in flight (``success`` is NULL)."""
    row = query_one(
        "SELECT COUNT(*) AS cnt FROM execution_logs WHERE organization_id = ? AND success IS NULL;",
        (organization_id,),
    )
    return int(row["cnt"]) if row else 0


def count_rows(table: str, organization_id: str) -> int:
    """Return the number of rows of *table* (``'agents'``, ``'servers'``, ``'schedules'``)."""
    if table not in ("agents", "servers", "schedules"):
        raise ValueError(f"Cannot count rows of table {table!r}")
    row = query_one(
        f"SELECT COUNT(*) AS cnt FROM {table} WHERE organization_id = ?;",
        (organization_id,),
    )
    return int(row["cnt"]) if row else 0


def latest_created_at(kind: str, organization_id: str) -> Optional[datetime]:
    """Return the newest ``created_at`` stored for *kind*, or ``None``.

    Args:
        kind: ``'executions'`` or ``'requests'``.
        organization_id: Tenant scope.
    """
    table = _log_table(kind)
    row = query_one(
        f"SELECT MAX(created_at) AS latest FROM {table} WHERE organization_id = ?;",
        (organization_id,),
    )
    if row is None or row["latest"] is None:
        return None
    return parse_timestamp(row["latest"])


# ---------------------------------------------------------------------------
# Readers: keyset pages
# ---------------------------------------------------------------------------

def fetch_execution_page_rows(
    organization_id: str,
    cursor: Optional[str],
    take: int,
    agent_id: Optional[str] = None,
    completed_only: bool = False,
) -> list[ExecutionRow]:
    """Return up to *take* execution rows after *cursor*, newest first.

    Rows are ordered by ``(created_at, id)`` descending.  An unknown cursor
    yields no rows.
    """
    extra: list[str] = []
    extra_params: list[Any] = []
    if agent_id is not None:
        extra.append("agent_id = ?")
        extra_params.append(agent_id)
    if completed_only:
        extra.append("success IS NOT NULL")
    rows = _keyset_page(
        "execution_logs",
        "id, agent_id, success, duration_ms, model_id, schedule_name, created_at",
        organization_id, cursor, take, extra, extra_params,
    )
    return [parse_execution_row(dict(row)) for row in rows]


def fetch_request_page_rows(
    organization_id: str,
    cursor: Optional[str],
    take: int,
    server_id: Optional[str] = None,
) -> list[RequestRow]:
    """Return up to *take* request rows after *cursor*, newest first."""
    extra: list[str] = []
    extra_params: list[Any] = []
    if server_id is not None:
        extra.append("server_id = ?")
        extra_params.append(server_id)
    rows = _keyset_page(
        "request_logs",
        _REQUEST_COLUMNS,
        organization_id, cursor, take, extra, extra_params,
    )
    return [_request_row(row) for row in rows]


def _keyset_page(
    table: str,
    columns: str,
    organization_id: str,
    cursor: Optional[str],
    take: int,
    extra: list[str],
    extra_params: list[Any],
) -> list[sqlite3.Row]:
    where = ["organization_id = ?", *extra]
    params: list[Any] = [organization_id, *extra_params]

    if cursor is not None:
        anchor = query_one(
            f"SELECT created_at, id FROM {table} WHERE organization_id = ? AND id = ?;",
            (organization_id, cursor),
        )
        if anchor is None:
            logger.debug("Unknown %s cursor %r; returning empty page.", table, cursor)
            return []
        where.append("(created_at < ? OR (created_at = ? AND id < ?))")
        params.extend([anchor["created_at"], anchor["created_at"], anchor["id"]])

    params.append(take)
    return query(
        f"""
        SELECT {columns}
        FROM {table}
        WHERE {" AND ".join(where)}
        ORDER BY created_at DESC, id DESC
        LIMIT ?;
        """,
        params,
    )


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

def upsert_agent(agent: Agent, organization_id: str) -> None:
    """Insert or update *agent* and replace its server dependencies."""
    conn = get_db()
    with conn:
        conn.execute(
            """
            INSERT INTO agents (id, organization_id, name, slug, icon_path, model_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                organization_id = excluded.organization_id,
                name            = excluded.name,
                slug            = excluded.slug,
                icon_path       = excluded.icon_path,
                model_id        = excluded.model_id;
            """,
            (agent.id, organization_id, agent.name, agent.slug,
             agent.icon_path, agent.model_id, _utcnow_iso()),
        )
        conn.execute("DELETE FROM agent_servers WHERE agent_id = ?;", (agent.id,))
        conn.executemany(
            "INSERT OR IGNORE INTO agent_servers (agent_id, server_id) VALUES (?, ?);",
            [(agent.id, server_id) for server_id in agent.server_ids],
        )
    logger.debug("Upserted agent %s with %d servers.", agent.id, len(agent.server_ids))


def upsert_server(server: Server, organization_id: str) -> None:
    """Insert or update *server*.  Only the first template icon is stored."""
    template_icon = server.template_icon_paths[0] if server.template_icon_paths else None
    execute(
        """
        INSERT INTO servers (id, organization_id, name, slug, icon_path, template_icon_path, status)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            organization_id    = excluded.organization_id,
            name               = excluded.name,
            slug               = excluded.slug,
            icon_path          = excluded.icon_path,
            template_icon_path = excluded.template_icon_path,
            status             = excluded.status;
        """,
        (server.id, organization_id, server.name, server.slug,
         server.icon_path, template_icon, server.status),
    )


def upsert_schedule(
    schedule: ScheduleDefinition,
    organization_id: str,
    is_active: bool = True,
) -> None:
    """Insert or update *schedule*.  Its agent must already exist."""
    execute(
        """
        INSERT INTO schedules (id, organization_id, agent_id, name, cron_expression, timezone, is_active)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            organization_id = excluded.organization_id,
            agent_id        = excluded.agent_id,
            name            = excluded.name,
            cron_expression = excluded.cron_expression,
            timezone        = excluded.timezone,
            is_active       = excluded.is_active;
        """,
        (schedule.id, organization_id, schedule.agent.id, schedule.name,
         schedule.cron_expression, schedule.timezone, int(is_active)),
    )


def insert_execution_logs_batch(rows: Iterable[ExecutionRow], organization_id: str) -> int:
    """Insert execution rows in one transaction, ignoring ids already stored.

    Returns:
        The number of rows actually inserted.
    """
    now = _utcnow_iso()
    params = [
        (
            row.id,
            organization_id,
            row.agent_id,
            None if row.success is None else int(row.success),
            row.duration_ms,
            row.model_id,
            row.schedule_name,
            to_db_timestamp(row.created_at),
            now,
        )
        for row in rows
    ]
    if not params:
        return 0
    cursor = executemany(
        """
        INSERT OR IGNORE INTO execution_logs (
            id, organization_id, agent_id, success, duration_ms,
            model_id, schedule_name, created_at, imported_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        params,
    )
    logger.info("Batch inserted %d/%d execution log records.", cursor.rowcount, len(params))
    return cursor.rowcount


def insert_request_logs_batch(rows: Iterable[RequestRow], organization_id: str) -> int:
    """Insert request rows in one transaction, ignoring ids already stored.

    Returns:
        The number of rows actually inserted.
    """
    now = _utcnow_iso()
    params = [
        (
            row.id,
            organization_id,
            row.server_id,
            row.http_status,
            row.duration_ms,
            row.input_tokens,
            row.output_tokens,
            row.pii_masking_mode,
            row.pii_detected_request_count,
            row.pii_detected_response_count,
            json.dumps(list(row.pii_detected_info_types)),
            to_db_timestamp(row.created_at),
            now,
        )
        for row in rows
    ]
    if not params:
        return 0
    cursor = executemany(
        """
        INSERT OR IGNORE INTO request_logs (
            id, organization_id, server_id, http_status, duration_ms,
            input_tokens, output_tokens, pii_masking_mode,
            pii_detected_request_count, pii_detected_response_count,
            pii_detected_info_types, created_at, imported_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        params,
    )
    logger.info("Batch inserted %d/%d request log records.", cursor.rowcount, len(params))
    return cursor.rowcount


def record_sync_run(
    source: str,
    started_at: str,
    finished_at: Optional[str] = None,
    records_fetched: int = 0,
    error_message: Optional[str] = None,
) -> int:
    """Record the outcome of a background sync attempt.

    Returns:
        The ``id`` of the new ``sync_runs`` row.
    """
    cursor = execute(
        """
        INSERT INTO sync_runs (source, started_at, finished_at, records_fetched, error_message)
        VALUES (?, ?, ?, ?, ?);
        """,
        (source, started_at, finished_at, records_fetched, error_message),
    )
    return cursor.lastrowid  # type: ignore[return-value]


def get_recent_sync_runs(limit: int = 10) -> list[dict[str, Any]]:
    """Return the latest sync attempts, newest first, as plain dicts."""
    rows = query(
        """
        SELECT id, source, started_at, finished_at, records_fetched, error_message
        FROM sync_runs
        ORDER BY id DESC
        LIMIT ?;
        """,
        (limit,),
    )
    return rows_to_dicts(rows)


# ---------------------------------------------------------------------------
# Utility
# ---------------------------------------------------------------------------

def to_db_timestamp(moment: datetime) -> str:
    """Format an aware datetime as the stored UTC text form.

    Returns:
        A string of the form ``'2024-01-15T12:34:56.789012+00:00'``.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _utcnow_iso() -> str:
    return to_db_timestamp(datetime.now(tz=timezone.utc))


def _request_row(row: sqlite3.Row) -> RequestRow:
    record = dict(row)
    record["pii_detected_info_types"] = json.loads(record.get("pii_detected_info_types") or "[]")
    return parse_request_row(record)


def _log_table(kind: str) -> str:
    try:
        return _LOG_TABLES[kind]
    except KeyError:
        raise ValueError(f"Unknown log kind {kind!r}; expected one of {sorted(_LOG_TABLES)}") from None


def _log_filters(
    organization_id: str,
    since: Optional[datetime],
    until: Optional[datetime],
) -> tuple[list[str], list[Any]]:
    where = ["organization_id = ?"]
    params: list[Any] = [organization_id]
    if since is not None:
        where.append("created_at >= ?")
        params.append(to_db_timestamp(since))
    if until is not None:
        where.append("created_at <= ?")
        params.append(to_db_timestamp(until))
    return where, params


def rows_to_dicts(rows: list[sqlite3.Row]) -> list[dict[str, Any]]:
    """Convert a list of :class:`sqlite3.Row` objects to plain dicts."""
    return [dict(row) for row in rows]
