"""Row validation and log import for fleet_dash.

Every row that crosses from the log store (SQLite rows, JSON payloads from
the log source API, uploaded CSV/JSON exports) into the analytics engine is
parsed here, exactly once, into the typed structures of
:mod:`fleet_dash.models`.

Public API
----------
* :func:`parse_agent`, :func:`parse_server`, :func:`parse_execution_row`,
  :func:`parse_request_row`, :func:`parse_token_summary`,
  :func:`parse_schedule` – validate one mapping and return a model object.
* :func:`ingest_file` – detect CSV/JSON from the extension and import it.
* :func:`ingest_csv` / :func:`ingest_json` – import raw file content.
* :func:`ingest_records` – import already-decoded record dicts.

Schema contract
---------------
Field names are matched case-insensitively and both ``snake_case`` and
``camelCase`` spellings are accepted (``created_at`` / ``createdAt``).
Identifiers and timestamps are required: a record missing them raises
:class:`MalformedRowError`.  Numeric fields (durations, tokens, HTTP status)
that are missing, blank, ``NaN`` or garbage become ``None`` so aggregators
can exclude them from averages and treat them as zero in sums.  Naive
timestamps are taken to be UTC.
"""

from __future__ import annotations

import io
import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

import pandas as pd

from fleet_dash.models import (
    Agent,
    AgentRef,
    ExecutionRow,
    RequestRow,
    ScheduleDefinition,
    Server,
    TokenSummary,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

KIND_EXECUTIONS = "executions"
KIND_REQUESTS = "requests"

KNOWN_KINDS = {KIND_EXECUTIONS, KIND_REQUESTS}

_TRUE_STRINGS = {"true", "1", "yes", "success", "succeeded", "ok"}
_FALSE_STRINGS = {"false", "0", "no", "error", "failed", "failure"}

_TIMESTAMP_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%Y%m%d",
    "%Y",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y",
]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class IngestError(Exception):
    """Raised when rows cannot be brought into the engine."""


class MalformedRowError(IngestError):
    """Raised when a single row lacks a required identifier or timestamp."""


class MalformedLogError(IngestError):
    """Raised when a log file cannot be parsed (bad CSV, invalid JSON, etc.)."""


# ---------------------------------------------------------------------------
# Row parsers
# ---------------------------------------------------------------------------

def parse_agent(record: Mapping[str, Any]) -> Agent:
    """Validate an agent record.

    ``server_ids`` may be a list or a comma-separated string (as found in CSV
    exports).
    """
    r = _lower_keys(record)
    return Agent(
        id=_require_str(r, "id"),
        name=_coerce_str(r.get("name")) or "",
        slug=_coerce_str(r.get("slug")) or "",
        icon_path=_coerce_str(_first(r, "icon_path", "iconpath")),
        model_id=_coerce_str(_first(r, "model_id", "modelid")),
        server_ids=_coerce_id_list(_first(r, "server_ids", "serverids", "mcp_server_ids")),
    )


def parse_server(record: Mapping[str, Any]) -> Server:
    """Validate a server record, including its template icon fallbacks."""
    r = _lower_keys(record)
    template_icons = _first(r, "template_icon_paths", "templateiconpaths")
    if template_icons is None:
        single = _coerce_str(_first(r, "template_icon_path", "templateiconpath"))
        template_icons = [single] if single else []
    return Server(
        id=_require_str(r, "id"),
        name=_coerce_str(r.get("name")) or "",
        slug=_coerce_str(r.get("slug")) or "",
        icon_path=_coerce_str(_first(r, "icon_path", "iconpath")),
        template_icon_paths=_coerce_id_list(template_icons),
        status=_coerce_str(_first(r, "status", "server_status", "serverstatus")),
    )


def parse_execution_row(record: Mapping[str, Any]) -> ExecutionRow:
    """Validate an agent execution log record."""
    r = _lower_keys(record)
    return ExecutionRow(
        id=_require_str(r, "id"),
        agent_id=_require_str(r, "agent_id", "agentid"),
        created_at=_require_timestamp(r),
        success=_coerce_bool(r.get("success")),
        duration_ms=_coerce_float(_first(r, "duration_ms", "durationms")),
        model_id=_coerce_str(_first(r, "model_id", "modelid")),
        schedule_name=_coerce_str(_first(r, "schedule_name", "schedulename")),
    )


def parse_request_row(record: Mapping[str, Any]) -> RequestRow:
    """Validate a server request log record."""
    r = _lower_keys(record)
    return RequestRow(
        id=_require_str(r, "id"),
        server_id=_require_str(r, "server_id", "serverid", "mcp_server_id", "mcpserverid"),
        created_at=_require_timestamp(r),
        http_status=_coerce_int(_first(r, "http_status", "httpstatus")),
        duration_ms=_coerce_float(_first(r, "duration_ms", "durationms")),
        input_tokens=_coerce_int(_first(r, "input_tokens", "inputtokens")),
        output_tokens=_coerce_int(_first(r, "output_tokens", "outputtokens")),
        pii_masking_mode=_coerce_str(_first(r, "pii_masking_mode", "piimaskingmode")),
        pii_detected_request_count=_coerce_int(
            _first(r, "pii_detected_request_count", "piidetectedrequestcount")
        ),
        pii_detected_response_count=_coerce_int(
            _first(r, "pii_detected_response_count", "piidetectedresponsecount")
        ),
        pii_detected_info_types=_coerce_id_list(
            _first(r, "pii_detected_info_types", "piidetectedinfotypes")
        ),
    )


def parse_token_summary(record: Mapping[str, Any]) -> TokenSummary:
    """Validate a per-server token summary; null sums become zero."""
    r = _lower_keys(record)
    return TokenSummary(
        server_id=_require_str(r, "server_id", "serverid", "mcp_server_id", "mcpserverid"),
        input_tokens=_coerce_float(_first(r, "input_tokens", "inputtokens")) or 0,
        output_tokens=_coerce_float(_first(r, "output_tokens", "outputtokens")) or 0,
    )


def parse_schedule(record: Mapping[str, Any]) -> ScheduleDefinition:
    """Validate a schedule record.

    The agent may be given as a nested ``agent`` mapping or as flat
    ``agent_id`` / ``agent_name`` / ``agent_slug`` / ``agent_icon_path``
    columns.  The cron expression is kept verbatim; whether it parses is
    decided by the forecast engine, which skips broken schedules.
    """
    r = _lower_keys(record)
    nested = r.get("agent")
    if isinstance(nested, Mapping):
        a = _lower_keys(nested)
        agent = AgentRef(
            id=_require_str(a, "id"),
            name=_coerce_str(a.get("name")) or "",
            slug=_coerce_str(a.get("slug")) or "",
            icon_path=_coerce_str(_first(a, "icon_path", "iconpath")),
        )
    else:
        agent = AgentRef(
            id=_require_str(r, "agent_id", "agentid"),
            name=_coerce_str(_first(r, "agent_name", "agentname")) or "",
            slug=_coerce_str(_first(r, "agent_slug", "agentslug")) or "",
            icon_path=_coerce_str(_first(r, "agent_icon_path", "agenticonpath")),
        )
    cron_expression = _first(r, "cron_expression", "cronexpression", "recurrence_rule")
    return ScheduleDefinition(
        id=_require_str(r, "id"),
        name=_coerce_str(r.get("name")) or "",
        cron_expression="" if _is_missing(cron_expression) else str(cron_expression).strip(),
        timezone=_coerce_str(r.get("timezone")) or "UTC",
        agent=agent,
    )


# ---------------------------------------------------------------------------
# File import
# ---------------------------------------------------------------------------

def ingest_file(
    filepath: str | Path,
    kind: str,
    organization_id: str,
    file_format: Optional[str] = None,
) -> int:
    """Import an exported execution or request log file into the store.

    Must be called within an active Flask application context so that the
    database helpers can access ``flask.g``.

    Args:
        filepath: Path to the log file on disk.
        kind: ``'executions'`` or ``'requests'``.
        organization_id: Tenant the rows belong to.
        file_format: ``'csv'`` or ``'json'``; inferred from the extension
            when ``None``.

    Returns:
        The number of rows inserted.

    Raises:
        FileNotFoundError: If *filepath* does not exist.
        MalformedLogError: If the file cannot be parsed.
        IngestError: If *kind* is unknown.
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Log file not found: {filepath}")

    if file_format is None:
        file_format = path.suffix.lower().lstrip(".")
    if file_format not in ("csv", "json"):
        raise MalformedLogError(
            f"Cannot import '.{file_format}' files. Pass file_format='csv' or 'json' explicitly."
        )

    try:
        raw_bytes = path.read_bytes()
    except OSError as exc:
        raise IngestError(f"Cannot read log file {filepath}: {exc}") from exc

    if file_format == "csv":
        return ingest_csv(raw_bytes, kind, organization_id)
    return ingest_json(raw_bytes, kind, organization_id)


def ingest_csv(data: bytes | str, kind: str, organization_id: str) -> int:
    """Parse CSV content with pandas and import its rows."""
    _check_kind(kind)
    try:
        buffer = io.BytesIO(data) if isinstance(data, bytes) else io.StringIO(data)
        df = pd.read_csv(buffer, dtype=str)
    except pd.errors.EmptyDataError:
        logger.warning("CSV file is empty; nothing to ingest.")
        return 0
    except Exception as exc:
        raise MalformedLogError(f"Failed to parse CSV: {exc}") from exc

    if df.empty:
        logger.warning("CSV file has no rows; nothing to ingest.")
        return 0

    df.columns = [c.lower().strip() for c in df.columns]
    return ingest_records(df.to_dict(orient="records"), kind, organization_id, source_format="csv")


def ingest_json(data: bytes | str, kind: str, organization_id: str) -> int:
    """Parse JSON content and import its rows.

    The JSON may be an array of rows, an object wrapping the array under
    ``data`` / ``items`` / ``logs`` / ``records`` / ``results``, or a single
    row object.
    """
    _check_kind(kind)
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        parsed = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedLogError(f"Failed to parse JSON: {exc}") from exc

    records = unwrap_json_records(parsed)
    if not records:
        logger.warning("JSON file contains no records; nothing to ingest.")
        return 0
    return ingest_records(records, kind, organization_id, source_format="json")


def ingest_records(
    records: list[Mapping[str, Any]],
    kind: str,
    organization_id: str,
    source_format: str = "api",
) -> int:
    """Validate *records* and batch-insert the good ones.

    Records that fail validation are skipped with a warning.

    Returns:
        The number of rows inserted.

    Raises:
        IngestError: If *kind* is unknown.
    """
    from fleet_dash.db import insert_execution_logs_batch, insert_request_logs_batch

    _check_kind(kind)
    parser = parse_execution_row if kind == KIND_EXECUTIONS else parse_request_row

    parsed: list[Any] = []
    skipped = 0
    for i, raw in enumerate(records):
        try:
            parsed.append(parser(raw))
        except IngestError as exc:
            logger.warning("Skipping %s record %d (%s): %s", kind, i, source_format, exc)
            skipped += 1

    if skipped:
        logger.warning(
            "Skipped %d/%d records during %s import (%s).",
            skipped, len(records), kind, source_format,
        )
    if not parsed:
        logger.info("No valid %s records to insert.", kind)
        return 0

    if kind == KIND_EXECUTIONS:
        count = insert_execution_logs_batch(parsed, organization_id)
    else:
        count = insert_request_logs_batch(parsed, organization_id)
    logger.info(
        "Imported %d %s records for organization=%s (format=%s).",
        count, kind, organization_id, source_format,
    )
    return count


def unwrap_json_records(parsed: Any) -> list[dict[str, Any]]:
    """Extract the list of record dicts from a parsed JSON document.

    Raises:
        MalformedLogError: If the document is neither a list nor an object.
    """
    if isinstance(parsed, list):
        return [r for r in parsed if isinstance(r, dict)]

    if isinstance(parsed, dict):
        for key in ("data", "items", "logs", "records", "results"):
            if isinstance(parsed.get(key), list):
                return [r for r in parsed[key] if isinstance(r, dict)]
        return [parsed]

    raise MalformedLogError(
        f"Unexpected JSON structure: expected list or dict, got {type(parsed).__name__}"
    )


# ---------------------------------------------------------------------------
# Internal: field access
# ---------------------------------------------------------------------------

def _check_kind(kind: str) -> None:
    if kind not in KNOWN_KINDS:
        raise IngestError(f"Unknown log kind {kind!r}; expected one of {sorted(KNOWN_KINDS)}")


def _lower_keys(record: Mapping[str, Any]) -> dict[str, Any]:
    return {str(k).lower().strip(): v for k, v in record.items()}


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    """Return the first non-missing value among *keys*."""
    for key in keys:
        value = record.get(key)
        if not _is_missing(value):
            return value
    return None


def _require_str(record: Mapping[str, Any], *keys: str) -> str:
    value = _coerce_str(_first(record, *keys))
    if value is None:
        raise MalformedRowError(f"Missing required field {keys[0]!r}")
    return value


def _require_timestamp(record: Mapping[str, Any]) -> datetime:
    raw = _first(record, "created_at", "createdat", "timestamp", "logged_at")
    if raw is None:
        raise MalformedRowError("Missing required field 'created_at'")
    parsed = parse_timestamp(raw)
    if parsed is None:
        raise MalformedRowError(f"Cannot parse timestamp {raw!r}")
    return parsed


# ---------------------------------------------------------------------------
# Internal: type coercion helpers
# ---------------------------------------------------------------------------

def _is_missing(value: Any) -> bool:
    """Return ``True`` for ``None``, blank strings, and pandas/NumPy NaN values."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return False
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _coerce_str(value: Any) -> Optional[str]:
    """Convert *value* to a stripped string, or ``None`` if empty/null."""
    if _is_missing(value):
        return None
    s = str(value).strip()
    return s or None


def _coerce_int(value: Any) -> Optional[int]:
    """Convert *value* to an int, or ``None`` if missing or unparseable."""
    number = _coerce_float(value)
    return int(number) if number is not None else None


def _coerce_float(value: Any) -> Optional[float]:
    """Convert *value* to a finite float, or ``None`` if missing or unparseable."""
    if _is_missing(value) or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (ValueError, TypeError):
        return None
    return number if math.isfinite(number) else None


def _coerce_bool(value: Any) -> Optional[bool]:
    """Map success flags to ``True`` / ``False``; anything else is ``None`` (in flight)."""
    if _is_missing(value):
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).strip().lower()
    if s in _TRUE_STRINGS:
        return True
    if s in _FALSE_STRINGS:
        return False
    return None


def _coerce_id_list(value: Any) -> tuple[str, ...]:
    """Normalise a list or comma-separated string of ids into a tuple."""
    if _is_missing(value):
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        items = [value]
    return tuple(s for s in (_coerce_str(item) for item in items) if s)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a timestamp into an aware :class:`datetime`.

    Accepts ``datetime`` objects, Unix timestamps (seconds), and ISO-8601 or
    common date strings.  Naive results are taken to be UTC.

    Returns:
        The parsed datetime, or ``None`` if *value* cannot be interpreted.
    """
    if _is_missing(value):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OSError, OverflowError, ValueError):
            return None

    s = str(value).strip()
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        dt = None
    if dt is None:
        for fmt in _TIMESTAMP_FORMATS:
            try:
                dt = datetime.strptime(s, fmt)
                break
            except ValueError:
                continue
    if dt is None:
        # Numeric strings are epoch seconds only once no date format matches.
        try:
            return datetime.fromtimestamp(float(s), tz=timezone.utc)
        except (OSError, OverflowError, ValueError):
            return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
