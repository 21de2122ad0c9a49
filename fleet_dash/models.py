"""Typed row and reference structures consumed by the analytics engine.

Instances are built only by the parsing functions in :mod:`fleet_dash.ingest`
at the point where rows leave the log store.  Every aggregator downstream
assumes these objects are already validated: identifiers are present,
timestamps are timezone-aware, and optional numeric fields are either a
number or ``None`` (never ``NaN``).

All classes are frozen so the engine can never mutate rows handed to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Agent:
    """An autonomous task runner whose executions and costs are tracked."""

    id: str
    name: str
    slug: str
    icon_path: Optional[str] = None
    #: Selects the pricing row for cost attribution.
    model_id: Optional[str] = None
    #: Servers this agent depends on (shared resources).
    server_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Server:
    """A tool-serving endpoint whose requests are metered."""

    id: str
    name: str
    slug: str
    icon_path: Optional[str] = None
    #: Icons of the templates this server was created from, first one wins.
    template_icon_paths: tuple[str, ...] = field(default_factory=tuple)
    status: Optional[str] = None


@dataclass(frozen=True)
class AgentRef:
    """Lightweight agent reference attached to schedules."""

    id: str
    name: str
    slug: str
    icon_path: Optional[str] = None


@dataclass(frozen=True)
class ExecutionRow:
    """One agent execution log row.

    ``success`` is ``None`` while the run is still in flight.
    """

    id: str
    agent_id: str
    created_at: datetime
    success: Optional[bool] = None
    duration_ms: Optional[float] = None
    model_id: Optional[str] = None
    schedule_name: Optional[str] = None


@dataclass(frozen=True)
class RequestRow:
    """One server request log row.

    ``pii_masking_mode`` is ``None`` or ``"DISABLED"`` when the server did
    not scan the traffic; the detection counts are then meaningless.
    """

    id: str
    server_id: str
    created_at: datetime
    http_status: Optional[int] = None
    duration_ms: Optional[float] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    pii_masking_mode: Optional[str] = None
    pii_detected_request_count: Optional[int] = None
    pii_detected_response_count: Optional[int] = None
    pii_detected_info_types: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TokenSummary:
    """Summed token usage of one server over a window."""

    server_id: str
    input_tokens: float = 0
    output_tokens: float = 0


@dataclass(frozen=True)
class ScheduleDefinition:
    """A recurring run of an agent defined by a cron expression."""

    id: str
    name: str
    cron_expression: str
    timezone: str
    agent: AgentRef
