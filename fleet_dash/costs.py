"""Token pricing and cost attribution.

Servers are shared: several agents may call the same server, and the
server's request logs carry the token usage.  Cost attribution divides each
server's tokens evenly among the agents that depend on it, then prices every
agent's share with the rate of the agent's model.

The pricing table is always passed in explicitly; :data:`DEFAULT_PRICING` is
only the default argument value, so tests and deployments can override
rates per call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from operator import attrgetter, itemgetter
from typing import Any, Iterable, Mapping, Optional, Sequence

from fleet_dash.metrics import bucket_label, bucket_labels
from fleet_dash.models import Agent, RequestRow, TokenSummary
from fleet_dash.utils import calculate_start_date, group_by, parse_time_range, round_half_up

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pricing table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelRate:
    """USD price per 1,000 input and output tokens."""

    input_cost_per_1k: float
    output_cost_per_1k: float


@dataclass(frozen=True)
class PricingTable:
    """Rates keyed by model identifier, with a fallback rate."""

    rates: Mapping[str, ModelRate] = field(default_factory=dict)
    default: ModelRate = ModelRate(input_cost_per_1k=0.003, output_cost_per_1k=0.015)

    def rate_for(self, model_id: Optional[str]) -> ModelRate:
        """Return the rate for *model_id*, or :attr:`default` if unknown or ``None``."""
        if model_id is None:
            return self.default
        rate = self.rates.get(model_id)
        if rate is None:
            logger.debug("No pricing for model %r; using default rate.", model_id)
            return self.default
        return rate

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, Mapping[str, Any]],
        default: Optional[ModelRate] = None,
    ) -> "PricingTable":
        """Build a table from ``{model_id: {"input_cost_per_1k": x, "output_cost_per_1k": y}}``.

        Raises:
            ValueError: If an entry lacks a rate or a rate is not numeric.
        """
        rates: dict[str, ModelRate] = {}
        for model_id, entry in mapping.items():
            try:
                rates[model_id] = ModelRate(
                    input_cost_per_1k=float(entry["input_cost_per_1k"]),
                    output_cost_per_1k=float(entry["output_cost_per_1k"]),
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise ValueError(f"Invalid pricing entry for {model_id!r}: {exc}") from exc
        if default is None:
            return cls(rates=rates)
        return cls(rates=rates, default=default)


DEFAULT_PRICING = PricingTable(
    rates={
        "anthropic/claude-3-5-sonnet": ModelRate(0.003, 0.015),
        "anthropic/claude-3-5-haiku": ModelRate(0.0008, 0.004),
        "anthropic/claude-3-opus": ModelRate(0.015, 0.075),
        "openai/gpt-4o": ModelRate(0.0025, 0.01),
        "openai/gpt-4o-mini": ModelRate(0.00015, 0.0006),
        "google/gemini-1.5-pro": ModelRate(0.00125, 0.005),
        "google/gemini-1.5-flash": ModelRate(0.000075, 0.0003),
    },
)


def calculate_token_cost(input_tokens: float, output_tokens: float, rate: ModelRate) -> float:
    """Price a token count, rounded to cents."""
    cost = (
        input_tokens / 1000 * rate.input_cost_per_1k
        + output_tokens / 1000 * rate.output_cost_per_1k
    )
    return round_half_up(cost, 2)


def estimate_token_cost(
    input_tokens: Optional[float],
    output_tokens: Optional[float],
    pricing: PricingTable = DEFAULT_PRICING,
) -> Optional[float]:
    """Estimate cost at the default rate; ``None`` when no tokens were used."""
    input_tokens = input_tokens or 0
    output_tokens = output_tokens or 0
    if input_tokens == 0 and output_tokens == 0:
        return None
    return calculate_token_cost(input_tokens, output_tokens, pricing.default)


# ---------------------------------------------------------------------------
# Per-agent cost breakdown
# ---------------------------------------------------------------------------

def aggregate_agent_cost_breakdown(
    agents: Sequence[Agent],
    token_summaries: Iterable[TokenSummary],
    pricing: PricingTable = DEFAULT_PRICING,
) -> dict[str, Any]:
    """Attribute shared server token usage to agents and price it.

    Each server's tokens are split evenly (in floating point) across the
    agents depending on it.  Servers nobody depends on contribute nothing.
    Per-agent totals are rounded to whole tokens only after every share has
    been added, and are then priced at the agent model's rate.

    Args:
        agents: Agents with their ``server_ids`` and ``model_id``.
        token_summaries: Token usage per server; several summaries for the
            same server are added together.
        pricing: Rate table used to price each agent's tokens.

    Returns:
        A dict with the following structure::

            {
                "agents": [
                    {
                        "agent_id":       str,
                        "name":           str,
                        "slug":           str,
                        "icon_path":      str | None,
                        "model_id":       str | None,
                        "input_tokens":   int,
                        "output_tokens":  int,
                        "estimated_cost": float,
                        "server_count":   int,
                    },
                    ...
                ],                       # sorted by estimated_cost, highest first
                "total_cost": float,     # sum of the rounded per-agent costs
            }
    """
    server_ids = {agent.id: tuple(dict.fromkeys(agent.server_ids)) for agent in agents}
    dependents = group_by(
        ((server_id, agent.id) for agent in agents for server_id in server_ids[agent.id]),
        itemgetter(0),
    )

    shares = {agent.id: [0.0, 0.0] for agent in agents}
    for server_id, summaries in group_by(token_summaries, attrgetter("server_id")).items():
        consumers = dependents.get(server_id)
        if not consumers:
            logger.debug("Server %s has token usage but no dependent agents.", server_id)
            continue
        input_share = sum(s.input_tokens or 0 for s in summaries) / len(consumers)
        output_share = sum(s.output_tokens or 0 for s in summaries) / len(consumers)
        for _, agent_id in consumers:
            shares[agent_id][0] += input_share
            shares[agent_id][1] += output_share

    breakdown: list[dict[str, Any]] = []
    for agent in agents:
        input_tokens = round_half_up(shares[agent.id][0])
        output_tokens = round_half_up(shares[agent.id][1])
        breakdown.append({
            "agent_id": agent.id,
            "name": agent.name,
            "slug": agent.slug,
            "icon_path": agent.icon_path,
            "model_id": agent.model_id,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "estimated_cost": calculate_token_cost(
                input_tokens, output_tokens, pricing.rate_for(agent.model_id)
            ),
            "server_count": len(server_ids[agent.id]),
        })

    breakdown.sort(key=itemgetter("estimated_cost"), reverse=True)
    total_cost = round_half_up(sum(entry["estimated_cost"] for entry in breakdown), 2)
    return {"agents": breakdown, "total_cost": total_cost}


# ---------------------------------------------------------------------------
# Cost trend
# ---------------------------------------------------------------------------

def aggregate_cost_trend(
    rows: Iterable[RequestRow],
    time_range: str,
    pricing: PricingTable = DEFAULT_PRICING,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> dict[str, Any]:
    """Bucket request token usage over time and estimate its cost.

    Buckets follow :func:`fleet_dash.metrics.aggregate_chart_data`.  Requests
    carry no model, so every bucket is priced at the default rate.

    Returns:
        A dict with the following structure::

            {
                "data": [
                    {"label": str, "input_tokens": int,
                     "output_tokens": int, "estimated_cost": float},
                    ...
                ],
                "total_input_tokens":  int,
                "total_output_tokens": int,
                "total_cost":          float,
            }
    """
    now = now or datetime.now(tz=timezone.utc)
    tz = tz or now.tzinfo or timezone.utc
    time_range = parse_time_range(time_range)
    start = calculate_start_date(time_range, now)

    buckets = {
        label: {"label": label, "input_tokens": 0, "output_tokens": 0}
        for label in bucket_labels(time_range, now, tz)
    }
    for row in rows:
        if not start <= row.created_at <= now:
            continue
        bucket = buckets.get(bucket_label(row.created_at, time_range, tz))
        if bucket is None:
            continue
        bucket["input_tokens"] += row.input_tokens or 0
        bucket["output_tokens"] += row.output_tokens or 0

    data = []
    for bucket in buckets.values():
        bucket["estimated_cost"] = calculate_token_cost(
            bucket["input_tokens"], bucket["output_tokens"], pricing.default
        )
        data.append(bucket)

    total_input = sum(b["input_tokens"] for b in data)
    total_output = sum(b["output_tokens"] for b in data)
    return {
        "data": data,
        "total_input_tokens": total_input,
        "total_output_tokens": total_output,
        "total_cost": calculate_token_cost(total_input, total_output, pricing.default),
    }
