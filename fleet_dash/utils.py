"""Small helpers shared by every aggregator in fleet_dash.

* :func:`group_by` – the single "group rows by key" utility.
* :func:`round_half_up` / :func:`percentage` – dashboard rounding rules.
* :func:`parse_time_range` / :func:`calculate_start_date` – lookback windows.
* :func:`to_jsonable` – convert engine output for JSON responses.
"""

from __future__ import annotations

import dataclasses
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Hashable, Iterable, Optional, TypeVar

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)

# ---------------------------------------------------------------------------
# Time ranges
# ---------------------------------------------------------------------------

TIME_RANGE_24H = "24h"
TIME_RANGE_7D = "7d"
TIME_RANGE_30D = "30d"

_TIME_RANGE_DELTAS: dict[str, timedelta] = {
    TIME_RANGE_24H: timedelta(hours=24),
    TIME_RANGE_7D: timedelta(days=7),
    TIME_RANGE_30D: timedelta(days=30),
}

TIME_RANGES = frozenset(_TIME_RANGE_DELTAS)


def parse_time_range(value: Optional[str], default: str = TIME_RANGE_24H) -> str:
    """Validate a time-range token such as ``'7d'``.

    Args:
        value: Raw value from the caller; ``None`` or empty selects *default*.
        default: Range used when *value* is empty.

    Returns:
        One of ``'24h'``, ``'7d'``, ``'30d'``.

    Raises:
        ValueError: If *value* is not a supported range.
    """
    if not value:
        return default
    token = value.strip().lower()
    if token not in _TIME_RANGE_DELTAS:
        raise ValueError(
            f"Unsupported time range {value!r}; expected one of {sorted(TIME_RANGES)}"
        )
    return token


def calculate_start_date(time_range: str, now: datetime) -> datetime:
    """Return the start of the lookback window ending at *now*."""
    return now - _TIME_RANGE_DELTAS[parse_time_range(time_range)]


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def group_by(items: Iterable[T], key: Callable[[T], K]) -> dict[K, list[T]]:
    """Group *items* into lists keyed by ``key(item)``.

    Keys appear in first-seen order and each list keeps the input order of
    its items.

    Args:
        items: Any iterable of rows.
        key: Function returning the grouping key of a row.

    Returns:
        A dict mapping each key to the list of rows sharing it.
    """
    groups: dict[K, list[T]] = {}
    for item in items:
        groups.setdefault(key(item), []).append(item)
    return groups


# ---------------------------------------------------------------------------
# Rounding
# ---------------------------------------------------------------------------

def round_half_up(value: float, digits: int = 0) -> float | int:
    """Round *value* to *digits* decimals with halves rounded upward.

    Python's :func:`round` uses banker's rounding; dashboard figures use the
    ``floor(x * 10**digits + 0.5) / 10**digits`` rule instead, so ``16.65``
    style halves always go up.

    Returns:
        An ``int`` when *digits* is 0, otherwise a ``float``.
    """
    if digits == 0:
        return int(math.floor(value + 0.5))
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def percentage(part: float, whole: float) -> Optional[float]:
    """Return ``part / whole`` as a percentage with one decimal, or ``None``.

    Computed as ``floor(part / whole * 1000 + 0.5) / 10`` so exact halves such
    as 23/80 = 28.75 round up to 28.8.
    """
    if whole == 0:
        return None
    return math.floor(part / whole * 1000 + 0.5) / 10


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def to_jsonable(value: Any) -> Any:
    """Recursively convert dataclasses and datetimes into JSON-friendly values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
