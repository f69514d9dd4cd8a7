"""
Shared numeric and time helpers for runlens folds.

All datetimes handled by runlens are timezone-aware UTC.
Rates and averages are rounded half-up to two decimals, matching the
fixed-point columns of the catalog views the dashboard was built against.
"""

import math
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence


_TWO_PLACES = Decimal("0.01")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO 8601 string."""
    if dt is None:
        return None
    return dt.isoformat()


def round2(value: float) -> float:
    """Round half-up to two decimal places."""
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Cannot round non-finite value: {value}")
    return float(Decimal(str(value)).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))


def percentage(part: int, whole: int) -> float:
    """part / whole * 100, rounded. Zero when whole is zero."""
    if whole <= 0:
        return 0.0
    return round2(part * 100.0 / whole)


def mean(values: Iterable[float]) -> Optional[float]:
    """Arithmetic mean, or None for an empty input (SQL AVG semantics)."""
    items = list(values)
    if not items:
        return None
    return sum(items) / len(items)


def percentile_cont(values: Sequence[float], fraction: float) -> float:
    """
    Continuous percentile with linear interpolation between ranks.

    Same definition as SQL PERCENTILE_CONT: row number
    RN = 1 + fraction * (N - 1), interpolated between floor and ceiling.

    Raises:
        ValueError: If values is empty or fraction is outside [0, 1]
    """
    if not values:
        raise ValueError("percentile of empty sequence")
    if not 0.0 <= fraction <= 1.0:
        raise ValueError(f"percentile fraction must be within [0, 1], got {fraction}")

    ordered = sorted(values)
    position = fraction * (len(ordered) - 1)
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(ordered[lower])
    weight = position - lower
    return ordered[lower] + (ordered[upper] - ordered[lower]) * weight


def tier(value: float, thresholds: Sequence[tuple], default: str, strict: bool = False) -> str:
    """
    Map a value onto the first matching (threshold, label) pair.

    Thresholds are checked in order with >= (or > when strict).
    """
    for threshold, label in thresholds:
        if (value > threshold) if strict else (value >= threshold):
            return label
    return default
