"""Time-decayed inventory estimates.

Confidence and remaining quantity only ever go down between observations;
a fresh receipt scan (new `last_seen_at`) is what restores them.
"""

import re
from typing import Optional

from ..core.clock import Timestamp, days_between

DEFAULT_DECAY_RATE_PER_DAY = 0.05
CONFIDENCE_DECAY_RATE_PER_DAY = 0.03
MIN_CONFIDENCE_FLOOR = 0.2


def decay_confidence(item, now: Timestamp) -> float:
    """Confidence after elapsed time, never below 20% of the observed value."""
    days = days_between(item.last_seen_at, now)
    factor = max(MIN_CONFIDENCE_FLOOR, 1.0 - days * CONFIDENCE_DECAY_RATE_PER_DAY)
    return min(1.0, max(0.0, (item.confidence or 0.0) * factor))


def estimate_remaining_qty(item, now: Timestamp) -> Optional[float]:
    """Remaining quantity, or None when the original quantity is unknown."""
    if item.qty_estimated is None:
        return None
    rate = item.decay_rate_per_day
    if rate is None:
        rate = DEFAULT_DECAY_RATE_PER_DAY
    days = days_between(item.last_seen_at, now)
    base = item.qty_estimated - (item.qty_used_estimated or 0.0)
    return max(0.0, base * max(0.0, 1.0 - days * rate))


def is_likely_available(item, now: Timestamp, min_confidence: float = 0.6) -> bool:
    remaining = estimate_remaining_qty(item, now)
    if remaining is not None and remaining <= 0:
        return False
    return decay_confidence(item, now) >= min_confidence


_LEADING_NUMBER = re.compile(r"^\s*(\d+/\d+|\d+(?:\.\d+)?)")


def parse_simple_qty(qty_text: Optional[str]) -> float:
    """Leading number of a free-text quantity ("2 cups" -> 2.0), else 1."""
    if not qty_text:
        return 1.0
    m = _LEADING_NUMBER.match(qty_text)
    if not m:
        return 1.0
    raw = m.group(1)
    if "/" in raw:
        num, den = raw.split("/")
        return float(num) / float(den) if float(den) else 1.0
    value = float(raw)
    return value if value > 0 else 1.0
