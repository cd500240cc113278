import logging
from typing import Callable, Optional, Sequence

from ..core.clock import Timestamp
from .ingredient_matching import MatchResult, MatchStats, match_inventory_item
from .inventory_model import decay_confidence, estimate_remaining_qty

logger = logging.getLogger("decision_os.matching")

INVENTORY_CONFIDENCE_THRESHOLD = 0.60
STRONG_MATCH_THRESHOLD = 0.80
WEAK_MATCH_CAP = 0.50
EMPTY_MEAL_SCORE = 0.5

Matcher = Callable[[str, Sequence], Optional[MatchResult]]


def ingredient_contribution(
    ingredient,
    inventory: Sequence,
    now: Timestamp,
    *,
    matcher: Matcher = match_inventory_item,
    decay: Callable = decay_confidence,
    remaining: Callable = estimate_remaining_qty,
    stats: Optional[MatchStats] = None,
) -> float:
    """Availability of one ingredient in [0, 1]."""
    if ingredient.is_pantry_staple:
        return 1.0

    match = matcher(ingredient.ingredient_name, inventory)
    if stats is not None:
        stats.record(match)
    if match is None:
        return 0.0

    confidence = decay(match.item, now)
    if confidence < INVENTORY_CONFIDENCE_THRESHOLD:
        return 0.0

    qty_left = remaining(match.item, now)
    if qty_left is not None and qty_left <= 0:
        return 0.0

    contribution = confidence * match.score
    # Weak fuzzy matches never dominate
    if match.score < STRONG_MATCH_THRESHOLD:
        contribution = min(contribution, WEAK_MATCH_CAP)
    return contribution


def score_meal_by_inventory(
    ingredients: Sequence,
    inventory: Sequence,
    now: Timestamp,
    *,
    matcher: Matcher = match_inventory_item,
    decay: Callable = decay_confidence,
    remaining: Callable = estimate_remaining_qty,
    stats: Optional[MatchStats] = None,
) -> float:
    """Mean ingredient availability for one meal; 0.5 when it has no ingredients."""
    if not ingredients:
        return EMPTY_MEAL_SCORE
    total = 0.0
    for ing in ingredients:
        total += ingredient_contribution(
            ing, inventory, now,
            matcher=matcher, decay=decay, remaining=remaining, stats=stats,
        )
    return total / len(ingredients)


def log_match_stats(stats: MatchStats, household_key: str) -> None:
    if stats.attempts:
        logger.info(
            f"Inventory matching for {household_key}: "
            f"{stats.successes}/{stats.attempts} matched, {stats.misses} below threshold"
        )
