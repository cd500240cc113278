"""Taste learning: signal weights, feature bags and the per-meal score cache.

TasteSignal rows are the source of truth. TasteMealScore is a running sum
kept for O(1) lookup while scoring and can be rebuilt with
`recompute_taste_meal_scores` at any time.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from ..core.clock import Timestamp, local_hour, parse_iso
from ..models import TasteSignal
from .ingredient_matching import tokenize

logger = logging.getLogger("decision_os.taste")

TASTE_SIGMOID_DIVISOR = 5.0

BASE_WEIGHTS = {
    "approved": 1.0,
    "rejected": -1.0,
    "drm_triggered": -0.5,
    "expired": -0.2,
    "undo": -0.5,
}
LATE_HOUR = 20
LATE_MULTIPLIER = 1.10
MIN_WEIGHT = -2.0
MAX_WEIGHT = 2.0
MAX_FEATURE_TOKENS = 12
PANTRY_FRIENDLY_STAPLE_RATIO = 0.5


def normalize_taste_score(raw: Optional[float]) -> float:
    """Map a raw signed score onto (0, 1); 0 -> 0.5, +5 -> ~0.73, -5 -> ~0.27."""
    return 1.0 / (1.0 + math.exp(-(raw or 0.0) / TASTE_SIGMOID_DIVISOR))


def compute_taste_weight(user_action: str, actioned_at: Timestamp) -> float:
    """Signed weight for one resolved decision. Late-evening feedback counts a bit more."""
    weight = BASE_WEIGHTS.get(user_action, 0.0)
    if local_hour(actioned_at) >= LATE_HOUR:
        weight *= LATE_MULTIPLIER
    return max(MIN_WEIGHT, min(MAX_WEIGHT, weight))


def extract_meal_features(meal, ingredients: Sequence, actioned_at: Timestamp) -> dict:
    tokens: set[str] = set()
    staples = 0
    for ing in ingredients:
        tokens.update(tokenize(ing.ingredient_name))
        if ing.is_pantry_staple:
            staples += 1
    return {
        "canonicalKey": meal.canonical_key,
        "estMinutes": meal.est_minutes,
        "costBand": meal.est_cost_band,
        "tags": sorted(meal.tags or []),
        "ingredientTokens": sorted(tokens)[:MAX_FEATURE_TOKENS],
        "isPantryFriendly": bool(ingredients) and staples / len(ingredients) >= PANTRY_FRIENDLY_STAPLE_RATIO,
        "hour": local_hour(actioned_at),
    }


def record_taste_signal(
    ledger,
    *,
    feedback_event,
    meal,
    ingredients: Sequence,
    signal_action: str,
) -> TasteSignal:
    """Append one TasteSignal for a feedback copy and fold it into the cache.

    `signal_action` is the feedback action including "undo"; undo signals are
    logged for audit but left out of the meal score cache.
    """
    is_undo = signal_action == "undo"
    weight = compute_taste_weight(signal_action, feedback_event.actioned_at)
    features = extract_meal_features(meal, ingredients, feedback_event.actioned_at) if meal else {}

    signal = TasteSignal(
        id=ledger.generate_event_id(),
        household_key=feedback_event.household_key,
        decided_at=feedback_event.decided_at,
        actioned_at=feedback_event.actioned_at,
        decision_event_id=feedback_event.original_event_id or feedback_event.id,
        meal_id=feedback_event.meal_id,
        decision_type=feedback_event.decision_type,
        user_action=feedback_event.user_action,
        is_undo=is_undo,
        context_hash=feedback_event.context_hash,
        features=features,
        weight=weight,
    )
    ledger.insert_taste_signal(signal)

    if feedback_event.meal_id and not is_undo:
        ledger.apply_taste_score(
            feedback_event.household_key,
            feedback_event.meal_id,
            weight,
            approved=feedback_event.user_action == "approved",
            rejected=feedback_event.user_action == "rejected",
            seen_at=feedback_event.actioned_at,
        )
    logger.info(
        f"Taste signal {signal_action} for meal {feedback_event.meal_id} "
        f"(household {feedback_event.household_key}) weight={weight:.2f}"
    )
    return signal


@dataclass
class TasteTotals:
    score: float = 0.0
    approvals: int = 0
    rejections: int = 0
    last_seen_at: Optional[str] = None


def recompute_taste_meal_scores(signals: Iterable) -> dict[str, TasteTotals]:
    """Rebuild the per-meal cache from the signal log."""
    totals: dict[str, TasteTotals] = {}
    for sig in signals:
        if not sig.meal_id or sig.is_undo:
            continue
        t = totals.setdefault(sig.meal_id, TasteTotals())
        t.score += sig.weight
        if sig.user_action == "approved":
            t.approvals += 1
        elif sig.user_action == "rejected":
            t.rejections += 1
        if sig.actioned_at and (t.last_seen_at is None or parse_iso(sig.actioned_at) > parse_iso(t.last_seen_at)):
            t.last_seen_at = sig.actioned_at
    return totals
