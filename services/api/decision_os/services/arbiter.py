"""Decision arbiter: one dinner action per request.

Flow:
1. DRM trigger check (short-circuits with `drmRecommended`, nothing persisted)
2. Score every candidate meal:
   final = 0.60 * inventory + 0.35 * taste + exploration + rotation penalty
3. Pick the single winner (ties within 1e-4 go to the lower canonical key)
4. Build + validate the action, persist it as a pending DecisionEvent
5. Validate the outgoing response

Time only enters through `now_iso`; nothing here reads the clock, so the same
inputs always produce the same meal.
"""

import hashlib
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from ..core.invariants import validate_decision_response, validate_single_action
from ..models import DecisionEvent
from ..schemas import CookAction, ZeroCookAction
from .drm import evaluate_drm_trigger
from .ingredient_matching import MatchStats
from .inventory_scoring import log_match_stats, score_meal_by_inventory
from .ledger import sort_recent_first
from .taste import normalize_taste_score

logger = logging.getLogger("decision_os.arbiter")

INVENTORY_WEIGHT = 0.60
TASTE_WEIGHT = 0.35
ROTATION_PENALTY = -0.20
ROTATION_WINDOW = 7
EXPLORATION_MAX = 0.05
TIE_TOLERANCE = 1e-4

# Pantry-friendly meals used when nothing is known about the household's inventory
SAFE_CORE_MEAL_KEYS = (
    "spaghetti-aglio-olio",
    "egg-fried-rice",
    "quick-grilled-cheese",
    "scrambled-eggs-toast",
    "pasta-marinara",
    "quesadilla-cheese",
    "bean-and-cheese-burrito",
    "instant-ramen-upgrade",
    "tuna-salad-crackers",
    "pb-banana-sandwich",
)

FALLBACK_TITLE = "Quick Assembly Meal"
FALLBACK_STEPS = (
    "Grab crackers, cheese, and deli meat from the fridge. Arrange on a plate. "
    "Add pickles or olives if available."
)
FALLBACK_MINUTES = 5


def compute_context_hash(
    now_iso: str,
    signal,
    inventory_item_names: Sequence[str],
    selected_meal_key: Optional[str] = None,
) -> str:
    """Stable 16-hex digest of time, signal, inventory and the chosen meal."""
    blob = json.dumps(
        {
            "t": now_iso,
            "s": {
                "tw": signal.time_window,
                "e": signal.energy,
                "cc": signal.calendar_conflict,
            },
            "i": sorted(inventory_item_names),
            "m": selected_meal_key,
        },
        separators=(",", ":"),
    )
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:16]


def exploration_noise(context_hash: str, meal_id: str) -> float:
    """Deterministic perturbation in [0, EXPLORATION_MAX]."""
    digest = hashlib.sha256(f"{context_hash}:{meal_id}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16) / 0xFFFFFFFF * EXPLORATION_MAX


def rotation_penalty(meal_id: str, recent_meal_ids: Sequence[str]) -> float:
    return ROTATION_PENALTY if meal_id in recent_meal_ids[:ROTATION_WINDOW] else 0.0


def recent_meal_ids(events: Sequence, window: int = ROTATION_WINDOW) -> list[str]:
    """Meal ids served most-recent-first, from original decisions only."""
    served = [e for e in sort_recent_first(events) if e.meal_id and not e.is_feedback_copy]
    return [e.meal_id for e in served][:window]


@dataclass
class MealSelection:
    meal: object
    inventory_score: float
    taste_score: float
    exploration: float
    rotation_penalty: float
    final_score: float

    @property
    def is_recently_used(self) -> bool:
        return self.rotation_penalty != 0.0


def rank_selections(selections: Sequence[MealSelection]) -> list[MealSelection]:
    """Best first.

    Only candidates within TIE_TOLERANCE of the top score tie with it; the
    lowest canonical key among those wins. The rest follow by score.
    """
    if not selections:
        return []
    best = max(s.final_score for s in selections)
    tied = [s for s in selections if best - s.final_score <= TIE_TOLERANCE]
    winner = min(tied, key=lambda s: s.meal.canonical_key)
    rest = sorted(
        (s for s in selections if s is not winner),
        key=lambda s: (-s.final_score, s.meal.canonical_key),
    )
    return [winner] + rest


def candidate_meals(meals: Sequence, inventory: Sequence) -> list:
    """Active meals, narrowed to the safe core when inventory is empty."""
    active = sorted((m for m in meals if m.is_active), key=lambda m: m.canonical_key)
    if inventory:
        return active
    safe = [m for m in active if m.canonical_key in SAFE_CORE_MEAL_KEYS]
    return safe or active


def score_candidates(
    meals: Sequence,
    ingredients: Sequence,
    inventory: Sequence,
    taste_scores: dict[str, float],
    recent_ids: Sequence[str],
    context_hash: str,
    now_iso: str,
    *,
    stats: Optional[MatchStats] = None,
) -> list[MealSelection]:
    by_meal = defaultdict(list)
    for ing in ingredients:
        by_meal[ing.meal_id].append(ing)

    scored = []
    for meal in candidate_meals(meals, inventory):
        inv = score_meal_by_inventory(by_meal.get(meal.id, []), inventory, now_iso, stats=stats)
        taste = normalize_taste_score(taste_scores.get(meal.id, 0.0))
        noise = exploration_noise(context_hash, meal.id)
        penalty = rotation_penalty(meal.id, recent_ids)
        scored.append(MealSelection(
            meal=meal,
            inventory_score=inv,
            taste_score=taste,
            exploration=noise,
            rotation_penalty=penalty,
            final_score=INVENTORY_WEIGHT * inv + TASTE_WEIGHT * taste + noise + penalty,
        ))
    return rank_selections(scored)


def select_meal(
    meals: Sequence,
    ingredients: Sequence,
    inventory: Sequence,
    taste_scores: dict[str, float],
    recent_ids: Sequence[str],
    context_hash: str,
    now_iso: str,
    *,
    stats: Optional[MatchStats] = None,
) -> Optional[MealSelection]:
    """The single best meal, or None when there is nothing to choose from."""
    scored = score_candidates(
        meals, ingredients, inventory, taste_scores, recent_ids, context_hash, now_iso, stats=stats
    )
    return scored[0] if scored else None


def build_cook_action(selection: MealSelection, decision_event_id: str, context_hash: str) -> dict:
    meal = selection.meal
    return CookAction(
        decision_event_id=decision_event_id,
        meal_id=meal.id,
        title=meal.name,
        steps_short=meal.instructions_short,
        est_minutes=meal.est_minutes,
        context_hash=context_hash,
    ).model_dump(by_alias=True)


def create_zero_cook_fallback(decision_event_id: str, context_hash: str) -> dict:
    return ZeroCookAction(
        decision_event_id=decision_event_id,
        title=FALLBACK_TITLE,
        steps_short=FALLBACK_STEPS,
        est_minutes=FALLBACK_MINUTES,
        context_hash=context_hash,
    ).model_dump(by_alias=True)


@dataclass
class ArbiterInput:
    household_key: str
    now_iso: str
    signal: object
    meals: Sequence = ()
    ingredients: Sequence = ()
    inventory: Sequence = ()
    taste_scores: dict = field(default_factory=dict)
    recent_events: Sequence = ()


@dataclass
class ArbiterResult:
    response: dict
    decision_event: Optional[DecisionEvent] = None
    selection: Optional[MealSelection] = None
    drm_reason: Optional[str] = None


async def make_decision(
    inp: ArbiterInput,
    *,
    generate_event_id: Callable[[], str],
    persist_decision_event: Callable[[DecisionEvent], Awaitable[None]],
) -> ArbiterResult:
    """Run one arbitration. Persistence failures propagate to the caller."""
    drm_reason = evaluate_drm_trigger(inp.signal, inp.now_iso, inp.recent_events)
    if drm_reason:
        logger.info(f"DRM recommended for {inp.household_key}: {drm_reason}")
        response = {"decision": None, "drmRecommended": True, "reason": drm_reason}
        validate_decision_response(response)
        return ArbiterResult(response=response, drm_reason=drm_reason)

    item_names = [i.item_name for i in inp.inventory]
    seed_hash = compute_context_hash(inp.now_iso, inp.signal, item_names)
    stats = MatchStats()
    selection = select_meal(
        inp.meals,
        inp.ingredients,
        inp.inventory,
        inp.taste_scores,
        recent_meal_ids(inp.recent_events),
        seed_hash,
        inp.now_iso,
        stats=stats,
    )
    log_match_stats(stats, inp.household_key)

    event_id = generate_event_id()
    if selection is not None:
        context_hash = compute_context_hash(
            inp.now_iso, inp.signal, item_names, selection.meal.canonical_key
        )
        action = build_cook_action(selection, event_id, context_hash)
        logger.info(
            f"Selected {selection.meal.canonical_key} for {inp.household_key} "
            f"(final={selection.final_score:.3f})"
        )
    else:
        context_hash = seed_hash
        action = create_zero_cook_fallback(event_id, context_hash)
        logger.warning(f"No candidate meals for {inp.household_key}; zero-cook fallback")

    validate_single_action(action)
    event = DecisionEvent(
        id=event_id,
        household_key=inp.household_key,
        decided_at=inp.now_iso,
        actioned_at=None,
        decision_type=action["decisionType"],
        meal_id=action.get("mealId"),
        external_vendor_key=None,
        context_hash=context_hash,
        decision_payload=action,
        user_action="pending",
        is_feedback_copy=False,
        is_autopilot=False,
    )
    await persist_decision_event(event)

    response = {"decision": action, "drmRecommended": False}
    validate_decision_response(response)
    return ArbiterResult(response=response, decision_event=event, selection=selection)
