"""Dinner Rescue Mode.

Two halves:
- evaluate_drm_trigger: runs before meal selection and decides whether normal
  selection must be bypassed.
- execute_drm_rescue: picks exactly one rescue (order or zero-cook) from a
  fixed catalogue. Deterministic, never a list, confidence always 1.0.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from ..core.clock import local_date, local_hour, minutes_between
from ..core.invariants import (
    validate_drm_response,
    validate_single_action,
    validate_single_rescue,
)
from ..models import DecisionEvent, DrmEvent
from ..schemas import OrderAction, OrderRescue, ZeroCookAction, ZeroCookRescue
from .ledger import effective_time, sort_recent_first

logger = logging.getLogger("decision_os.drm")

DINNER_START_HOUR = 17
DINNER_END_HOUR = 21
LATE_THRESHOLD_HOUR = 20
LATE_NO_ACTION_THRESHOLD_HOUR = 18
ORDER_CUTOFF_HOUR = 20
TWO_REJECTION_WINDOW_MINUTES = 30

HIGH_STRESS_REASONS = frozenset({
    "handle_it",
    "im_done",
    "late_no_action",
    "calendar_conflict",
    "low_energy",
})

# --- Trigger evaluation ---


def has_two_rejections_within_window(
    events: Sequence, window_minutes: float = TWO_REJECTION_WINDOW_MINUTES
) -> bool:
    """True when the two most recent rejections are at most `window_minutes` apart."""
    rejected = [e for e in sort_recent_first(events) if e.user_action == "rejected"]
    if len(rejected) < 2:
        return False
    return minutes_between(effective_time(rejected[0]), effective_time(rejected[1])) <= window_minutes


def is_late_no_action(now_iso: str, events: Sequence) -> bool:
    hour = local_hour(now_iso)
    if hour >= LATE_THRESHOLD_HOUR:
        return True
    if hour < LATE_NO_ACTION_THRESHOLD_HOUR:
        return False

    today = local_date(now_iso)
    todays = [e for e in events if local_date(effective_time(e)) == today]
    if any(e.user_action == "approved" for e in todays):
        return False
    return any(e.user_action in ("pending", "rejected", "expired") for e in todays)


def evaluate_drm_trigger(signal, now_iso: str, recent_events: Sequence) -> Optional[str]:
    """First matching DRM reason in priority order, or None to proceed normally."""
    if signal.calendar_conflict:
        return "calendar_conflict"
    if signal.energy == "low":
        return "low_energy"
    if has_two_rejections_within_window(recent_events):
        return "two_rejections"
    if signal.time_window == "dinner" and is_late_no_action(now_iso, recent_events):
        return "late_no_action"
    return None


# --- Rescue catalogue ---


@dataclass(frozen=True)
class Vendor:
    key: str
    title: str
    deep_link_url: str
    est_minutes: int


@dataclass(frozen=True)
class ZeroCookMove:
    title: str
    steps_short: str
    est_minutes: int


VENDORS = (
    Vendor("doordash-local", "Quick Delivery (DoorDash)", "doordash://store/nearby-quick", 30),
    Vendor("ubereats-fast", "Fast Food Pickup (Uber Eats)", "ubereats://checkout?type=pickup", 20),
    Vendor("grubhub-pizza", "Pizza Delivery (Grubhub)", "grubhub://restaurant/pizza-nearby", 35),
)

ZERO_COOK_MOVES = (
    ZeroCookMove(
        "Cheese Board Assembly",
        "Grab crackers, cheese, and deli meat from fridge. Arrange on plate. "
        "Add pickles, olives, or fruit if available.",
        5,
    ),
    ZeroCookMove(
        "Cereal Dinner",
        "Pour favorite cereal into bowl. Add milk. Done. No judgment.",
        2,
    ),
    ZeroCookMove(
        "Peanut Butter Toast",
        "Toast bread. Spread peanut butter. Slice banana on top if you have one. Add honey drizzle.",
        3,
    ),
)

_REASON_TO_MOVE = {
    "handle_it": 1,
    "im_done": 1,
    "low_energy": 2,
}


def should_order(trigger_reason: str, now_iso: str) -> bool:
    hour = local_hour(now_iso)
    return trigger_reason in HIGH_STRESS_REASONS and DINNER_START_HOUR <= hour < ORDER_CUTOFF_HOUR


def select_vendor() -> Vendor:
    return VENDORS[0]


def select_zero_cook_move(trigger_reason: str) -> ZeroCookMove:
    return ZERO_COOK_MOVES[_REASON_TO_MOVE.get(trigger_reason, 0)]


def compute_drm_context_hash(now_iso: str, trigger_type: str, trigger_reason: str, rescue_type: str) -> str:
    blob = json.dumps(
        {"t": now_iso, "tt": trigger_type, "tr": trigger_reason, "rt": rescue_type},
        separators=(",", ":"),
    )
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:16]


def build_rescue(drm_event_id: str, trigger_type: str, trigger_reason: str, now_iso: str) -> dict:
    """One rescue object in wire form."""
    if should_order(trigger_reason, now_iso):
        vendor = select_vendor()
        rescue = OrderRescue(
            drm_event_id=drm_event_id,
            title=vendor.title,
            vendor_key=vendor.key,
            deep_link_url=vendor.deep_link_url,
            est_minutes=vendor.est_minutes,
            context_hash=compute_drm_context_hash(now_iso, trigger_type, trigger_reason, "order"),
        )
    else:
        move = select_zero_cook_move(trigger_reason)
        rescue = ZeroCookRescue(
            drm_event_id=drm_event_id,
            title=move.title,
            steps_short=move.steps_short,
            est_minutes=move.est_minutes,
            context_hash=compute_drm_context_hash(now_iso, trigger_type, trigger_reason, "zero_cook"),
        )
    return rescue.model_dump(by_alias=True)


def rescue_to_action(rescue: dict, decision_event_id: str) -> dict:
    """Re-express a rescue as a single decision action for the decision log."""
    if rescue["rescueType"] == "order":
        action = OrderAction(
            decision_event_id=decision_event_id,
            vendor_key=rescue["vendorKey"],
            deep_link_url=rescue["deepLinkUrl"],
            title=rescue["title"],
            est_minutes=rescue["estMinutes"],
            context_hash=rescue["contextHash"],
        )
    else:
        action = ZeroCookAction(
            decision_event_id=decision_event_id,
            title=rescue["title"],
            steps_short=rescue["stepsShort"],
            est_minutes=rescue["estMinutes"],
            context_hash=rescue["contextHash"],
        )
    return action.model_dump(by_alias=True)


async def execute_drm_rescue(
    *,
    household_key: str,
    now_iso: str,
    trigger_type: str,
    trigger_reason: str,
    generate_event_id: Callable[[], str],
    persist_drm_event: Callable[[DrmEvent], Awaitable[None]],
    persist_decision_event: Callable[[DecisionEvent], Awaitable[None]],
) -> dict:
    """Pick, validate and persist one rescue. Returns `{rescue, exhausted}`."""
    drm_event_id = generate_event_id()
    rescue = build_rescue(drm_event_id, trigger_type, trigger_reason, now_iso)
    validate_single_rescue(rescue)

    decision_event_id = generate_event_id()
    action = rescue_to_action(rescue, decision_event_id)
    validate_single_action(action)

    await persist_drm_event(DrmEvent(
        id=drm_event_id,
        household_key=household_key,
        triggered_at=now_iso,
        trigger_type=trigger_type,
        trigger_reason=trigger_reason,
        rescue_type=rescue["rescueType"],
        rescue_payload=rescue,
        exhausted=False,
    ))
    await persist_decision_event(DecisionEvent(
        id=decision_event_id,
        household_key=household_key,
        decided_at=now_iso,
        actioned_at=now_iso,
        decision_type=action["decisionType"],
        meal_id=None,
        external_vendor_key=action.get("vendorKey"),
        context_hash=rescue["contextHash"],
        decision_payload=action,
        user_action="drm_triggered",
        is_feedback_copy=False,
        is_autopilot=False,
    ))

    logger.info(
        f"DRM rescue for {household_key}: {rescue['rescueType']} "
        f"({trigger_type}/{trigger_reason}) -> {rescue['title']}"
    )
    response = {"rescue": rescue, "exhausted": False}
    validate_drm_response(response)
    return response


async def create_exhausted_response(
    *,
    household_key: str,
    now_iso: str,
    trigger_type: str,
    trigger_reason: str,
    generate_event_id: Callable[[], str],
    persist_drm_event: Callable[[DrmEvent], Awaitable[None]],
) -> dict:
    """Record that no rescue could be produced. Unreachable while zero-cook moves exist."""
    await persist_drm_event(DrmEvent(
        id=generate_event_id(),
        household_key=household_key,
        triggered_at=now_iso,
        trigger_type=trigger_type,
        trigger_reason=trigger_reason,
        rescue_type=None,
        rescue_payload=None,
        exhausted=True,
    ))
    logger.warning(f"DRM exhausted for {household_key} ({trigger_reason})")
    response = {"rescue": None, "exhausted": True}
    validate_drm_response(response)
    return response
