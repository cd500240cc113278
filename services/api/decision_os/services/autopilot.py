"""Autopilot: auto-approve a fresh decision when trust is high enough.

Gates run in a fixed order and the first failure names the reason. Reasons
are a closed set (AUTOPILOT_REASONS), never free text.

When eligible, exactly one approved feedback copy is inserted for the pending
event. The check for an existing copy happens before any write, and the
ledger's unique dedupe key covers concurrent callers; consumption and the
taste update only run for the copy this call actually inserted.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Sequence

from ..core.clock import hours_since, local_date, local_minutes
from ..core.errors import DuplicateEventError
from ..models import DecisionEvent
from .consumption import consume_meal_inventory
from .ledger import autopilot_dedupe_key, effective_time
from .taste import record_taste_signal

logger = logging.getLogger("decision_os.autopilot")

AUTOPILOT_WINDOW_START = (17, 0)
AUTOPILOT_WINDOW_END = (18, 15)
MIN_INVENTORY_SCORE = 0.85
MIN_TASTE_SCORE = 0.70
MIN_APPROVAL_RATE = 0.70
MIN_DECISIONS = 5
APPROVAL_WINDOW_DAYS = 7
RECENT_UNDO_WINDOW_HOURS = 72
RECENT_REJECTION_WINDOW_HOURS = 24
RECENTLY_USED_WINDOW_DAYS = 3

UNDO_NOTE = "undo_autopilot"
AUTOPILOT_NOTE = "autopilot"

AUTOPILOT_REASONS = (
    "disabled",
    "outside_autopilot_window",
    "calendar_conflict",
    "low_energy",
    "low_inventory_score",
    "low_taste_score",
    "meal_used_recently",
    "recent_undo",
    "insufficient_decisions",
    "low_approval_rate",
    "recent_rejection",
    "enabled",
)


@dataclass
class AutopilotConfig:
    enabled: bool = True
    window_start: tuple[int, int] = AUTOPILOT_WINDOW_START
    window_end: tuple[int, int] = AUTOPILOT_WINDOW_END
    min_inventory_score: float = MIN_INVENTORY_SCORE
    min_taste_score: float = MIN_TASTE_SCORE
    min_approval_rate: float = MIN_APPROVAL_RATE
    min_decisions: int = MIN_DECISIONS
    approval_window_days: int = APPROVAL_WINDOW_DAYS
    recent_undo_window_hours: float = RECENT_UNDO_WINDOW_HOURS
    recent_rejection_window_hours: float = RECENT_REJECTION_WINDOW_HOURS


@dataclass
class AutopilotContext:
    now_iso: str
    signal: object
    inventory_score: float
    taste_score: float
    used_in_last_3_days: bool
    recent_events: Sequence = field(default_factory=list)


@dataclass(frozen=True)
class AutopilotEligibility:
    eligible: bool
    reason: str


def is_undo_event(event) -> bool:
    return event.user_action == "rejected" and event.notes == UNDO_NOTE


def is_within_autopilot_window(now_iso: str, config: AutopilotConfig) -> bool:
    minutes = local_minutes(now_iso)
    start = config.window_start[0] * 60 + config.window_start[1]
    end = config.window_end[0] * 60 + config.window_end[1]
    return start <= minutes <= end


def has_recent_undo(events: Sequence, now_iso: str, window_hours: float = RECENT_UNDO_WINDOW_HOURS) -> bool:
    return any(
        is_undo_event(e) and 0 <= hours_since(effective_time(e), now_iso) <= window_hours
        for e in events
    )


def has_recent_rejection(events: Sequence, now_iso: str, window_hours: float = RECENT_REJECTION_WINDOW_HOURS) -> bool:
    return any(
        e.user_action == "rejected"
        and not is_undo_event(e)
        and 0 <= hours_since(effective_time(e), now_iso) <= window_hours
        for e in events
    )


def approval_counts(events: Sequence, now_iso: str, window_days: int = APPROVAL_WINDOW_DAYS) -> tuple[int, int]:
    """(approved, rejected) within the window; undo events are not user verdicts."""
    approved = rejected = 0
    for e in events:
        if e.user_action not in ("approved", "rejected") or is_undo_event(e):
            continue
        age = hours_since(effective_time(e), now_iso)
        if age < 0 or age > window_days * 24:
            continue
        if e.user_action == "approved":
            approved += 1
        else:
            rejected += 1
    return approved, rejected


def was_meal_used_recently(
    meal_id: Optional[str],
    events: Sequence,
    now_iso: str,
    window_days: int = RECENTLY_USED_WINDOW_DAYS,
) -> bool:
    """Approved for this meal on today or one of the previous `window_days - 1` local dates."""
    if not meal_id:
        return False
    today = local_date(now_iso)
    valid = {today - timedelta(days=i) for i in range(window_days)}
    return any(
        e.meal_id == meal_id and e.user_action == "approved" and local_date(e.decided_at) in valid
        for e in events
    )


def evaluate_autopilot_eligibility(
    ctx: AutopilotContext, config: Optional[AutopilotConfig] = None
) -> AutopilotEligibility:
    config = config or AutopilotConfig()

    def blocked(reason: str) -> AutopilotEligibility:
        return AutopilotEligibility(eligible=False, reason=reason)

    if not config.enabled:
        return blocked("disabled")
    if not is_within_autopilot_window(ctx.now_iso, config):
        return blocked("outside_autopilot_window")
    if ctx.signal.calendar_conflict:
        return blocked("calendar_conflict")
    if ctx.signal.energy == "low":
        return blocked("low_energy")
    if ctx.inventory_score < config.min_inventory_score:
        return blocked("low_inventory_score")
    if ctx.taste_score < config.min_taste_score:
        return blocked("low_taste_score")
    if ctx.used_in_last_3_days:
        return blocked("meal_used_recently")
    if has_recent_undo(ctx.recent_events, ctx.now_iso, config.recent_undo_window_hours):
        return blocked("recent_undo")

    approved, rejected = approval_counts(ctx.recent_events, ctx.now_iso, config.approval_window_days)
    total = approved + rejected
    if total < config.min_decisions:
        return blocked("insufficient_decisions")
    if approved / total < config.min_approval_rate:
        return blocked("low_approval_rate")
    if has_recent_rejection(ctx.recent_events, ctx.now_iso, config.recent_rejection_window_hours):
        return blocked("recent_rejection")

    return AutopilotEligibility(eligible=True, reason="enabled")


@dataclass
class AutopilotOutcome:
    applied: bool
    reason: str
    inserted: bool = False
    approval_event: Optional[DecisionEvent] = None


def build_autopilot_approval(ledger, pending: DecisionEvent, now_iso: str) -> DecisionEvent:
    return DecisionEvent(
        id=ledger.generate_event_id(),
        household_key=pending.household_key,
        decided_at=pending.decided_at,
        actioned_at=now_iso,
        decision_type=pending.decision_type,
        meal_id=pending.meal_id,
        external_vendor_key=pending.external_vendor_key,
        context_hash=pending.context_hash,
        decision_payload=pending.decision_payload,
        user_action="approved",
        is_feedback_copy=True,
        original_event_id=pending.id,
        is_autopilot=True,
        notes=AUTOPILOT_NOTE,
        dedupe_key=autopilot_dedupe_key(pending.id),
    )


def apply_autopilot(
    ledger,
    pending: DecisionEvent,
    ctx: AutopilotContext,
    config: Optional[AutopilotConfig] = None,
) -> AutopilotOutcome:
    """Evaluate the gates and, if eligible, insert one approval copy (idempotent)."""
    eligibility = evaluate_autopilot_eligibility(ctx, config)
    if not eligibility.eligible:
        logger.info(f"Autopilot skipped for {pending.id}: {eligibility.reason}")
        return AutopilotOutcome(applied=False, reason=eligibility.reason)

    existing = ledger.find_autopilot_approval(pending.id)
    if existing is not None:
        return AutopilotOutcome(applied=True, reason=eligibility.reason, approval_event=existing)

    approval = build_autopilot_approval(ledger, pending, ctx.now_iso)
    try:
        ledger.insert_decision_event(approval)
    except DuplicateEventError:
        logger.info(f"Autopilot approval for {pending.id} already recorded concurrently")
        return AutopilotOutcome(
            applied=True,
            reason=eligibility.reason,
            approval_event=ledger.find_autopilot_approval(pending.id),
        )

    if approval.meal_id:
        meal = ledger.get_meal(approval.meal_id)
        ingredients = ledger.meal_ingredients([approval.meal_id])
        consume_meal_inventory(ledger, approval.household_key, approval.meal_id, ctx.now_iso)
        record_taste_signal(
            ledger,
            feedback_event=approval,
            meal=meal,
            ingredients=ingredients,
            signal_action="approved",
        )

    logger.info(f"Autopilot approved {pending.id} for {pending.household_key}")
    return AutopilotOutcome(applied=True, reason=eligibility.reason, inserted=True, approval_event=approval)
