"""Feedback on a decision: the "feedback copy" pattern.

A decision row is never changed. Each user verdict inserts a new row with
`original_event_id` and the same context hash, and the current status of a
decision is read back from the newest copy (`resolve_current_status`).
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from ..core.clock import minutes_between
from ..core.errors import EventNotFoundError
from ..models import DecisionEvent
from .autopilot import UNDO_NOTE, is_undo_event
from .consumption import consume_meal_inventory
from .drm import has_two_rejections_within_window
from .ledger import sort_recent_first
from .taste import record_taste_signal

logger = logging.getLogger("decision_os.feedback")

DUPLICATE_FEEDBACK_WINDOW_MINUTES = 10
UNDO_WINDOW_MINUTES = 10


@dataclass
class FeedbackResult:
    recorded: bool
    drm_required: Optional[bool] = None
    feedback_event: Optional[DecisionEvent] = None

    def to_response(self) -> dict:
        response = {"recorded": self.recorded}
        if self.drm_required is not None:
            response["drmRequired"] = self.drm_required
        return response


def resolve_current_status(original: DecisionEvent, copies: Sequence[DecisionEvent]) -> str:
    """Status of a decision: the newest feedback copy wins, else the original's."""
    ordered = sort_recent_first(copies)
    return ordered[0].user_action if ordered else original.user_action


def _find_original(ledger, event_id: str) -> DecisionEvent:
    event = ledger.get_decision_event(event_id)
    if event is None:
        raise EventNotFoundError(event_id)
    if event.is_feedback_copy and event.original_event_id:
        original = ledger.get_decision_event(event.original_event_id)
        if original is None:
            raise EventNotFoundError(event.original_event_id)
        return original
    return event


def build_feedback_copy(
    ledger, original: DecisionEvent, user_action: str, now_iso: str, notes: Optional[str] = None
) -> DecisionEvent:
    return DecisionEvent(
        id=ledger.generate_event_id(),
        household_key=original.household_key,
        decided_at=original.decided_at,
        actioned_at=now_iso,
        decision_type=original.decision_type,
        meal_id=original.meal_id,
        external_vendor_key=original.external_vendor_key,
        context_hash=original.context_hash,
        decision_payload=original.decision_payload,
        user_action=user_action,
        is_feedback_copy=True,
        original_event_id=original.id,
        is_autopilot=False,
        notes=notes,
    )


def _is_duplicate(copies: Sequence[DecisionEvent], user_action: str, now_iso: str) -> bool:
    return any(
        c.user_action == user_action
        and not is_undo_event(c)
        and c.actioned_at
        and minutes_between(c.actioned_at, now_iso) <= DUPLICATE_FEEDBACK_WINDOW_MINUTES
        for c in copies
    )


def process_feedback(ledger, *, event_id: str, user_action: str, now_iso: str) -> FeedbackResult:
    """Record one verdict. Raises EventNotFoundError for unknown ids."""
    original = _find_original(ledger, event_id)
    copies = ledger.feedback_copies(original.id)

    if user_action == "undo":
        approval = ledger.find_autopilot_approval(original.id)
        if approval is None:
            logger.info(f"Undo ignored for {original.id}: no autopilot approval")
            return FeedbackResult(recorded=False)
        if any(is_undo_event(c) for c in copies):
            return FeedbackResult(recorded=True)
        if minutes_between(approval.actioned_at, now_iso) > UNDO_WINDOW_MINUTES:
            logger.info(f"Undo ignored for {original.id}: outside undo window")
            return FeedbackResult(recorded=False)
        stored_action, notes = "rejected", UNDO_NOTE
    else:
        if _is_duplicate(copies, user_action, now_iso):
            logger.info(f"Duplicate {user_action} feedback for {original.id} ignored")
            return FeedbackResult(recorded=True)
        stored_action, notes = user_action, None

    already_approved = any(c.user_action == "approved" for c in copies)
    copy = build_feedback_copy(ledger, original, stored_action, now_iso, notes)
    ledger.insert_decision_event(copy)

    meal = ledger.get_meal(copy.meal_id) if copy.meal_id else None
    if meal is not None:
        ingredients = ledger.meal_ingredients([meal.id])
        if stored_action == "approved" and not already_approved:
            consume_meal_inventory(ledger, copy.household_key, meal.id, now_iso)
        record_taste_signal(
            ledger,
            feedback_event=copy,
            meal=meal,
            ingredients=ingredients,
            signal_action=user_action,
        )

    drm_required = None
    if stored_action == "rejected" and user_action != "undo":
        drm_required = has_two_rejections_within_window(
            ledger.recent_decision_events(copy.household_key)
        )

    logger.info(f"Feedback {user_action} recorded for {original.id} ({copy.household_key})")
    return FeedbackResult(recorded=True, drm_required=drm_required, feedback_event=copy)
