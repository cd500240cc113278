from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from .. import schemas
from ..core.invariants import validate_decision_response
from ..db import get_db
from ..deps import get_autopilot_config, resolve_household
from ..infra.rate_limit import limiter
from ..services.arbiter import ArbiterInput, make_decision
from ..services.autopilot import (
    AutopilotConfig,
    AutopilotContext,
    apply_autopilot,
    was_meal_used_recently,
)
from ..services.feedback import resolve_current_status
from ..services.ledger import SqlLedger
from ..settings import settings

router = APIRouter()


@router.post("/decision")
@limiter.limit(settings.rate_limit_default)
async def post_decision(
    request: Request,
    req: schemas.DecisionRequest,
    db: Session = Depends(get_db),
    autopilot_config: AutopilotConfig = Depends(get_autopilot_config),
    x_household_key: Optional[str] = Header(None, alias="X-Household-Key"),
):
    """Exactly one dinner action, or an explicit DRM recommendation."""
    household = resolve_household(db, req.household_key, x_household_key)
    ledger = SqlLedger(db)

    recent = ledger.recent_decision_events(household.key)
    meals = ledger.active_meals()
    result = await make_decision(
        ArbiterInput(
            household_key=household.key,
            now_iso=req.now_iso,
            signal=req.signal,
            meals=meals,
            ingredients=ledger.meal_ingredients([m.id for m in meals]),
            inventory=ledger.inventory_items(household.key),
            taste_scores=ledger.taste_scores(household.key),
            recent_events=recent,
        ),
        generate_event_id=ledger.generate_event_id,
        persist_decision_event=ledger.persist_decision_event,
    )

    response = dict(result.response)
    if result.selection is not None:
        outcome = apply_autopilot(
            ledger,
            result.decision_event,
            AutopilotContext(
                now_iso=req.now_iso,
                signal=req.signal,
                inventory_score=result.selection.inventory_score,
                taste_score=result.selection.taste_score,
                used_in_last_3_days=was_meal_used_recently(
                    result.selection.meal.id, recent, req.now_iso
                ),
                recent_events=recent,
            ),
            autopilot_config,
        )
        response["autopilot"] = outcome.applied

    validate_decision_response(response)
    db.commit()
    return response


@router.get("/decision/{event_id}/status", response_model=schemas.DecisionStatusOut)
def get_decision_status(event_id: str, db: Session = Depends(get_db)):
    ledger = SqlLedger(db)
    event = ledger.get_decision_event(event_id)
    if event is None or event.is_feedback_copy:
        raise HTTPException(status_code=404, detail=f"Decision '{event_id}' not found")
    copies = ledger.feedback_copies(event.id)
    return schemas.DecisionStatusOut(
        event_id=event.id,
        status=resolve_current_status(event, copies),
        is_autopilot=ledger.find_autopilot_approval(event.id) is not None,
    )
