from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import schemas
from ..core.errors import EventNotFoundError
from ..core.invariants import validate_feedback_response
from ..db import get_db
from ..deps import resolve_household
from ..infra.idempotency import (
    idempotency_clear_key,
    idempotency_precheck,
    idempotency_store_result,
)
from ..services.feedback import process_feedback
from ..services.ledger import SqlLedger

router = APIRouter()


@router.post("/feedback")
async def post_feedback(
    request: Request,
    req: schemas.FeedbackRequest,
    db: Session = Depends(get_db),
    x_household_key: Optional[str] = Header(None, alias="X-Household-Key"),
):
    household = resolve_household(db, None, x_household_key)
    pre = await idempotency_precheck(request, household_key=household.key, route_key="feedback")
    if isinstance(pre, JSONResponse):
        return pre
    rkey, req_hash = pre

    ledger = SqlLedger(db)
    try:
        original = ledger.get_decision_event(req.event_id)
        if original is None or original.household_key != household.key:
            raise EventNotFoundError(req.event_id)
        result = process_feedback(
            ledger, event_id=req.event_id, user_action=req.user_action, now_iso=req.now_iso
        )
        response = result.to_response()
        validate_feedback_response(response)
        db.commit()
    except EventNotFoundError as e:
        await idempotency_clear_key(rkey)
        raise HTTPException(status_code=404, detail=str(e))
    except Exception:
        await idempotency_clear_key(rkey)
        raise

    await idempotency_store_result(rkey, req_hash, status=200, body=response)
    return response
