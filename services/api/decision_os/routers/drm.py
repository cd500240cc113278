from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from .. import schemas
from ..db import get_db
from ..deps import resolve_household
from ..infra.rate_limit import limiter
from ..services.drm import execute_drm_rescue
from ..services.ledger import SqlLedger
from ..settings import settings

router = APIRouter()


@router.post("/drm")
@limiter.limit(settings.rate_limit_default)
async def post_drm(
    request: Request,
    req: schemas.DrmRequest,
    db: Session = Depends(get_db),
    x_household_key: Optional[str] = Header(None, alias="X-Household-Key"),
):
    """Dinner Rescue Mode: one rescue, persisted, never a list."""
    household = resolve_household(db, req.household_key, x_household_key)
    ledger = SqlLedger(db)
    response = await execute_drm_rescue(
        household_key=household.key,
        now_iso=req.now_iso,
        trigger_type=req.trigger_type,
        trigger_reason=req.trigger_reason,
        generate_event_id=ledger.generate_event_id,
        persist_drm_event=ledger.persist_drm_event,
        persist_decision_event=ledger.persist_decision_event,
    )
    db.commit()
    return response
