"""FastAPI dependencies for the Decision OS API.

Provides:
- Household resolution (body -> X-Household-Key header -> env default)
- Autopilot configuration from settings
"""

from typing import Optional

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Household
from .services.autopilot import AutopilotConfig
from .settings import settings


def resolve_household(
    db: Session,
    body_key: Optional[str] = None,
    header_key: Optional[str] = None,
) -> Household:
    """Resolve the household for a request.

    Resolution order:
    1. householdKey in the request body
    2. X-Household-Key header
    3. settings.default_household_key

    An explicitly requested key that does not exist is a 404, never a silent
    fallback to the default household.
    """
    key = body_key or header_key or settings.default_household_key
    if not key:
        raise HTTPException(status_code=404, detail="No household key provided")
    household = db.scalar(select(Household).where(Household.key == key))
    if household is None:
        raise HTTPException(status_code=404, detail=f"Household '{key}' not found")
    return household


def get_autopilot_config() -> AutopilotConfig:
    return AutopilotConfig(enabled=settings.autopilot_enabled)
