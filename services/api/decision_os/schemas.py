"""Pydantic schemas for the Decision OS API.

Request/response models for:
- Decision requests and single action objects (cook / order / zero_cook)
- Dinner Rescue Mode requests and rescues
- Feedback and derived decision status

Wire format is camelCase; Python attributes stay snake_case.
"""

from typing import Optional, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .core.clock import is_timezone_qualified


TimeWindow = Literal["dinner", "lunch", "breakfast"]
Energy = Literal["unknown", "low", "ok"]
DrmTriggerType = Literal["explicit", "implicit"]
DrmTriggerReason = Literal[
    "handle_it",
    "im_done",
    "late_no_action",
    "two_rejections",
    "calendar_conflict",
    "low_energy",
]
FeedbackAction = Literal["approved", "rejected", "drm_triggered", "expired", "undo"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _require_offset(value: str) -> str:
    if not is_timezone_qualified(value):
        raise ValueError("timestamp must be ISO-8601 with a UTC offset")
    return value


# --- Decision ---

class DecisionSignal(CamelModel):
    time_window: TimeWindow = "dinner"
    energy: Energy = "unknown"
    calendar_conflict: bool = False


class DecisionRequest(CamelModel):
    household_key: Optional[str] = None
    now_iso: str
    signal: DecisionSignal = Field(default_factory=DecisionSignal)

    @field_validator("now_iso")
    @classmethod
    def _now_has_offset(cls, v: str) -> str:
        return _require_offset(v)


class CookAction(CamelModel):
    decision_type: Literal["cook"] = "cook"
    decision_event_id: str
    meal_id: str
    title: str
    steps_short: str
    est_minutes: int
    context_hash: str


class OrderAction(CamelModel):
    decision_type: Literal["order"] = "order"
    decision_event_id: str
    vendor_key: str
    deep_link_url: str
    title: str
    est_minutes: int
    context_hash: str


class ZeroCookAction(CamelModel):
    decision_type: Literal["zero_cook"] = "zero_cook"
    decision_event_id: str
    title: str
    steps_short: str
    est_minutes: int
    context_hash: str


# --- Dinner Rescue Mode ---

class DrmRequest(CamelModel):
    household_key: Optional[str] = None
    now_iso: str
    trigger_type: DrmTriggerType = "explicit"
    trigger_reason: DrmTriggerReason

    @field_validator("now_iso")
    @classmethod
    def _now_has_offset(cls, v: str) -> str:
        return _require_offset(v)


class OrderRescue(CamelModel):
    rescue_type: Literal["order"] = "order"
    drm_event_id: str
    title: str
    vendor_key: str
    deep_link_url: str
    est_minutes: int
    confidence: float = 1.0
    context_hash: str


class ZeroCookRescue(CamelModel):
    rescue_type: Literal["zero_cook"] = "zero_cook"
    drm_event_id: str
    title: str
    steps_short: str
    est_minutes: int
    confidence: float = 1.0
    context_hash: str


# --- Feedback ---

class FeedbackRequest(CamelModel):
    event_id: str = Field(..., min_length=1)
    user_action: FeedbackAction
    now_iso: str

    @field_validator("now_iso")
    @classmethod
    def _now_has_offset(cls, v: str) -> str:
        return _require_offset(v)


class DecisionStatusOut(CamelModel):
    event_id: str
    status: str
    is_autopilot: bool = False
