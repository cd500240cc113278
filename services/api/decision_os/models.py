"""SQLAlchemy ORM models for Decision OS.

Tables:
- households: Household scoping (auth-free MVP resolves by key)
- meals / meal_ingredients: Read-only meal catalog
- inventory_items: Household pantry estimates with decaying confidence
- decision_events: Append-only arbitration log (feedback copies, never updates)
- drm_events: Append-only Dinner Rescue Mode invocations
- taste_signals: Append-only behavioral learning events
- taste_meal_scores: Derived per-meal score cache (mutable, recomputable)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Text,
    Integer,
    Boolean,
    Float,
    ForeignKey,
    Index,
    CheckConstraint,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func, false
from sqlalchemy.types import JSON

from .db import Base
from .core.errors import AppendOnlyViolationError


def generate_uuid() -> str:
    return str(uuid.uuid4())


USER_ACTIONS = ("pending", "approved", "rejected", "expired", "drm_triggered")
DECISION_TYPES = ("cook", "order", "zero_cook")


class Household(Base):
    """Household for multi-tenant isolation.

    MVP: Single "default" household, resolved via header/env.
    """
    __tablename__ = "households"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    key: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Meal(Base):
    """Catalog meal. Read-only to the arbiter."""
    __tablename__ = "meals"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    canonical_key: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    instructions_short: Mapped[str] = mapped_column(Text, nullable=False, default="")
    est_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    est_cost_band: Mapped[str] = mapped_column(String(10), nullable=False, default="$")
    difficulty: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    mode: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    ingredients: Mapped[list["MealIngredient"]] = relationship(
        "MealIngredient", back_populates="meal", cascade="all, delete-orphan"
    )


class MealIngredient(Base):
    __tablename__ = "meal_ingredients"
    __table_args__ = (
        Index("ix_meal_ingredients_meal_id", "meal_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    meal_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("meals.id", ondelete="CASCADE"), nullable=False
    )
    ingredient_name: Mapped[str] = mapped_column(String(200), nullable=False)
    qty_text: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_pantry_staple: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    meal: Mapped["Meal"] = relationship("Meal", back_populates="ingredients")


class InventoryItem(Base):
    """Household pantry estimate.

    Confidence and remaining quantity decay from `last_seen_at`; written by the
    ingestion pipeline and by approval consumption.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("household_key", "item_name", name="uq_inventory_items_household_item"),
        Index("ix_inventory_items_household_key", "household_key"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    household_key: Mapped[str] = mapped_column(String(80), nullable=False)
    item_name: Mapped[str] = mapped_column(String(200), nullable=False)
    qty_estimated: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    qty_used_estimated: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    # Source: receipt | manual | inferred
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="receipt")
    decay_rate_per_day: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class DecisionEvent(Base):
    """One arbitration outcome, or a feedback copy resolving one.

    Rows are never updated. Actioning a pending decision inserts a new row with
    `original_event_id` set and the same `context_hash`.
    """
    __tablename__ = "decision_events"
    __table_args__ = (
        Index("ix_decision_events_household_created", "household_key", "created_at"),
        Index("ix_decision_events_original_event_id", "original_event_id"),
        Index("ix_decision_events_context_hash", "household_key", "context_hash"),
        CheckConstraint(
            "NOT (meal_id IS NOT NULL AND external_vendor_key IS NOT NULL)",
            name="meal_xor_vendor",
        ),
        CheckConstraint(
            "user_action IN ('pending', 'approved', 'rejected', 'expired', 'drm_triggered')",
            name="user_action_enum",
        ),
        CheckConstraint(
            "decision_type IN ('cook', 'order', 'zero_cook')",
            name="decision_type_enum",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    household_key: Mapped[str] = mapped_column(String(80), nullable=False)
    # ISO-8601 with the household's local offset
    decided_at: Mapped[str] = mapped_column(String(40), nullable=False)
    actioned_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    decision_type: Mapped[str] = mapped_column(String(20), nullable=False)
    meal_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    external_vendor_key: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    context_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    decision_payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    user_action: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    is_feedback_copy: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    original_event_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    is_autopilot: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    notes: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    # Natural idempotency key; unique so concurrent writers cannot double insert
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(120), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class DrmEvent(Base):
    __tablename__ = "drm_events"
    __table_args__ = (
        Index("ix_drm_events_household_triggered", "household_key", "triggered_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    household_key: Mapped[str] = mapped_column(String(80), nullable=False)
    triggered_at: Mapped[str] = mapped_column(String(40), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(20), nullable=False)
    trigger_reason: Mapped[str] = mapped_column(String(40), nullable=False)
    rescue_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    rescue_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    exhausted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class TasteSignal(Base):
    """Append-only learning event. `features` is internal and never returned."""
    __tablename__ = "taste_signals"
    __table_args__ = (
        Index("ix_taste_signals_household_meal", "household_key", "meal_id"),
        CheckConstraint("weight >= -2.0 AND weight <= 2.0", name="weight_range"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    household_key: Mapped[str] = mapped_column(String(80), nullable=False)
    decided_at: Mapped[str] = mapped_column(String(40), nullable=False)
    actioned_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    decision_event_id: Mapped[str] = mapped_column(String(36), nullable=False)
    meal_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    decision_type: Mapped[str] = mapped_column(String(20), nullable=False)
    user_action: Mapped[str] = mapped_column(String(20), nullable=False)
    is_undo: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    context_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    features: Mapped[dict] = mapped_column(JSON, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class TasteMealScore(Base):
    """Derived cache: running sum of signal weights per (household, meal)."""
    __tablename__ = "taste_meal_scores"

    household_key: Mapped[str] = mapped_column(String(80), primary_key=True)
    meal_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rejections: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_seen_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


APPEND_ONLY_MODELS = (DecisionEvent, DrmEvent, TasteSignal)


def _reject_update(mapper, connection, target):
    raise AppendOnlyViolationError(target.__tablename__, "UPDATE")


def _reject_delete(mapper, connection, target):
    raise AppendOnlyViolationError(target.__tablename__, "DELETE")


for _model in APPEND_ONLY_MODELS:
    event.listen(_model, "before_update", _reject_update)
    event.listen(_model, "before_delete", _reject_delete)
