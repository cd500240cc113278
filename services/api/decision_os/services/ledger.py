"""Decision / taste ledger.

The arbiter never touches a session or a global store directly. It is handed
a Ledger and calls the narrow operations below. There is no
update or delete for decision events, DRM events or taste signals: the
interface is insert-only for those, and the SQL models reject UPDATE/DELETE
at flush time as well.

Two implementations:
- SqlLedger: SQLAlchemy session, used by the API. Never commits; the caller
  owns the transaction.
- InMemoryLedger: explicit per-instance store for tests and local runs.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.clock import Timestamp, parse_iso
from ..core.errors import DuplicateEventError
from ..models import (
    DecisionEvent,
    DrmEvent,
    InventoryItem,
    Meal,
    MealIngredient,
    TasteMealScore,
    TasteSignal,
)

logger = logging.getLogger("decision_os.ledger")

DEFAULT_HISTORY_LIMIT = 50
AUTOPILOT_DEDUPE_PREFIX = "autopilot:"


def autopilot_dedupe_key(original_event_id: str) -> str:
    return f"{AUTOPILOT_DEDUPE_PREFIX}{original_event_id}"


def effective_time(event) -> str:
    """When an event happened: the action time for feedback copies, else decision time."""
    return event.actioned_at or event.decided_at


def sort_recent_first(events: Iterable) -> list:
    return sorted(events, key=lambda e: parse_iso(effective_time(e)), reverse=True)


class Ledger(ABC):
    def generate_event_id(self) -> str:
        return str(uuid.uuid4())

    # --- decision events (insert-only) ---

    @abstractmethod
    def insert_decision_event(self, event: DecisionEvent) -> None: ...

    @abstractmethod
    def get_decision_event(self, event_id: str) -> Optional[DecisionEvent]: ...

    @abstractmethod
    def recent_decision_events(self, household_key: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[DecisionEvent]:
        """Originals and feedback copies, most recent first."""

    @abstractmethod
    def feedback_copies(self, original_event_id: str) -> list[DecisionEvent]: ...

    def find_autopilot_approval(self, original_event_id: str) -> Optional[DecisionEvent]:
        for copy in self.feedback_copies(original_event_id):
            if copy.is_autopilot and copy.user_action == "approved":
                return copy
        return None

    async def persist_decision_event(self, event: DecisionEvent) -> None:
        """Awaitable form handed to the arbiter as its persistence callback."""
        self.insert_decision_event(event)

    # --- DRM events (insert-only) ---

    @abstractmethod
    def insert_drm_event(self, event: DrmEvent) -> None: ...

    async def persist_drm_event(self, event: DrmEvent) -> None:
        self.insert_drm_event(event)

    # --- taste ---

    @abstractmethod
    def insert_taste_signal(self, signal: TasteSignal) -> None: ...

    @abstractmethod
    def taste_signals(self, household_key: str) -> list[TasteSignal]: ...

    @abstractmethod
    def get_taste_meal_score(self, household_key: str, meal_id: str) -> Optional[TasteMealScore]: ...

    @abstractmethod
    def _save_taste_meal_score(self, row: TasteMealScore) -> None: ...

    @abstractmethod
    def taste_scores(self, household_key: str) -> dict[str, float]: ...

    def apply_taste_score(
        self,
        household_key: str,
        meal_id: str,
        weight: float,
        *,
        approved: bool,
        rejected: bool,
        seen_at: Optional[str],
    ) -> TasteMealScore:
        """Fold one signal weight into the mutable per-meal cache."""
        row = self.get_taste_meal_score(household_key, meal_id)
        if row is None:
            row = TasteMealScore(
                household_key=household_key,
                meal_id=meal_id,
                score=0.0,
                approvals=0,
                rejections=0,
            )
        row.score = (row.score or 0.0) + weight
        if approved:
            row.approvals = (row.approvals or 0) + 1
        if rejected:
            row.rejections = (row.rejections or 0) + 1
        row.last_seen_at = seen_at
        self._save_taste_meal_score(row)
        return row

    # --- catalog / inventory (read-only to the arbiter) ---

    @abstractmethod
    def active_meals(self) -> list[Meal]: ...

    @abstractmethod
    def get_meal(self, meal_id: str) -> Optional[Meal]: ...

    @abstractmethod
    def meal_ingredients(self, meal_ids: Optional[Sequence[str]] = None) -> list[MealIngredient]: ...

    @abstractmethod
    def inventory_items(self, household_key: str) -> list[InventoryItem]: ...

    @abstractmethod
    def record_inventory_usage(self, item: InventoryItem, qty: float, used_at: Timestamp) -> None: ...


class SqlLedger(Ledger):
    def __init__(self, db: Session):
        self.db = db

    def insert_decision_event(self, event: DecisionEvent) -> None:
        if event.dedupe_key:
            existing = self.db.scalar(
                select(DecisionEvent.id).where(DecisionEvent.dedupe_key == event.dedupe_key)
            )
            if existing:
                raise DuplicateEventError(event.dedupe_key)
        # SAVEPOINT: a failed insert must not discard rows flushed earlier in the request
        try:
            with self.db.begin_nested():
                self.db.add(event)
        except IntegrityError as e:
            if event.dedupe_key:
                # Lost a race with a concurrent writer
                raise DuplicateEventError(event.dedupe_key) from e
            raise

    def get_decision_event(self, event_id: str) -> Optional[DecisionEvent]:
        return self.db.get(DecisionEvent, event_id)

    def recent_decision_events(self, household_key: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[DecisionEvent]:
        rows = self.db.scalars(
            select(DecisionEvent)
            .where(DecisionEvent.household_key == household_key)
            # Insertion order: feedback copies keep the original decided_at
            .order_by(DecisionEvent.created_at.desc(), DecisionEvent.id)
            .limit(limit)
        ).all()
        return sort_recent_first(rows)

    def feedback_copies(self, original_event_id: str) -> list[DecisionEvent]:
        rows = self.db.scalars(
            select(DecisionEvent).where(DecisionEvent.original_event_id == original_event_id)
        ).all()
        return sort_recent_first(rows)

    def insert_drm_event(self, event: DrmEvent) -> None:
        self.db.add(event)
        self.db.flush()

    def insert_taste_signal(self, signal: TasteSignal) -> None:
        self.db.add(signal)
        self.db.flush()

    def taste_signals(self, household_key: str) -> list[TasteSignal]:
        return list(self.db.scalars(
            select(TasteSignal)
            .where(TasteSignal.household_key == household_key)
            .order_by(TasteSignal.created_at)
        ).all())

    def get_taste_meal_score(self, household_key: str, meal_id: str) -> Optional[TasteMealScore]:
        return self.db.get(TasteMealScore, (household_key, meal_id))

    def _save_taste_meal_score(self, row: TasteMealScore) -> None:
        self.db.add(row)
        self.db.flush()

    def taste_scores(self, household_key: str) -> dict[str, float]:
        rows = self.db.scalars(
            select(TasteMealScore).where(TasteMealScore.household_key == household_key)
        ).all()
        return {r.meal_id: r.score for r in rows}

    def active_meals(self) -> list[Meal]:
        return list(self.db.scalars(
            select(Meal).where(Meal.is_active.is_(True)).order_by(Meal.canonical_key)
        ).all())

    def get_meal(self, meal_id: str) -> Optional[Meal]:
        return self.db.get(Meal, meal_id)

    def meal_ingredients(self, meal_ids: Optional[Sequence[str]] = None) -> list[MealIngredient]:
        stmt = select(MealIngredient)
        if meal_ids is not None:
            stmt = stmt.where(MealIngredient.meal_id.in_(list(meal_ids)))
        return list(self.db.scalars(stmt).all())

    def inventory_items(self, household_key: str) -> list[InventoryItem]:
        return list(self.db.scalars(
            select(InventoryItem).where(InventoryItem.household_key == household_key)
        ).all())

    def record_inventory_usage(self, item: InventoryItem, qty: float, used_at: Timestamp) -> None:
        item.qty_used_estimated = (item.qty_used_estimated or 0.0) + qty
        item.last_used_at = parse_iso(used_at)
        self.db.flush()


class InMemoryLedger(Ledger):
    """Per-instance store; two ledgers never share state."""

    def __init__(self):
        self.meals: list[Meal] = []
        self.ingredients: list[MealIngredient] = []
        self.inventory: list[InventoryItem] = []
        self._decision_events: list[DecisionEvent] = []
        self._drm_events: list[DrmEvent] = []
        self._taste_signals: list[TasteSignal] = []
        self._taste_meal_scores: dict[tuple[str, str], TasteMealScore] = {}

    # Catalog seeding; the arbiter itself never calls these.

    def add_meal(self, meal: Meal, ingredients: Sequence[MealIngredient] = ()) -> Meal:
        # Column defaults only fire on flush; mirror the ones scoring reads.
        if meal.is_active is None:
            meal.is_active = True
        if meal.est_cost_band is None:
            meal.est_cost_band = "$"
        self.meals.append(meal)
        self.ingredients.extend(ingredients)
        return meal

    def add_inventory_item(self, item: InventoryItem) -> InventoryItem:
        if item.qty_used_estimated is None:
            item.qty_used_estimated = 0.0
        self.inventory.append(item)
        return item

    # Read-only views of the append-only logs

    @property
    def decision_events(self) -> tuple[DecisionEvent, ...]:
        return tuple(self._decision_events)

    @property
    def drm_events(self) -> tuple[DrmEvent, ...]:
        return tuple(self._drm_events)

    @property
    def signals(self) -> tuple[TasteSignal, ...]:
        return tuple(self._taste_signals)

    def insert_decision_event(self, event: DecisionEvent) -> None:
        if event.dedupe_key and any(e.dedupe_key == event.dedupe_key for e in self._decision_events):
            raise DuplicateEventError(event.dedupe_key)
        if any(e.id == event.id for e in self._decision_events):
            raise DuplicateEventError(event.id)
        self._decision_events.append(event)

    def get_decision_event(self, event_id: str) -> Optional[DecisionEvent]:
        return next((e for e in self._decision_events if e.id == event_id), None)

    def recent_decision_events(self, household_key: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[DecisionEvent]:
        rows = [e for e in self._decision_events if e.household_key == household_key]
        return sort_recent_first(rows)[:limit]

    def feedback_copies(self, original_event_id: str) -> list[DecisionEvent]:
        return sort_recent_first(
            e for e in self._decision_events if e.original_event_id == original_event_id
        )

    def insert_drm_event(self, event: DrmEvent) -> None:
        self._drm_events.append(event)

    def insert_taste_signal(self, signal: TasteSignal) -> None:
        self._taste_signals.append(signal)

    def taste_signals(self, household_key: str) -> list[TasteSignal]:
        return [s for s in self._taste_signals if s.household_key == household_key]

    def get_taste_meal_score(self, household_key: str, meal_id: str) -> Optional[TasteMealScore]:
        return self._taste_meal_scores.get((household_key, meal_id))

    def _save_taste_meal_score(self, row: TasteMealScore) -> None:
        self._taste_meal_scores[(row.household_key, row.meal_id)] = row

    def taste_scores(self, household_key: str) -> dict[str, float]:
        return {
            meal_id: row.score
            for (hh, meal_id), row in self._taste_meal_scores.items()
            if hh == household_key
        }

    def active_meals(self) -> list[Meal]:
        return sorted((m for m in self.meals if m.is_active), key=lambda m: m.canonical_key)

    def get_meal(self, meal_id: str) -> Optional[Meal]:
        return next((m for m in self.meals if m.id == meal_id), None)

    def meal_ingredients(self, meal_ids: Optional[Sequence[str]] = None) -> list[MealIngredient]:
        if meal_ids is None:
            return list(self.ingredients)
        wanted = set(meal_ids)
        return [i for i in self.ingredients if i.meal_id in wanted]

    def inventory_items(self, household_key: str) -> list[InventoryItem]:
        return [i for i in self.inventory if i.household_key == household_key]

    def record_inventory_usage(self, item: InventoryItem, qty: float, used_at: Timestamp) -> None:
        item.qty_used_estimated = (item.qty_used_estimated or 0.0) + qty
        item.last_used_at = parse_iso(used_at)
