import random
from unittest.mock import AsyncMock

import pytest

from decision_os.core.invariants import validate_single_action
from decision_os.services.arbiter import (
    EXPLORATION_MAX,
    FALLBACK_TITLE,
    ROTATION_PENALTY,
    ArbiterInput,
    MealSelection,
    compute_context_hash,
    exploration_noise,
    make_decision,
    rank_selections,
    recent_meal_ids,
    score_candidates,
    select_meal,
)
from tests.builders import HOUSEHOLD, NOW, make_event, make_ingredient, make_item, make_meal, make_signal


@pytest.fixture
def catalog():
    omelette = make_meal("veggie-omelette")
    fried_rice = make_meal("egg-fried-rice")
    tacos = make_meal("chicken-tacos")
    ingredients = [
        make_ingredient(omelette, "eggs"),
        make_ingredient(omelette, "spinach"),
        make_ingredient(omelette, "salt", staple=True),
        make_ingredient(fried_rice, "rice"),
        make_ingredient(fried_rice, "eggs"),
        make_ingredient(fried_rice, "soy sauce", staple=True),
        make_ingredient(tacos, "chicken thighs"),
        make_ingredient(tacos, "tortillas"),
    ]
    inventory = [make_item("eggs", confidence=0.9), make_item("rice", confidence=0.8)]
    return [omelette, fried_rice, tacos], ingredients, inventory


def test_select_meal_is_deterministic(catalog):
    meals, ingredients, inventory = catalog
    ctx = compute_context_hash(NOW, make_signal(), [i.item_name for i in inventory])

    first = select_meal(meals, ingredients, inventory, {}, [], ctx, NOW)
    for _ in range(5):
        shuffled = meals[:]
        random.shuffle(shuffled)
        again = select_meal(shuffled, ingredients, inventory, {}, [], ctx, NOW)
        assert again.meal.id == first.meal.id
        assert again.final_score == first.final_score


def test_best_inventory_wins(catalog):
    meals, ingredients, inventory = catalog
    winner = select_meal(meals, ingredients, inventory, {}, [], "ctx", NOW)
    # rice 0.8 + eggs 0.9 + staple 1.0 beats eggs + missing spinach + staple
    assert winner.meal.canonical_key == "egg-fried-rice"
    assert winner.inventory_score == pytest.approx((0.8 + 0.9 + 1.0) / 3)
    assert winner.taste_score == pytest.approx(0.5)
    assert winner.is_recently_used is False


def test_rotation_penalty_is_exact(catalog):
    meals, ingredients, inventory = catalog
    fresh = {s.meal.id: s for s in score_candidates(meals, ingredients, inventory, {}, [], "ctx", NOW)}
    rotated = {
        s.meal.id: s
        for s in score_candidates(meals, ingredients, inventory, {}, ["meal-egg-fried-rice"], "ctx", NOW)
    }
    delta = rotated["meal-egg-fried-rice"].final_score - fresh["meal-egg-fried-rice"].final_score
    assert delta == pytest.approx(ROTATION_PENALTY)
    assert rotated["meal-egg-fried-rice"].is_recently_used is True
    assert rotated["meal-chicken-tacos"].final_score == fresh["meal-chicken-tacos"].final_score


def test_rotation_only_looks_at_last_seven(catalog):
    meals, ingredients, inventory = catalog
    recent = [f"other-{i}" for i in range(7)] + ["meal-egg-fried-rice"]
    scored = {s.meal.id: s for s in score_candidates(meals, ingredients, inventory, {}, recent, "ctx", NOW)}
    assert scored["meal-egg-fried-rice"].rotation_penalty == 0.0


def test_recent_meal_ids_skip_feedback_copies():
    events = [
        make_event("e1", meal_id="m1", decided_at="2026-01-20T17:00:00-05:00"),
        make_event("c1", action="approved", meal_id="m1", original_event_id="e1",
                   actioned_at="2026-01-20T17:05:00-05:00"),
        make_event("e2", meal_id="m2", decided_at="2026-01-19T17:00:00-05:00"),
    ]
    assert recent_meal_ids(events) == ["m1", "m2"]


def test_exploration_is_bounded_and_stable():
    values = [exploration_noise(f"ctx-{i}", "meal-a") for i in range(200)]
    assert all(0.0 <= v <= EXPLORATION_MAX for v in values)
    assert len(set(values)) > 1
    assert exploration_noise("ctx-1", "meal-a") == exploration_noise("ctx-1", "meal-a")


def test_context_hash_is_stable_and_order_insensitive():
    signal = make_signal()
    a = compute_context_hash(NOW, signal, ["milk", "eggs"], "pasta")
    b = compute_context_hash(NOW, signal, ["eggs", "milk"], "pasta")
    assert a == b
    assert len(a) == 16
    assert a != compute_context_hash(NOW, signal, ["eggs", "milk"], None)
    assert a != compute_context_hash(NOW, make_signal(energy="ok"), ["eggs", "milk"], "pasta")


def test_ties_break_by_canonical_key():
    selections = [
        MealSelection(make_meal("zucchini-bake"), 0.5, 0.5, 0.0, 0.0, 0.50005),
        MealSelection(make_meal("apple-salad"), 0.5, 0.5, 0.0, 0.0, 0.50000),
        MealSelection(make_meal("beef-stew"), 0.5, 0.5, 0.0, 0.0, 0.40000),
    ]
    ranked = rank_selections(selections)
    assert [s.meal.canonical_key for s in ranked] == ["apple-salad", "zucchini-bake", "beef-stew"]


def test_near_tie_chain_does_not_beat_clear_winner():
    # a ~ b and b ~ c within tolerance, but c beats a by more than it
    selections = [
        MealSelection(make_meal("a-meal"), 0.5, 0.5, 0.0, 0.0, 0.50000),
        MealSelection(make_meal("b-meal"), 0.5, 0.5, 0.0, 0.0, 0.50008),
        MealSelection(make_meal("c-meal"), 0.5, 0.5, 0.0, 0.0, 0.50016),
    ]
    for ordering in (selections, selections[::-1], [selections[1], selections[0], selections[2]]):
        ranked = rank_selections(ordering)
        assert ranked[0].meal.canonical_key == "b-meal"
        assert [s.meal.canonical_key for s in ranked[1:]] == ["c-meal", "a-meal"]


def test_empty_inventory_restricts_to_safe_core():
    pasta = make_meal("pasta-marinara")
    wellington = make_meal("beef-wellington")
    winner = select_meal([wellington, pasta], [], [], {wellington.id: 10.0}, [], "ctx", NOW)
    assert winner.meal.canonical_key == "pasta-marinara"


def test_safe_core_falls_back_to_full_catalog():
    wellington = make_meal("beef-wellington")
    winner = select_meal([wellington], [], [], {}, [], "ctx", NOW)
    assert winner.meal.canonical_key == "beef-wellington"


def test_inactive_meals_are_never_candidates():
    retired = make_meal("pasta-marinara", is_active=False)
    assert select_meal([retired], [], [], {}, [], "ctx", NOW) is None


@pytest.mark.asyncio
async def test_make_decision_persists_single_pending_event(catalog):
    meals, ingredients, inventory = catalog
    persist = AsyncMock()
    result = await make_decision(
        ArbiterInput(
            household_key=HOUSEHOLD,
            now_iso=NOW,
            signal=make_signal(),
            meals=meals,
            ingredients=ingredients,
            inventory=inventory,
        ),
        generate_event_id=lambda: "evt-1",
        persist_decision_event=persist,
    )

    persist.assert_awaited_once()
    event = persist.await_args.args[0]
    assert event.id == "evt-1"
    assert event.user_action == "pending"
    assert event.meal_id == "meal-egg-fried-rice"
    assert event.decision_payload == result.response["decision"]

    decision = result.response["decision"]
    assert result.response["drmRecommended"] is False
    assert decision["decisionType"] == "cook"
    assert decision["decisionEventId"] == "evt-1"
    assert decision["contextHash"] == compute_context_hash(
        NOW, make_signal(), ["eggs", "rice"], "egg-fried-rice"
    )
    validate_single_action(decision)


@pytest.mark.asyncio
async def test_empty_catalog_falls_back_to_zero_cook():
    persist = AsyncMock()
    result = await make_decision(
        ArbiterInput(household_key=HOUSEHOLD, now_iso=NOW, signal=make_signal()),
        generate_event_id=lambda: "evt-2",
        persist_decision_event=persist,
    )
    decision = result.response["decision"]
    assert decision["decisionType"] == "zero_cook"
    assert decision["title"] == FALLBACK_TITLE
    assert "mealId" not in decision
    persist.assert_awaited_once()


@pytest.mark.asyncio
async def test_drm_short_circuit_persists_nothing(catalog):
    meals, ingredients, inventory = catalog
    persist = AsyncMock()
    result = await make_decision(
        ArbiterInput(
            household_key=HOUSEHOLD,
            now_iso=NOW,
            signal=make_signal(calendar_conflict=True),
            meals=meals,
            ingredients=ingredients,
            inventory=inventory,
        ),
        generate_event_id=lambda: "unused",
        persist_decision_event=persist,
    )
    assert result.response == {"decision": None, "drmRecommended": True, "reason": "calendar_conflict"}
    assert result.drm_reason == "calendar_conflict"
    persist.assert_not_awaited()


@pytest.mark.asyncio
async def test_persistence_failure_propagates(catalog):
    meals, ingredients, inventory = catalog
    persist = AsyncMock(side_effect=RuntimeError("db down"))
    with pytest.raises(RuntimeError, match="db down"):
        await make_decision(
            ArbiterInput(
                household_key=HOUSEHOLD, now_iso=NOW, signal=make_signal(),
                meals=meals, ingredients=ingredients, inventory=inventory,
            ),
            generate_event_id=lambda: "evt-3",
            persist_decision_event=persist,
        )
