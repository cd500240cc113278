import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from decision_os.core.clock import parse_iso
from decision_os.models import DecisionEvent, DrmEvent, InventoryItem, TasteMealScore, TasteSignal
from tests.builders import HOUSEHOLD, NOW, make_event, make_ingredient, make_item, make_meal

API = "/api/decision-os"


def seed_catalog(db_session):
    rice = make_meal("egg-fried-rice", minutes=15)
    pasta = make_meal("pasta-marinara", minutes=25)
    db_session.add_all([rice, pasta])
    db_session.add(make_ingredient(rice, "eggs", qty_text="3"))
    db_session.add(make_ingredient(rice, "rice", staple=True))
    db_session.add(make_ingredient(pasta, "spaghetti"))
    db_session.add(make_item("eggs", confidence=0.95, qty=12))
    db_session.commit()
    return rice, pasta


def decide(client, **overrides):
    body = {"householdKey": HOUSEHOLD, "nowIso": NOW, "signal": {"timeWindow": "dinner"}}
    body.update(overrides)
    return client.post(f"{API}/decision", json=body)


def feedback(client, event_id, action, *, now=NOW, key=None):
    headers = {"X-Household-Key": HOUSEHOLD, "Idempotency-Key": key or str(uuid.uuid4())}
    return client.post(
        f"{API}/feedback",
        json={"eventId": event_id, "userAction": action, "nowIso": now},
        headers=headers,
    )


def assert_no_lists(value):
    if isinstance(value, dict):
        for v in value.values():
            assert_no_lists(v)
    assert not isinstance(value, list)


# --- /decision ---

def test_decision_returns_one_cook_action(client, db_session, household):
    rice, _ = seed_catalog(db_session)

    resp = decide(client)
    assert resp.status_code == 200, resp.text
    data = resp.json()

    assert data["drmRecommended"] is False
    assert data["autopilot"] is False
    decision = data["decision"]
    assert decision["decisionType"] == "cook"
    assert decision["mealId"] == rice.id
    assert decision["estMinutes"] == 15
    assert_no_lists(data)

    stored = db_session.get(DecisionEvent, decision["decisionEventId"])
    assert stored.user_action == "pending"
    assert stored.context_hash == decision["contextHash"]
    assert stored.is_feedback_copy is False


def test_decision_is_deterministic(client, db_session, household):
    seed_catalog(db_session)
    first = decide(client).json()["decision"]
    second = decide(client).json()["decision"]
    assert first["mealId"] == second["mealId"]
    assert first["contextHash"] == second["contextHash"]
    assert first["decisionEventId"] != second["decisionEventId"]


def test_calendar_conflict_recommends_drm(client, db_session, household):
    seed_catalog(db_session)

    resp = decide(client, signal={"timeWindow": "dinner", "calendarConflict": True})
    assert resp.status_code == 200
    assert resp.json() == {"decision": None, "drmRecommended": True, "reason": "calendar_conflict"}
    assert db_session.scalars(select(DecisionEvent)).all() == []


def test_empty_catalog_falls_back_to_zero_cook(client, household):
    resp = decide(client)
    assert resp.status_code == 200
    decision = resp.json()["decision"]
    assert decision["decisionType"] == "zero_cook"
    assert decision["title"] == "Quick Assembly Meal"
    assert "mealId" not in decision


def test_unknown_household_is_404(client, household):
    resp = decide(client, householdKey="nobody-home")
    assert resp.status_code == 404


def test_now_without_offset_is_rejected(client, household):
    resp = decide(client, nowIso="2026-01-20T17:30:00")
    assert resp.status_code == 422


def test_autopilot_approves_trusted_decision(client, db_session, household):
    rice, _ = seed_catalog(db_session)
    db_session.add(TasteMealScore(household_key=HOUSEHOLD, meal_id=rice.id, score=6.0, approvals=6, rejections=0))
    for i in range(5):
        at = (parse_iso(NOW) - timedelta(hours=30 + 24 * i)).isoformat()
        db_session.add(make_event(
            action="approved", meal_id="meal-other", decided_at=at, actioned_at=at,
            original_event_id=f"orig-{i}",
        ))
    db_session.commit()

    resp = decide(client)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["autopilot"] is True

    event_id = data["decision"]["decisionEventId"]
    copies = db_session.scalars(
        select(DecisionEvent).where(DecisionEvent.original_event_id == event_id)
    ).all()
    assert len(copies) == 1
    assert copies[0].is_autopilot is True
    assert copies[0].user_action == "approved"

    eggs = db_session.scalar(select(InventoryItem).where(InventoryItem.item_name == "eggs"))
    assert eggs.qty_used_estimated == 3
    assert len(db_session.scalars(select(TasteSignal)).all()) == 1

    status = client.get(f"{API}/decision/{event_id}/status").json()
    assert status == {"eventId": event_id, "status": "approved", "isAutopilot": True}


# --- /drm ---

def test_drm_orders_during_dinner(client, db_session, household):
    resp = client.post(f"{API}/drm", json={
        "householdKey": HOUSEHOLD,
        "nowIso": NOW,
        "triggerType": "explicit",
        "triggerReason": "handle_it",
    })
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["exhausted"] is False
    rescue = data["rescue"]
    assert rescue["rescueType"] == "order"
    assert rescue["vendorKey"] == "doordash-local"
    assert rescue["confidence"] == 1.0
    assert_no_lists(data)

    drm_rows = db_session.scalars(select(DrmEvent)).all()
    assert len(drm_rows) == 1
    assert drm_rows[0].id == rescue["drmEventId"]
    decision_rows = db_session.scalars(select(DecisionEvent)).all()
    assert len(decision_rows) == 1
    assert decision_rows[0].user_action == "drm_triggered"
    assert decision_rows[0].external_vendor_key == "doordash-local"
    assert decision_rows[0].meal_id is None


def test_drm_zero_cook_after_order_cutoff(client, household):
    resp = client.post(f"{API}/drm", json={
        "householdKey": HOUSEHOLD,
        "nowIso": "2026-01-20T21:00:00-05:00",
        "triggerReason": "im_done",
    })
    assert resp.status_code == 200
    rescue = resp.json()["rescue"]
    assert rescue["rescueType"] == "zero_cook"
    assert rescue["title"] == "Cereal Dinner"


def test_drm_rejects_unknown_reason(client, household):
    resp = client.post(f"{API}/drm", json={
        "householdKey": HOUSEHOLD, "nowIso": NOW, "triggerReason": "bored",
    })
    assert resp.status_code == 422


# --- /feedback ---

def test_feedback_records_and_replays(client, db_session, household):
    seed_catalog(db_session)
    event_id = decide(client).json()["decision"]["decisionEventId"]
    key = str(uuid.uuid4())

    first = feedback(client, event_id, "approved", now="2026-01-20T17:35:00-05:00", key=key)
    assert first.status_code == 200, first.text
    assert first.json() == {"recorded": True}

    replay = feedback(client, event_id, "approved", now="2026-01-20T17:35:00-05:00", key=key)
    assert replay.status_code == 200
    assert replay.json() == first.json()

    copies = db_session.scalars(
        select(DecisionEvent).where(DecisionEvent.original_event_id == event_id)
    ).all()
    assert len(copies) == 1

    status = client.get(f"{API}/decision/{event_id}/status").json()
    assert status["status"] == "approved"
    assert status["isAutopilot"] is False


def test_feedback_rejection_reports_drm_requirement(client, db_session, household):
    seed_catalog(db_session)
    event_id = decide(client).json()["decision"]["decisionEventId"]

    resp = feedback(client, event_id, "rejected", now="2026-01-20T17:33:00-05:00")
    assert resp.status_code == 200
    assert resp.json() == {"recorded": True, "drmRequired": False}


def test_feedback_requires_idempotency_key(client, household):
    resp = client.post(
        f"{API}/feedback",
        json={"eventId": "evt-1", "userAction": "approved", "nowIso": NOW},
        headers={"X-Household-Key": HOUSEHOLD},
    )
    assert resp.status_code == 400


def test_feedback_key_reuse_with_other_body_conflicts(client, db_session, household):
    seed_catalog(db_session)
    event_id = decide(client).json()["decision"]["decisionEventId"]
    key = str(uuid.uuid4())

    assert feedback(client, event_id, "approved", key=key).status_code == 200
    assert feedback(client, event_id, "rejected", key=key).status_code == 409


def test_feedback_unknown_event_is_404_and_releases_key(client, household):
    key = str(uuid.uuid4())
    assert feedback(client, "missing", "approved", key=key).status_code == 404
    # The key was released, so a retry is processed again rather than replayed
    assert feedback(client, "missing", "approved", key=key).status_code == 404


def test_status_unknown_decision_is_404(client, household):
    assert client.get(f"{API}/decision/missing/status").status_code == 404


# --- /ready ---

def test_ready(client):
    resp = client.get("/api/ready")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "redis_ok": True, "db_ok": True}
