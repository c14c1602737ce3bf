# backend/tests/test_main.py
"""
API tests.
The session dependency is replaced with a FakeSession and the endpoint
module's services/repositories are pointed at the in-memory store.
"""
from unittest.mock import patch

import pytest

from lead_engine.main import app
from lead_engine.modules.automation.api import automation_endpoints
from lead_engine.shared.core.config import settings
from lead_engine.shared.db.session import get_db

from conftest import (
    LEAD,
    TENANT,
    FakeMessageLogRepository,
    FakeSequenceRunRepository,
    FakeSession,
    build_inbound_processor,
    build_run_manager,
    build_trigger_listener,
)

BASE = f"{settings.API_V1_STR}/automation"


async def _fake_db():
    yield FakeSession()


@pytest.fixture
def api(test_client, store, clock, monkeypatch):
    app.dependency_overrides[get_db] = _fake_db
    monkeypatch.setattr(automation_endpoints, "TriggerListener",
                        lambda db, wake_scheduler=None: build_trigger_listener(store, clock, wake_scheduler))
    monkeypatch.setattr(automation_endpoints, "SequenceRunManager", lambda db: build_run_manager(store, clock))
    monkeypatch.setattr(automation_endpoints, "SequenceRunRepository", lambda db: FakeSequenceRunRepository(store))
    monkeypatch.setattr(automation_endpoints, "MessageLogRepository", lambda db: FakeMessageLogRepository(store))
    monkeypatch.setattr(automation_endpoints, "InboundProcessor", lambda db: build_inbound_processor(store, clock))
    monkeypatch.setattr(settings, "WEBHOOK_SECRET", "")
    yield test_client
    app.dependency_overrides.clear()


def _trigger(client, **overrides):
    body = {"tenantId": TENANT, "leadId": LEAD, "triggerKind": "MANUAL"}
    body.update(overrides)
    return client.post(f"{BASE}/triggers", json=body)


# ============================================
# ROOT + HEALTH
# ============================================

def test_root_and_health(test_client):
    assert test_client.get("/").status_code == 200

    health = test_client.get("/health").json()
    assert health["status"] == "ok"
    assert health["scheduler_running"] is False


def test_scheduler_status_when_not_started(api):
    assert api.get(f"{BASE}/scheduler/status").json() == {"enabled": False, "running": False}


def test_response_carries_correlation_id(test_client):
    response = test_client.get("/health", headers={"X-Request-ID": "req-test-1"})

    assert response.headers.get("X-Request-ID") == "req-test-1"


# ============================================
# TRIGGERS
# ============================================

def test_manual_trigger_creates_run(api, store, seeded):
    response = _trigger(api, sequenceId=seeded)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert len(body["created_run_ids"]) == 1
    assert store.runs[body["created_run_ids"][0]]["lead_id"] == LEAD


def test_duplicate_trigger_is_409(api, seeded):
    _trigger(api, sequenceId=seeded)

    assert _trigger(api, sequenceId=seeded).status_code == 409


def test_unknown_sequence_is_404(api, store):
    store.set_tenant()

    assert _trigger(api, sequenceId=9999).status_code == 404


def test_inactive_sequence_and_bad_payloads_are_422(api, store):
    store.set_tenant()
    inactive = store.add_sequence([{"content": "Hi"}], is_active=False)

    assert _trigger(api, sequenceId=inactive).status_code == 422
    assert _trigger(api).status_code == 422                        # MANUAL without sequenceId
    assert _trigger(api, triggerKind="SOMETHING").status_code == 422


def test_lead_removed_cancels_runs(api, store, seeded):
    run_id = _trigger(api, sequenceId=seeded).json()["created_run_ids"][0]

    response = api.post(f"{BASE}/lead-events/removed", json={"tenantId": TENANT, "leadId": LEAD})

    assert response.json() == {"success": True, "cancelled_run_ids": [run_id]}
    assert store.runs[run_id]["halt_reason"] == "lead_deleted"


# ============================================
# RUN ADMINISTRATION
# ============================================

def test_get_run_with_messages(api, seeded):
    run_id = _trigger(api, sequenceId=seeded).json()["created_run_ids"][0]

    response = api.get(f"{BASE}/runs/{run_id}")

    assert response.status_code == 200
    assert response.json()["status"] == "ACTIVE"
    assert response.json()["messages"] == []
    assert api.get(f"{BASE}/runs/424242").status_code == 404


def test_pause_resume_cancel_flow(api, store, seeded):
    run_id = _trigger(api, sequenceId=seeded).json()["created_run_ids"][0]

    paused = api.post(f"{BASE}/runs/{run_id}/pause", json={"reason": "agent call scheduled"})
    resumed = api.post(f"{BASE}/runs/{run_id}/resume")
    cancelled = api.post(f"{BASE}/runs/{run_id}/cancel")

    assert paused.json() == {"success": True, "run_id": run_id, "status": "PAUSED"}
    assert resumed.json()["status"] == "ACTIVE"
    assert cancelled.json()["status"] == "CANCELLED"
    assert store.runs[run_id]["halt_reason"] == "manual"


def test_illegal_run_actions(api, seeded):
    run_id = _trigger(api, sequenceId=seeded).json()["created_run_ids"][0]

    assert api.post(f"{BASE}/runs/{run_id}/resume").status_code == 409
    assert api.post(f"{BASE}/runs/424242/pause").status_code == 404


# ============================================
# WEBHOOKS
# ============================================

def test_twilio_form_inbound_webhook(api, store, seeded):
    response = api.post(
        f"{BASE}/webhooks/twilio/inbound",
        data={"MessageSid": "SM9", "From": "whatsapp:+919876543210", "Body": "Call me"}
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert [l["content"] for l in store.logs.values()] == ["Call me"]


def test_duplicate_webhook_is_acknowledged(api, seeded):
    payload = {"from": "+919876543210", "body": "hi", "providerEventId": "evt-9"}

    api.post(f"{BASE}/webhooks/mock/inbound", json=payload)
    again = api.post(f"{BASE}/webhooks/mock/inbound", json=payload)

    assert again.status_code == 200
    assert again.json()["duplicate"] is True


def test_malformed_webhook_is_200_with_success_false(api):
    unreadable = api.post(
        f"{BASE}/webhooks/mock/status", content=b"not json", headers={"content-type": "application/json"}
    )
    invalid = api.post(f"{BASE}/webhooks/mock/status", json={"status": "DELIVERED"})

    assert unreadable.status_code == 200
    assert unreadable.json()["success"] is False
    assert invalid.status_code == 200
    assert invalid.json()["success"] is False


def test_unknown_provider_is_404(api):
    assert api.post(f"{BASE}/webhooks/carrier-pigeon/status", json={}).status_code == 404


def test_webhook_secret_is_enforced_when_configured(api):
    payload = {"providerMessageId": "m-1", "status": "DELIVERED"}

    with patch.object(settings, "WEBHOOK_SECRET", "s3cret"):
        missing = api.post(f"{BASE}/webhooks/mock/status", json=payload)
        wrong = api.post(f"{BASE}/webhooks/mock/status", json=payload, headers={"X-Webhook-Secret": "nope"})
        header = api.post(f"{BASE}/webhooks/mock/status", json=payload, headers={"X-Webhook-Secret": "s3cret"})
        bearer = api.post(f"{BASE}/webhooks/mock/status", json=payload, headers={"Authorization": "Bearer s3cret"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert header.status_code == 200
    assert bearer.status_code == 200
