"""HTTP behaviour of the AI agent and inbox routers with in-memory services."""

from contextlib import contextmanager
from uuid import uuid4

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from triage.main import app
from triage.routers import agents as agents_router
from triage.routers import conversations as conversations_router
from triage.routers.agents import AgentServices


@pytest.fixture
def client(harness, monkeypatch):
    for name in ("TENANT_TOKEN_SECRET", "TENANT_TOKEN_AUDIENCE", "TENANT_TOKEN_ISSUER"):
        monkeypatch.delenv(name, raising=False)

    @contextmanager
    def agent_context(tenant_id, runner=None):
        services = AgentServices(
            pipeline=harness.pipeline, settings=harness.settings_service()
        )
        try:
            yield services
        except HTTPException:
            raise
        except Exception as exc:
            raise agents_router._to_http_error(exc) from exc

    @contextmanager
    def conversation_context(tenant_id):
        try:
            yield harness.conversations
        except HTTPException:
            raise
        except Exception as exc:
            raise conversations_router._to_http_error(exc) from exc

    monkeypatch.setattr(agents_router, "_service_context", agent_context)
    monkeypatch.setattr(conversations_router, "_service_context", conversation_context)
    return TestClient(app, headers={"X-Debug-Tenant": str(harness.tenant_id)})


def test_respond_answers_and_returns_result(client, harness):
    harness.enable()
    harness.script("Open Settings and choose Reset password.")

    resp = client.post(
        f"/api/ai/conversations/{harness.conversation.id}/respond",
        json={"query": "How do I reset my password?"},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["handoff"] is False
    assert data["response"] == "Open Settings and choose Reset password."
    assert data["sources"][0]["id"] == "kb-1"
    assert data["message_id"] == harness.messages()[-1].id


def test_respond_disabled_hands_off(client, harness):
    resp = client.post(
        f"/api/ai/conversations/{harness.conversation.id}/respond",
        json={"query": "hello"},
    )

    assert resp.status_code == 200
    assert resp.json()["handoff_reason"] == "AI Agent is disabled"


def test_respond_unknown_conversation_is_404(client):
    resp = client.post("/api/ai/conversations/missing/respond", json={"query": "hello"})
    assert resp.status_code == 404


def test_respond_other_tenant_is_403(client, harness):
    other = harness.repository.create_conversation(tenant_id=uuid4())

    resp = client.post(f"/api/ai/conversations/{other.id}/respond", json={"query": "hello"})

    assert resp.status_code == 403


def test_respond_rejects_empty_query(client, harness):
    resp = client.post(
        f"/api/ai/conversations/{harness.conversation.id}/respond", json={"query": ""}
    )
    assert resp.status_code == 422


def test_missing_tenant_is_forbidden(client, monkeypatch):
    monkeypatch.delenv("TENANT_ID", raising=False)
    resp = client.get("/api/ai/settings", headers={"X-Debug-Tenant": ""})
    assert resp.status_code == 403


def test_settings_round_trip(client):
    resp = client.put(
        "/api/ai/settings",
        json={"enabled": True, "model": "openai/gpt-5.1", "confidence_threshold": 0.7},
    )
    assert resp.status_code == 200

    data = client.get("/api/ai/settings").json()
    assert data["enabled"] is True
    assert data["model"] == "openai/gpt-5.1"
    assert data["confidence_threshold"] == 0.7
    assert data["last_config_error"] is None


def test_settings_reject_invalid_threshold(client):
    resp = client.put("/api/ai/settings", json={"confidence_threshold": 2})
    assert resp.status_code == 422


def test_diagnostics_endpoint(client, harness):
    assert client.get("/api/ai/diagnostics").json() is None

    harness.enable(model="gpt-4o")
    client.post(
        f"/api/ai/conversations/{harness.conversation.id}/respond", json={"query": "hi"}
    )

    data = client.get("/api/ai/diagnostics").json()
    assert data["code"] == "INVALID_MODEL_FORMAT"
    assert client.get("/api/ai/settings").json()["last_config_error"]["code"] == (
        "INVALID_MODEL_FORMAT"
    )


def test_analytics_and_feedback(client, harness):
    harness.enable()
    harness.script("Open Settings and choose Reset password.")
    client.post(
        f"/api/ai/conversations/{harness.conversation.id}/respond",
        json={"query": "How do I reset my password?"},
    )
    [record] = harness.analytics.list_responses(harness.tenant_id)

    resp = client.post(f"/api/ai/responses/{record.id}/feedback", json={"feedback": "helpful"})
    assert resp.status_code == 200
    assert resp.json()["feedback"] == "helpful"

    summary = client.get("/api/ai/analytics").json()
    assert summary["total_responses"] == 1
    assert summary["helpful_feedback"] == 1
    assert summary["satisfaction_rate"] == 1.0


def test_feedback_unknown_response_is_404(client):
    resp = client.post("/api/ai/responses/nope/feedback", json={"feedback": "helpful"})
    assert resp.status_code == 404


def test_feedback_value_is_validated(client):
    resp = client.post("/api/ai/responses/nope/feedback", json={"feedback": "meh"})
    assert resp.status_code == 422


def test_should_respond_and_models(client, harness):
    assert client.get("/api/ai/should-respond").json() == {
        "should_respond": False,
        "reason": "AI Agent is disabled",
    }
    harness.enable()
    assert client.get("/api/ai/should-respond").json()["should_respond"] is True

    models = client.get("/api/ai/models").json()
    assert {"id", "name", "provider"} <= set(models[0])


def test_inbox_lists_and_pages(client, harness):
    for i in range(3):
        harness.repository.create_conversation(visitor_id=f"extra-{i}")

    first = client.get("/api/inbox", params={"limit": 2}).json()
    second = client.get(
        "/api/inbox", params={"limit": 2, "cursor": first["next_cursor"]}
    ).json()

    ids = [c["id"] for c in first["conversations"] + second["conversations"]]
    assert len(ids) == 4
    assert len(set(ids)) == 4
    assert second["next_cursor"] is None
    assert first["conversations"][0]["ai_workflow"]["state"] == "none"


def test_inbox_filters_by_ai_state(client, harness):
    client.post(
        f"/api/ai/conversations/{harness.conversation.id}/respond", json={"query": "hi"}
    )
    harness.repository.create_conversation(visitor_id="untouched")

    data = client.get("/api/inbox", params={"ai_workflow_state": "handoff"}).json()

    assert [c["id"] for c in data["conversations"]] == [harness.conversation.id]
    assert data["conversations"][0]["ai_workflow"]["handoff_reason"] == "AI Agent is disabled"
    assert data["conversations"][0]["last_message"]["sender_id"] == "system"


def test_inbox_limit_is_validated(client):
    assert client.get("/api/inbox", params={"limit": 0}).status_code == 422
    assert client.get("/api/inbox", params={"limit": 101}).status_code == 422


def test_conversation_detail_and_release(client, harness):
    client.post(
        f"/api/ai/conversations/{harness.conversation.id}/respond", json={"query": "hi"}
    )

    detail = client.get(f"/api/conversations/{harness.conversation.id}").json()
    assert detail["ai_workflow_state"] == "handoff"
    assert len(detail["messages"]) == 1

    resp = client.post(
        f"/api/conversations/{harness.conversation.id}/status",
        json={"status": "open", "release_to_ai": True},
    )
    assert resp.status_code == 200
    assert resp.json()["ai_workflow_state"] == "none"


def test_conversation_detail_not_found(client):
    assert client.get("/api/conversations/missing").status_code == 404


def test_settings_reject_invalid_working_hours(client):
    resp = client.put(
        "/api/ai/settings", json={"working_hours": {"start": "25:99", "end": "17:00"}}
    )
    assert resp.status_code == 422


def test_settings_null_clears_working_hours(client):
    client.put(
        "/api/ai/settings", json={"working_hours": {"start": "09:00", "end": "17:00"}}
    )

    data = client.put("/api/ai/settings", json={"working_hours": None}).json()

    assert data["working_hours"] is None
