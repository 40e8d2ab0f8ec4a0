"""API tests for template, message, journey and health endpoints."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from comms.analytics import InMemoryAnalyticsSink
from comms.channels.models import ConnectionStatus
from comms.core.types import Channel
from comms.preferences.models import FrequencyLimits
from comms.services import create_services
from comms.web.app import create_app

from tests.conftest import open_preferences, scripted_registry

NEW_TEMPLATE = {
    "name": "Grooming reminder",
    "category": "reminder",
    "channels": ["push", "email"],
    "content": {
        "push": {"title": "Grooming", "body": "{dog_name} is due for grooming"},
        "email": {"subject": "Grooming for {dog_name}", "body": "Book a slot for {dog_name}."},
    },
    "variables": [{"name": "dog_name", "type": "string", "required": True}],
    "fallback_channel": "email",
}


@pytest.fixture
def services(settings, clock):
    return create_services(
        settings, analytics=InMemoryAnalyticsSink(), registry=scripted_registry(clock), clock=clock
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as client:
        yield client


class TestHealth:
    def test_all_connected(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["service"] == "comms-orchestrator"
        assert data["channels"]["push"] == "connected"
        assert set(data["channels"]) == {"inbox", "push", "email", "sms", "whatsapp"}

    def test_degraded_provider(self, client: TestClient, services) -> None:
        services.registry.get(Channel.SMS)._status = ConnectionStatus.DEGRADED
        data = client.get("/health").json()
        assert data["status"] == "degraded"
        assert data["channels"]["sms"] == "degraded"


class TestTemplateAPI:
    def test_list_seeded_templates(self, client: TestClient) -> None:
        resp = client.get("/api/templates")
        assert resp.status_code == 200
        templates = {t["id"]: t for t in resp.json()}
        assert len(templates) == 16
        assert templates["template_welcome"]["variants"] == ["A", "B"]
        assert templates["template_welcome"]["category"] == "journey"

    def test_create_and_fetch(self, client: TestClient) -> None:
        resp = client.post("/api/templates", json={**NEW_TEMPLATE, "created_by": "ops"})
        assert resp.status_code == 201
        created = resp.json()
        assert created["version"] == 1
        assert created["created_by"] == "ops"

        resp = client.get(f"/api/templates/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["compiled"]["channels"]["push"]["variables"] == ["dog_name"]

    def test_create_invalid(self, client: TestClient) -> None:
        resp = client.post("/api/templates", json={**NEW_TEMPLATE, "channels": ["push", "sms"]})
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "VALIDATION_ERROR"

    def test_get_missing(self, client: TestClient) -> None:
        assert client.get("/api/templates/template_nope").status_code == 404

    def test_render_preview(self, client: TestClient) -> None:
        resp = client.post(
            "/api/templates/template_welcome/render",
            json={"channel": "email", "variables": {"first_name": "Ana"}},
        )
        assert resp.status_code == 200
        assert resp.json()["subject"] == "Welcome aboard, Ana"

    def test_render_missing_variable(self, client: TestClient) -> None:
        resp = client.post("/api/templates/template_welcome/render", json={"channel": "email"})
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "MISSING_VARIABLE"

    def test_render_unknown_template(self, client: TestClient) -> None:
        resp = client.post("/api/templates/template_nope/render", json={"channel": "email"})
        assert resp.status_code == 404

    def test_variant_assignment_is_stable(self, client: TestClient) -> None:
        first = client.get("/api/templates/template_welcome/variant", params={"user_id": "u1"}).json()
        second = client.get("/api/templates/template_welcome/variant", params={"user_id": "u1"}).json()
        assert first["variant_id"] in ("A", "B")
        assert first == second
        resp = client.get("/api/templates/template_nope/variant", params={"user_id": "u1"})
        assert resp.status_code == 404


class TestMessageAPI:
    def test_send_and_read_back(self, client: TestClient, services) -> None:
        services.preferences.set_preferences(open_preferences("u1"))
        resp = client.post("/api/messages/send", json={
            "user_id": "u1", "template_id": "template_welcome",
            "variables": {"first_name": "Ana"},
        })
        assert resp.status_code == 200
        result = resp.json()
        assert result["status"] == "sent"
        assert result["channel"] == "email"

        message = client.get(f"/api/messages/{result['message_id']}").json()
        assert message["payload"]["subject"] == "Welcome aboard, Ana"
        assert len(client.get("/api/users/u1/messages").json()) == 1
        inbox = client.get("/api/users/u1/inbox").json()
        assert inbox[0]["origin_message_id"] == result["message_id"]

    def test_unknown_message(self, client: TestClient) -> None:
        assert client.get("/api/messages/msg_nope").status_code == 404

    def test_unknown_template(self, client: TestClient) -> None:
        resp = client.post("/api/messages/send", json={"user_id": "u1", "template_id": "template_nope"})
        assert resp.status_code == 404

    def test_invalid_request(self, client: TestClient) -> None:
        resp = client.post("/api/messages/send", json={"template_id": "template_welcome"})
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_REQUEST"

    def test_constraint_violation(self, client: TestClient, services) -> None:
        services.preferences.set_preferences(
            open_preferences("u1", frequency=FrequencyLimits(max_email_per_day=0))
        )
        resp = client.post("/api/messages/send", json={
            "user_id": "u1", "template_id": "template_welcome", "channel": "email",
            "variables": {"first_name": "Ana"},
        })
        assert resp.status_code == 429
        detail = resp.json()["detail"]
        assert detail["code"] == "FREQUENCY_LIMIT"
        assert detail["retryable"] is True

    def test_scheduled_send(self, client: TestClient, services) -> None:
        services.preferences.set_preferences(open_preferences("u1"))
        resp = client.post("/api/messages/send", json={
            "user_id": "u1", "template_id": "template_welcome",
            "variables": {"first_name": "Ana"}, "schedule_at": "2026-03-04T12:00:00+00:00",
        })
        assert resp.json()["status"] == "queued"
        tick = client.post("/api/scheduler/tick").json()
        assert tick["messages_delivered"] == 1


class TestJourneyAPI:
    def test_list_journeys(self, client: TestClient) -> None:
        journeys = client.get("/api/journeys").json()
        assert [j["id"] for j in journeys] == [
            "extracaring_30d", "health_reminder", "onboarding",
            "order_followup", "winback_60d", "winback_90d",
        ]
        onboarding = journeys[1]
        assert onboarding["steps"] == 5
        assert onboarding["trigger"]["event_name"] == "user.registered"

    def test_enroll_twice(self, client: TestClient) -> None:
        body = {"user_id": "u1", "context": {"first_name": "Ana"}}
        resp = client.post("/api/journeys/onboarding/enroll", json=body)
        assert resp.status_code == 201
        assert resp.json()["current_step_id"] == "welcome"

        resp = client.post("/api/journeys/onboarding/enroll", json=body)
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "ALREADY_ENROLLED"

    def test_enroll_unknown_journey(self, client: TestClient) -> None:
        resp = client.post("/api/journeys/nope/enroll", json={"user_id": "u1"})
        assert resp.status_code == 404

    def test_event_enrolls_and_exits(self, client: TestClient) -> None:
        resp = client.post("/api/events", json={
            "user_id": "u1", "event_type": "user.registered", "event_data": {"first_name": "Ana"},
        })
        assert resp.status_code == 200
        enrollment_id = resp.json()["enrolled"][0]

        resp = client.post("/api/events", json={"user_id": "u1", "event_type": "subscription.created"})
        assert resp.json()["exited"] == [enrollment_id]

        enrollment = client.get(f"/api/enrollments/{enrollment_id}").json()
        assert enrollment["status"] == "exited"
        assert enrollment["exit_reason"] == "event_triggered"

    def test_unknown_enrollment(self, client: TestClient) -> None:
        assert client.get("/api/enrollments/enr_nope").status_code == 404

    def test_tick(self, client: TestClient) -> None:
        resp = client.post("/api/scheduler/tick", params={"include_inactivity": True})
        assert resp.status_code == 200
        report = resp.json()
        assert report["journeys"]["due"] == 0
        assert report["inactivity_enrollments"] == 0
