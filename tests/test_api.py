"""
HTTP API tests.

The app is wired to the in-memory harness through services.configure(),
so every request runs against the same frozen clock and dispatcher the
assertions inspect.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from editorial import services
from editorial.core.notifier import NotificationTemplate
from editorial.core.scheduler import SweepConfig, SweepScheduler
from editorial.main import app

from conftest import T0


@pytest.fixture
def client(harness):
    scheduler = SweepScheduler(harness.engine, SweepConfig(enabled=False))
    services.configure(
        repository=harness.repository,
        dispatcher=harness.dispatcher,
        workflow=harness.workflow,
        engine=harness.engine,
        scheduler=scheduler,
    )
    with TestClient(app) as test_client:
        yield test_client
    services.configure()


def submit(client, title="Glacier melt and river chemistry"):
    response = client.post("/api/manuscripts", json={"title": title})
    assert response.status_code == 201
    return response.json()


def screened(client):
    manuscript = submit(client)
    response = client.post(f"/api/manuscripts/{manuscript['id']}/events", json={"event_type": "start_screening"})
    assert response.status_code == 200
    return manuscript


def assigned(client):
    manuscript = screened(client)
    response = client.post(
        f"/api/manuscripts/{manuscript['id']}/assignments",
        json={"editor_id": str(uuid4()), "editor_name": "Dr. Ada Byron", "editor_email": "ada@journal.test"},
    )
    assert response.status_code == 201
    return manuscript, response.json()


def invited(client):
    manuscript, assignment = assigned(client)
    accepted = client.post(
        f"/api/assignments/{assignment['id']}/response",
        json={"action": "accept", "conflict_declared": False},
    )
    assert accepted.status_code == 200
    response = client.post(
        f"/api/manuscripts/{manuscript['id']}/invitations",
        json={"reviewer_email": "rev@uni.test", "reviewer_name": "Grace Hopper"},
    )
    assert response.status_code == 201
    return manuscript, response.json()


class TestManuscripts:

    def test_submit_and_fetch(self, client):
        manuscript = submit(client)
        assert manuscript["status"] == "submitted"
        assert manuscript["manuscript_number"].startswith("TST-2025-")

        fetched = client.get(f"/api/manuscripts/{manuscript['id']}").json()
        assert fetched["allowed_events"] == ["start_screening", "withdraw"]
        assert fetched["assignments"] == []

    def test_unknown_manuscript(self, client):
        assert client.get(f"/api/manuscripts/{uuid4()}").status_code == 404
        response = client.post(f"/api/manuscripts/{uuid4()}/events", json={"event_type": "withdraw"})
        assert response.status_code == 404

    def test_invalid_transition(self, client):
        manuscript = submit(client)
        response = client.post(
            f"/api/manuscripts/{manuscript['id']}/events",
            json={"event_type": "decide", "decision": "accept"},
        )
        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "invalid_transition"
        assert "withdraw" in detail["allowed_events"]

    def test_malformed_event(self, client):
        manuscript = submit(client)
        response = client.post(f"/api/manuscripts/{manuscript['id']}/events", json={"event_type": "teleport"})
        assert response.status_code == 422

    @pytest.mark.parametrize("event", [
        {"event_type": "editor_responds", "action": "accept"},
        {"event_type": "reviewer_responds", "action": "accept"},
        {"event_type": "assign_editor"},
        {"event_type": "assign_reviewer"},
        {"event_type": "assignment_expired"},
    ])
    def test_row_backed_events_are_refused(self, client, event):
        manuscript, _ = assigned(client)
        response = client.post(f"/api/manuscripts/{manuscript['id']}/events", json=event)
        assert response.status_code == 422

        stored = client.get(f"/api/manuscripts/{manuscript['id']}").json()
        assert stored["status"] == "associate_editor_assignment"
        assert stored["editor_id"] is None

    def test_real_accept_after_refused_shortcut(self, client):
        manuscript, assignment = assigned(client)
        client.post(
            f"/api/manuscripts/{manuscript['id']}/events",
            json={"event_type": "editor_responds", "action": "accept"},
        )
        response = client.post(
            f"/api/assignments/{assignment['id']}/response",
            json={"action": "accept", "conflict_declared": False},
        )
        assert response.status_code == 200
        stored = client.get(f"/api/manuscripts/{manuscript['id']}").json()
        assert stored["editor_id"] == assignment["editor_id"]

    def test_assign_in_wrong_stage(self, client):
        manuscript = submit(client)
        response = client.post(
            f"/api/manuscripts/{manuscript['id']}/assignments",
            json={"editor_id": str(uuid4())},
        )
        assert response.status_code == 409


class TestAssignments:

    def test_conflict_and_accept_is_422(self, client):
        _, assignment = assigned(client)
        response = client.post(
            f"/api/assignments/{assignment['id']}/response",
            json={"action": "accept", "conflict_declared": True, "conflict_details": "co-author"},
        )
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "conflict_prevents_acceptance"

        stored = client.get(f"/api/assignments/{assignment['id']}").json()
        assert stored["status"] == "pending"

    def test_accept(self, client):
        manuscript, assignment = assigned(client)
        response = client.post(
            f"/api/assignments/{assignment['id']}/response",
            json={"action": "accept", "conflict_declared": False},
        )
        body = response.json()
        assert body["success"]
        assert body["record"]["status"] == "accepted"
        assert body["manuscript_status"] == "associate_editor_review"

        again = client.post(
            f"/api/assignments/{assignment['id']}/response",
            json={"action": "accept", "conflict_declared": False},
        )
        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "already_responded"

    def test_unknown_assignment(self, client):
        response = client.post(
            f"/api/assignments/{uuid4()}/response",
            json={"action": "decline", "conflict_declared": False, "decline_reason": "busy"},
        )
        assert response.status_code == 404
        assert client.get(f"/api/assignments/{uuid4()}").status_code == 404


class TestInvitations:

    def test_view_by_token(self, client):
        manuscript, invitation = invited(client)
        response = client.get(f"/api/invitations/{invitation['invitation_token']}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["respond_by"] == (T0 + timedelta(days=7)).isoformat()
        assert body["manuscript_number"] == manuscript["manuscript_number"]
        assert body["requested_action"] is None

    def test_emailed_accept_link_is_served(self, client, harness):
        _, invitation = invited(client)
        stored = harness.repository.get_invitation_by_token(invitation["invitation_token"])
        links = harness.workflow.invitation_links(stored)
        path = links["accept_url"].removeprefix("https://journal.test")

        response = client.get(path)
        assert response.status_code == 200
        body = response.json()
        assert body["requested_action"] == "accept"
        assert body["respond_url"] == f"/api/invitations/{invitation['invitation_token']}/response"

        answered = client.post(body["respond_url"], json={"action": body["requested_action"]})
        assert answered.status_code == 200
        assert answered.json()["manuscript_status"] == "under_review"

    def test_forged_token(self, client):
        assert client.get("/api/invitations/not-a-token").status_code == 404
        response = client.post("/api/invitations/not-a-token/response", json={"action": "accept"})
        assert response.status_code == 404

    def test_decline_without_reason(self, client):
        _, invitation = invited(client)
        response = client.post(
            f"/api/invitations/{invitation['invitation_token']}/response",
            json={"action": "decline"},
        )
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "missing_decline_reason"

    def test_accept_then_submit_review(self, client, harness):
        manuscript, invitation = invited(client)
        token = invitation["invitation_token"]

        response = client.post(f"/api/invitations/{token}/response", json={"action": "accept"})
        assert response.status_code == 200
        body = response.json()
        assert body["manuscript_status"] == "under_review"
        assert "invitation_token" not in body["record"]
        assert harness.dispatcher.sent_to("rev@uni.test", NotificationTemplate.REVIEW_ACCEPTANCE_CONFIRMATION)

        assert client.post(f"/api/invitations/{token}/review").status_code == 200
        assert client.post(f"/api/invitations/{token}/review").status_code == 409

    def test_duplicate_invitation(self, client):
        manuscript, _ = invited(client)
        response = client.post(
            f"/api/manuscripts/{manuscript['id']}/invitations",
            json={"reviewer_email": "REV@uni.test", "reviewer_name": "Grace Hopper"},
        )
        assert response.status_code == 409


class TestSweepEndpoints:

    def test_trigger_sweep(self, client, clock):
        invited(client)
        clock.set(T0 + timedelta(days=8))

        stats = client.get("/api/sweep/statistics").json()
        assert stats["pending_reminders"] == 1

        result = client.post("/api/sweep").json()
        assert result["reminders_processed"] == 1

        status = client.get("/api/sweep/status").json()
        assert status["enabled"] is False
        assert status["last_result"]["sweep_id"] == result["sweep_id"]

    def test_time_limits(self, client):
        policies = client.get("/api/time-limits").json()
        stages = {p["stage"]: p for p in policies}
        assert stages["reviewer-response"]["time_limit_days"] == 7
        assert stages["reviewer-review"]["reminder_days"] == [7, 3, 1]
        assert all(p["is_default"] for p in policies)


class TestSystemEndpoints:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_detailed_health(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        checks = response.json()["checks"]
        assert checks["repository"]["status"] == "healthy"
        assert checks["sweep_scheduler"]["enabled"] is False

    def test_metrics_and_request_id(self, client):
        response = client.get("/health")
        assert response.headers.get("X-Request-ID")

        metrics = client.get("/metrics").json()
        assert metrics["requests_total"] >= 1
