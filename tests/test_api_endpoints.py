"""
Tests for API Endpoints

Exercises the review HTTP surface against the in-memory backend.
"""

import pytest
from fastapi.testclient import TestClient

from main import app
from reviewdesk.api.deps import ReviewSessionStore, get_backend, get_channel, get_session_store
from reviewdesk.core.models import EntityKind
from reviewdesk.integrations.realtime import LocalRealtimeChannel


@pytest.fixture()
def store():
    return ReviewSessionStore()


@pytest.fixture()
def client(backend, store):
    channel = LocalRealtimeChannel()
    app.dependency_overrides[get_backend] = lambda: backend
    app.dependency_overrides[get_channel] = lambda: channel
    app.dependency_overrides[get_session_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _open(client, kind, entity_id, user_id="u-ca", role="CA_ACCOUNTANT"):
    response = client.post("/review/sessions", json={
        "kind": kind,
        "entity_id": entity_id,
        "actor": {"user_id": user_id, "role": role},
        "scope": {"entity_id": "e1", "agency_id": "ag-1"},
    })
    assert response.status_code == 200, response.text
    return response.json()


class TestHealthEndpoints:

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestSessionEndpoints:

    def test_open_session(self, client, backend, store):
        backend.add(EntityKind.INVOICE, "inv1", "pending_ca_approval")
        backend.add(EntityKind.INVOICE, "inv2", "pending_ca_approval")

        data = _open(client, "invoice", "inv1")

        assert data["entity"]["status"] == "pending_ca_approval"
        assert data["status_label"] == "Pending Verification"
        assert set(data["allowed_actions"]) == {"approve", "reject", "tag"}
        assert data["queue"]["has_navigation"] is True
        assert len(store) == 1

    def test_missing_record_is_404(self, client):
        response = client.post("/review/sessions", json={
            "kind": "invoice",
            "entity_id": "nope",
            "actor": {"user_id": "u-ca", "role": "CA_ACCOUNTANT"},
            "scope": {"entity_id": "e1"},
        })
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    def test_unknown_session_is_404(self, client):
        assert client.get("/review/sessions/does-not-exist").status_code == 404

    def test_close_session(self, client, backend, store):
        backend.add(EntityKind.VOUCHER, "v1", "pending_ca_approval")
        session_id = _open(client, "voucher", "v1")["session_id"]

        assert client.delete(f"/review/sessions/{session_id}").status_code == 204
        assert len(store) == 0


class TestActionEndpoints:

    def test_act_and_follow(self, client, backend):
        backend.add(EntityKind.INVOICE, "inv1", "pending_ca_approval")
        backend.add(EntityKind.INVOICE, "inv2", "pending_ca_approval")
        session_id = _open(client, "invoice", "inv1")["session_id"]

        response = client.post(f"/review/sessions/{session_id}/actions", json={"action": "tag", "follow": True})

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"]["entity"]["status"] == "verified"
        assert body["outcome"]["next_target"]["ref"]["id"] == "inv2"
        assert body["session"]["entity_id"] == "inv2"

    def test_reject_without_remarks_is_400(self, client, backend):
        backend.add(EntityKind.INVOICE, "inv1", "pending_ca_approval")
        session_id = _open(client, "invoice", "inv1")["session_id"]

        response = client.post(f"/review/sessions/{session_id}/actions", json={"action": "reject"})

        assert response.status_code == 400
        assert response.json()["error"] == "MISSING_REMARKS"
        assert backend.calls["update_entity_status"] == 0

    def test_wrong_role_is_403(self, client, backend):
        backend.add(EntityKind.INVOICE, "inv1", "pending_ca_approval")
        session_id = _open(client, "invoice", "inv1", user_id="u-c", role="CLIENT_USER")["session_id"]

        response = client.post(f"/review/sessions/{session_id}/actions", json={"action": "approve"})

        assert response.status_code == 403

    def test_extra_cannot_override_status(self, client, backend):
        backend.add(EntityKind.INVOICE, "inv1", "pending_ca_approval")
        session_id = _open(client, "invoice", "inv1")["session_id"]

        response = client.post(f"/review/sessions/{session_id}/actions", json={
            "action": "approve",
            "extra": {"status": "verified"},
        })

        assert response.status_code == 422

    def test_navigate(self, client, backend):
        backend.add(EntityKind.VOUCHER, "v1", "pending_ca_approval")
        backend.add(EntityKind.VOUCHER, "v2", "pending_ca_approval")
        session_id = _open(client, "voucher", "v1")["session_id"]

        forward = client.post(f"/review/sessions/{session_id}/navigate", json={"step": 1}).json()
        past_end = client.post(f"/review/sessions/{session_id}/navigate", json={"step": 1}).json()

        assert forward["moved"] is True
        assert forward["session"]["entity_id"] == "v2"
        assert past_end["moved"] is False


class TestThreadEndpoints:

    def _notice_session(self, client, backend):
        backend.add(EntityKind.NOTICE, "n1", "open", created_by="u-boss", assigned_to="u-me")
        backend.add_comment(EntityKind.NOTICE, "n1", "c1", "u-boss", created_at="2026-01-30T08:00:00")
        return _open(client, "notice", "n1", user_id="u-me", role="CLIENT_USER")["session_id"]

    def test_comments_are_grouped(self, client, backend):
        session_id = self._notice_session(client, backend)

        client.post(f"/review/sessions/{session_id}/comments", json={"message": "looking"})
        days = client.get(f"/review/sessions/{session_id}/comments").json()["days"]

        messages = [c["message"] for day in days for group in day["groups"] for c in group["comments"]]
        assert messages == ["message c1", "looking"]
        client.delete(f"/review/sessions/{session_id}")

    def test_empty_comment_is_400(self, client, backend):
        session_id = self._notice_session(client, backend)

        response = client.post(f"/review/sessions/{session_id}/comments", json={"message": "   "})

        assert response.status_code == 400
        assert response.json()["error"] == "EMPTY_MESSAGE"
        client.delete(f"/review/sessions/{session_id}")

    def test_upload_comment_with_attachment(self, client, backend):
        session_id = self._notice_session(client, backend)

        response = client.post(
            f"/review/sessions/{session_id}/comments/upload",
            data={"message": ""},
            files={"file": ("gst.pdf", b"%PDF", "application/pdf")},
        )

        assert response.status_code == 200
        assert response.json()["attachment_url"].endswith("gst.pdf")
        client.delete(f"/review/sessions/{session_id}")

    def test_collaborators(self, client, backend):
        session_id = self._notice_session(client, backend)

        added = client.post(f"/review/sessions/{session_id}/collaborators", json={"user_id": "u-2"})
        duplicate = client.post(f"/review/sessions/{session_id}/collaborators", json={"user_id": "u-2"})
        removed = client.delete(f"/review/sessions/{session_id}/collaborators/u-2")

        assert added.json() == {"collaborators": ["u-2"]}
        assert duplicate.status_code == 409
        assert removed.status_code == 204
        client.delete(f"/review/sessions/{session_id}")

    def test_finance_session_has_no_thread(self, client, backend):
        backend.add(EntityKind.INVOICE, "inv1", "pending_ca_approval")
        session_id = _open(client, "invoice", "inv1")["session_id"]

        response = client.get(f"/review/sessions/{session_id}/comments")

        assert response.status_code == 400
