"""End-to-end tests for the HTTP surface.

The lifespan runs for every test, so each one gets a fresh in-memory
store seeded with the bundled reference data.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from src.main import app

OWNER = {"X-Owner-Id": "citizen-1"}
OTHER = {"X-Owner-Id": "citizen-2"}


@pytest.fixture
def client() -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


def _start_session(client: TestClient, headers: dict[str, str] = OWNER) -> str:
    response = client.post("/api/v1/sessions", json={"language": "kn"}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["session_id"]


# ---------------------------------------------------------------------------
# Health and info
# ---------------------------------------------------------------------------


class TestHealth:
    def test_liveness(self, client: TestClient) -> None:
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_readiness_reports_reference_data(self, client: TestClient) -> None:
        body = client.get("/api/v1/health/ready").json()
        assert body["status"] == "ready", f"unexpected readiness checks: {body['checks']}"
        assert body["checks"]["store"] == "ok (in-memory)"
        assert body["checks"]["calendars"].startswith("ok")
        assert body["checks"]["timeline_rules"].startswith("ok")

    def test_api_info(self, client: TestClient) -> None:
        body = client.get("/api").json()
        assert body["name"] == "SamaySetu API"
        assert body["endpoints"]["owner_data"] == "/api/v1/owners/me"

    def test_privacy_headers_present(self, client: TestClient) -> None:
        response = client.get("/api/v1/health")
        assert response.headers["X-DPDPA-Compliant"] == "true"
        assert response.headers["Cache-Control"].startswith("no-store")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_owner_header_required(self, client: TestClient) -> None:
        response = client.post("/api/v1/sessions", json={})
        assert response.status_code == 401

    def test_start_and_fetch(self, client: TestClient) -> None:
        session_id = _start_session(client)
        response = client.get(f"/api/v1/sessions/{session_id}", headers=OWNER)
        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "idle"
        assert body["language_preference"] == "kn"

    def test_other_owner_forbidden(self, client: TestClient) -> None:
        session_id = _start_session(client)
        response = client.get(f"/api/v1/sessions/{session_id}", headers=OTHER)
        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"

    def test_unknown_session(self, client: TestClient) -> None:
        response = client.get("/api/v1/sessions/nope", headers=OWNER)
        assert response.status_code == 404
        body = response.json()
        assert body["code"] == "session_not_found"
        assert body["next_step"], "every error carries a next step for the citizen"

    def test_start_flow_event(self, client: TestClient) -> None:
        session_id = _start_session(client)
        response = client.post(
            f"/api/v1/sessions/{session_id}/events",
            json={"event_type": "start_flow", "flow": "deadline_check"},
            headers=OWNER,
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["state"] == "awaiting_input"
        assert body["current_flow"] == "deadline_check"

    def test_invalid_transition_is_conflict(self, client: TestClient) -> None:
        session_id = _start_session(client)
        response = client.post(
            f"/api/v1/sessions/{session_id}/events",
            json={"event_type": "text_input", "text": "hello"},
            headers=OWNER,
        )
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------


class TestApplications:
    def _submit(self, client: TestClient, session_id: str, **overrides) -> object:
        payload = {
            "session_id": session_id,
            "service_identifier": "income_certificate",
            "jurisdiction": "IN-KA",
            "submission_date": "2024-01-10",
            **overrides,
        }
        return client.post("/api/v1/applications", json=payload, headers=OWNER)

    def test_submit_long_overdue_application(self, client: TestClient) -> None:
        response = self._submit(client, _start_session(client))
        assert response.status_code == 201, response.text
        body = response.json()
        assert body["status"] == "breached"
        assert body["id"].startswith("APP-")
        assert body["overdue_days"] > 0

    def test_unknown_service(self, client: TestClient) -> None:
        response = self._submit(client, _start_session(client), service_identifier="moon_landing_permit")
        assert response.status_code == 404
        assert response.json()["code"] == "timeline_not_found"

    def test_future_submission_date(self, client: TestClient) -> None:
        response = self._submit(client, _start_session(client), submission_date="2099-01-01")
        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "future_submission_date"
        assert body["recoverable"] is True

    def test_list_and_complete(self, client: TestClient) -> None:
        record_id = self._submit(client, _start_session(client)).json()["id"]

        listed = client.get("/api/v1/applications", headers=OWNER).json()
        assert [r["id"] for r in listed] == [record_id]
        assert client.get("/api/v1/applications", headers=OTHER).json() == []

        done = client.post(f"/api/v1/applications/{record_id}/complete", headers=OWNER)
        assert done.status_code == 200
        assert done.json()["status"] == "completed"


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


class TestEligibility:
    def test_karnataka_holding(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/eligibility",
            json={
                "session_id": _start_session(client),
                "jurisdiction": "in-ka",
                "parcels": [
                    {"survey_number": "12/3", "area": 2.0, "category": "dry"},
                    {"survey_number": "14/1A", "area": 1.5, "category": "irrigated"},
                ],
            },
            headers=OWNER,
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["holding"]["total_area_acres"] == pytest.approx(3.5)
        assert "kisan_credit_card" in {m["scheme"]["id"] for m in body["eligible"]}


# ---------------------------------------------------------------------------
# Data-principal rights
# ---------------------------------------------------------------------------


class TestOwnerDeletion:
    def test_delete_my_data(self, client: TestClient) -> None:
        session_id = _start_session(client)
        client.post(
            "/api/v1/applications",
            json={
                "session_id": session_id,
                "service_identifier": "rti_response",
                "jurisdiction": "IN",
                "submission_date": "2024-01-20",
            },
            headers=OWNER,
        )

        response = client.delete("/api/v1/owners/me", headers=OWNER)
        assert response.status_code == 202
        receipt = response.json()
        assert receipt["status"] == "completed"
        assert receipt["removed"]["applications"] == 1
        assert "owner_id" not in receipt, "the receipt must not echo the identity"

        status = client.get(f"/api/v1/owners/deletions/{receipt['request_id']}")
        assert status.status_code == 200
        assert status.json()["status"] == "completed"

        assert client.get("/api/v1/applications", headers=OWNER).json() == []
        assert client.get(f"/api/v1/sessions/{session_id}", headers=OWNER).status_code == 404

    def test_unknown_deletion_request(self, client: TestClient) -> None:
        assert client.get("/api/v1/owners/deletions/DEL-missing").status_code == 404
