"""
Tests for the HTTP API

Tenet #10: Observable Systems - every response carries X-Correlation-Id
"""

from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient
import pytest

from backend.main import create_app


@pytest.fixture
def make_client(make_orchestrator):
    def _make(engine, **kwargs):
        return TestClient(create_app(orchestrator=make_orchestrator(engine, **kwargs)))
    return _make


class TestServiceEndpoints:

    def test_root(self, engine_factory, make_client):
        response = make_client(engine_factory()).get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_reports_wiring(self, engine_factory, make_client):
        response = make_client(engine_factory()).get("/health")

        services = response.json()["services"]
        assert services == {"orchestrator": True, "store_mode": "local", "ledger_enabled": True}

    def test_health_without_ledger(self, engine_factory, make_client):
        response = make_client(engine_factory(), ledger=None).get("/health")

        assert response.json()["services"]["ledger_enabled"] is False


class TestAssess:

    def test_in_progress_turn(self, engine_factory, make_client, chest_pain_message):
        client = make_client(engine_factory())

        response = client.post(
            "/assess",
            json={"message": chest_pain_message, "subjectId": "patient-abc"},
            headers={"X-Session-Id": "session-7"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["threadId"] == "thread-1"
        assert body["subjectId"] == "patient-abc"
        assert body["completionStatus"] == "IN_PROGRESS"
        assert "[[" not in body["reply"]
        assert "resources" not in body
        assert body["sessionId"] == "session-7"
        assert body["correlationId"] == response.headers["X-Correlation-Id"]

    def test_correlation_id_echoed(self, engine_factory, make_client):
        response = make_client(engine_factory()).post(
            "/assess",
            json={"message": "Headache", "subjectId": "patient-abc"},
            headers={"X-Correlation-Id": "corr-abc"},
        )

        assert response.headers["X-Correlation-Id"] == "corr-abc"
        assert response.json()["correlationId"] == "corr-abc"
        assert response.json()["sessionId"] == "corr-abc"

    def test_complete_turn_returns_records_and_receipt(
        self, engine_factory, make_client, chest_pain_message, follow_up_reply, complete_reply,
    ):
        client = make_client(engine_factory([follow_up_reply, complete_reply]))
        first = client.post("/assess", json={"message": chest_pain_message, "subjectId": "patient-abc"}).json()

        response = client.post("/assess", json={
            "message": "About 30 minutes",
            "subjectId": "patient-abc",
            "threadId": first["threadId"],
            "userContext": {"email": "jo@example.org", "name": "Jo Doe", "isAuthenticated": True},
        })

        assert response.status_code == 200
        body = response.json()
        assert body["threadId"] == first["threadId"]
        assert body["completionStatus"] == "COMPLETE"
        assert body["resources"]["RiskAssessment"]["prediction"][0]["qualitativeRisk"]["coding"][0]["code"] == "high"
        assert body["resources"]["Observation"]["subject"]["display"] == "Jo Doe"
        assert [s["resourceType"] for s in body["storage"]] == ["Observation", "RiskAssessment"]
        assert body["ledgerReceipt"]["success"] is True


class TestErrors:

    @pytest.mark.parametrize("payload,field", [
        ({"message": "Headache", "subjectId": "ab"}, "subjectId"),
        ({"message": "Headache", "subjectId": "patient/abc"}, "subjectId"),
        ({"message": "   ", "subjectId": "patient-abc"}, "message"),
        ({"message": "a" * 1001, "subjectId": "patient-abc"}, "message"),
    ])
    def test_field_constraints(self, engine_factory, make_client, payload, field):
        engine = engine_factory()

        response = make_client(engine).post("/assess", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]["field"] == field
        assert body["correlationId"] == response.headers["X-Correlation-Id"]
        assert engine.calls == []

    def test_missing_fields(self, engine_factory, make_client):
        response = make_client(engine_factory()).post("/assess", json={"subjectId": "patient-abc"})

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert "message" in body["details"]["fields"]

    def test_engine_failure_is_bad_gateway(self, engine_factory, make_client):
        response = make_client(engine_factory(run_statuses=("failed",))).post(
            "/assess", json={"message": "Headache", "subjectId": "patient-abc"},
        )

        assert response.status_code == 502
        assert response.json()["code"] == "ENGINE_ERROR"

    def test_unexpected_failure_is_internal_error(self):
        orchestrator = MagicMock()
        orchestrator.assess = AsyncMock(side_effect=RuntimeError("boom"))
        client = TestClient(create_app(orchestrator=orchestrator))

        response = client.post("/assess", json={"message": "Headache", "subjectId": "patient-abc"})

        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"
        assert "boom" not in response.text
