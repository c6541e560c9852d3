"""
API endpoint tests for the Verification API

Uses FastAPI's TestClient with a real coordinator over SQLite, plus
httpx.AsyncClient and pytest-asyncio for the async-path checks.
Tests cover validation, run lifecycle endpoints, error envelopes,
health and security.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from config_manager import ConfigManager

from conftest import ManualExecutor, make_applicant


@pytest.fixture
def api_config(tmp_path):
    """Config with defaults; no file needed."""
    return ConfigManager(str(tmp_path / "absent.yaml"))


@pytest.fixture
def coordinator(make_coordinator, directory):
    """Coordinator whose runs are processed on demand."""
    from verification.sources import default_providers

    directory.register(make_applicant("APP-1"))
    directory.register(make_applicant("APP-2", first_name="John", last_name="Smith"))
    directory.register(make_applicant("APP-UNPAID"), status="submitted")
    return make_coordinator(default_providers(), executor=ManualExecutor())


@pytest.fixture
def client(coordinator, api_config):
    """Create test client with the coordinator patched in."""
    from api import server
    from fastapi.testclient import TestClient

    with patch.object(server, '_coordinator', coordinator):
        with patch.object(server, '_config', api_config):
            with patch.object(server, '_startup_time', datetime.now(timezone.utc)):
                yield TestClient(server.app)


# ============================================
# VALIDATION TESTS
# ============================================

class TestValidation:
    """Tests for input validation."""

    def test_start_missing_application_id(self, client):
        """POST without application_id returns the 400 envelope."""
        response = client.post("/api/v1/verifications", json={})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["field"] == "application_id"

    def test_start_empty_application_id(self, client):
        response = client.post("/api/v1/verifications", json={"application_id": ""})
        assert response.status_code == 400

    def test_start_application_id_too_long(self, client):
        response = client.post("/api/v1/verifications", json={"application_id": "A" * 65})
        assert response.status_code == 400

    def test_start_application_id_bad_characters(self, client):
        response = client.post("/api/v1/verifications", json={"application_id": "APP 1; DROP"})
        assert response.status_code == 400

    def test_get_run_malformed_id(self, client):
        response = client.get("/api/v1/verifications/not-a-uuid")

        assert response.status_code == 400
        assert response.json()["error"]["field"] == "run_id"

    def test_start_unpaid_application(self, client):
        response = client.post("/api/v1/verifications", json={"application_id": "APP-UNPAID"})

        assert response.status_code == 400
        assert "suggestion" in response.json()["error"]


# ============================================
# LIFECYCLE TESTS
# ============================================

class TestVerificationLifecycle:
    """Start, poll, hits and retry."""

    def test_start_returns_queued_run(self, client):
        response = client.post("/api/v1/verifications", json={"application_id": "APP-1", "actor_id": "agent"})

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "queued"
        assert data["application_id"] == "APP-1"
        assert data["decision"] is None
        assert data["policy_version"] == "1.0.0"
        assert data["policy_id"] is None
        assert "X-Request-ID" in response.headers

    def test_poll_until_completed(self, client, coordinator):
        run_id = client.post("/api/v1/verifications", json={"application_id": "APP-2"}).json()["id"]
        coordinator.executor.run_all()

        data = client.get(f"/api/v1/verifications/{run_id}").json()
        assert data["status"] == "completed"
        assert data["decision"] == "not_clear"
        assert data["reason_codes"] == ["SANCTIONS_MATCH", "POTENTIAL_PEP_MATCH"]
        assert data["scoring_breakdown"]["total"] == 90

        hits = client.get(f"/api/v1/verifications/{run_id}/hits").json()
        assert hits["total"] == 2
        assert hits["hits"][0]["source_name"] == "sanctions"
        assert hits["hits"][0]["match_type"] == "exact"
        assert hits["hits"][0]["metadata"]["list_type"] == "SDN"

    def test_duplicate_start_conflicts(self, client):
        assert client.post("/api/v1/verifications", json={"application_id": "APP-1"}).status_code == 202

        response = client.post("/api/v1/verifications", json={"application_id": "APP-1"})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_unknown_application(self, client):
        response = client.post("/api/v1/verifications", json={"application_id": "APP-404"})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_unknown_run(self, client):
        response = client.get("/api/v1/verifications/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404

        response = client.get("/api/v1/verifications/00000000-0000-0000-0000-000000000000/hits")
        assert response.status_code == 404

    def test_retry(self, client, coordinator):
        run_id = client.post("/api/v1/verifications", json={"application_id": "APP-2"}).json()["id"]

        active = client.post(f"/api/v1/verifications/{run_id}/retry")
        assert active.status_code == 409

        coordinator.executor.run_all()
        response = client.post(f"/api/v1/verifications/{run_id}/retry", json={"actor_id": "agent"})
        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        assert client.get(f"/api/v1/verifications/{run_id}/hits").json()["total"] == 0

    def test_application_runs(self, client, coordinator):
        run_id = client.post("/api/v1/verifications", json={"application_id": "APP-1"}).json()["id"]

        active = client.get("/api/v1/applications/APP-1/verifications/active")
        assert active.status_code == 200
        assert active.json()["id"] == run_id

        coordinator.executor.run_all()
        assert client.get("/api/v1/applications/APP-1/verifications/active").status_code == 404

        listing = client.get("/api/v1/applications/APP-1/verifications").json()
        assert listing["total"] == 1
        assert listing["runs"][0]["decision"] == "clear"


# ============================================
# HEALTH AND OPERATIONS
# ============================================

class TestHealth:
    """Health and metrics endpoints."""

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] is True
        assert data["default_policy_version"] == "1.0.0"
        assert data["uptime_seconds"] >= 0

    def test_health_reports_run_counts(self, client):
        client.post("/api/v1/verifications", json={"application_id": "APP-1"})

        assert client.get("/api/v1/health").json()["runs_by_status"] == {"queued": 1}

    def test_health_while_starting(self, api_config):
        from api import server
        from fastapi.testclient import TestClient

        with patch.object(server, '_coordinator', None), patch.object(server, '_config', api_config):
            response = TestClient(server.app).get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "starting"

    def test_uninitialized_engine_returns_503(self, api_config):
        from api import server
        from fastapi.testclient import TestClient

        with patch.object(server, '_coordinator', None), patch.object(server, '_config', api_config):
            response = TestClient(server.app).post("/api/v1/verifications", json={"application_id": "APP-1"})

        assert response.status_code == 503

    def test_metrics(self, client):
        response = client.get("/api/v1/metrics")

        assert response.status_code == 200
        assert "verification_runs_started_total" in response.text


# ============================================
# SECURITY TESTS
# ============================================

class TestSecurity:
    """API key handling and error hygiene."""

    def test_api_key_required_when_configured(self, client):
        from api import server

        with patch.object(server, 'API_KEY', 'secret'):
            assert client.get("/api/v1/applications/APP-1/verifications").status_code == 401
            assert client.get(
                "/api/v1/applications/APP-1/verifications", headers={"X-API-Key": "wrong"}
            ).status_code == 403
            assert client.get(
                "/api/v1/applications/APP-1/verifications", headers={"X-API-Key": "secret"}
            ).status_code == 200

    def test_internal_errors_are_not_leaked(self, api_config):
        from api import server
        from fastapi.testclient import TestClient

        broken = MagicMock()
        broken.get_run.side_effect = RuntimeError("password=hunter2 connection refused")
        with patch.object(server, '_coordinator', broken), patch.object(server, '_config', api_config):
            response = TestClient(server.app, raise_server_exceptions=False).get(
                "/api/v1/verifications/00000000-0000-0000-0000-000000000000"
            )

        assert response.status_code == 500
        assert "hunter2" not in response.text
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"


# ============================================
# ASYNC CLIENT TESTS
# ============================================

class TestAsyncClient:
    """The same endpoints through httpx.AsyncClient."""

    @pytest.mark.asyncio
    async def test_start_and_poll(self, coordinator, api_config):
        from api import server

        with patch.object(server, '_coordinator', coordinator), patch.object(server, '_config', api_config):
            transport = ASGITransport(app=server.app)
            async with AsyncClient(transport=transport, base_url="http://test") as ac:
                started = await ac.post("/api/v1/verifications", json={"application_id": "APP-1"})
                assert started.status_code == 202

                coordinator.executor.run_all()
                polled = await ac.get(f"/api/v1/verifications/{started.json()['id']}")

        assert polled.json()["decision"] == "clear"
