"""
Tests for the HTTP API.

Runs the FastAPI app against a runtime with static detectors and a
SQLite file database.
"""

import pytest
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from api import create_app
from tenantlens.detection import DetectorRegistry, Severity
from tenantlens.graph import GraphAuthError
from tenantlens.runtime import TenantLensRuntime
from tenantlens.utils import Settings
from tests.conftest import FailingDetector, StaticDetector, make_finding


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=None,
        SQLITE_PATH=str(tmp_path / "api.db"),
        GRAPH_ACCESS_TOKEN="test-token",
        SCAN_INTERVAL=0,
        CACHE_SWEEP_INTERVAL=3600,
    )


@pytest.fixture
def runtime(settings):
    registry = DetectorRegistry()
    registry.add("licensing", StaticDetector([
        make_finding("unused_licenses", Severity.MEDIUM, ["E5"]),
        make_finding("disabled_account_licenses", Severity.HIGH, ["u2"], automatable=True),
    ]))
    registry.add("identity", StaticDetector([
        make_finding("mfa_admin_gap", Severity.CRITICAL, ["u1"], automatable=True),
    ]))
    registry.add("broken", FailingDetector())
    return TenantLensRuntime(settings=settings, registry=registry)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


class TestFindingsAPI:
    """Test /api/findings endpoints."""

    def test_scan(self, client):
        response = client.post("/api/findings/scan")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert data["failed_categories"] == ["broken"]
        assert data["findings_by_category"] == {"licensing": 2, "identity": 1, "broken": 0}
        assert data["persisted"] is True

    def test_list_sorted_by_severity(self, client):
        client.post("/api/findings/scan")

        response = client.get("/api/findings", params={"force_refresh": True})

        assert response.status_code == 200
        severities = [f["severity"] for f in response.json()["findings"]]
        assert severities == ["critical", "high", "medium"]

    def test_list_empty_before_scan(self, client):
        response = client.get("/api/findings")

        assert response.status_code == 200
        assert response.json() == {"total": 0, "findings": []}

    def test_summary(self, client):
        client.post("/api/findings/scan")

        data = client.get("/api/findings/summary").json()

        assert data["total"] == 3
        assert set(data["categories"]) == {"licensing", "identity", "broken"}
        assert data["categories"]["licensing"]["by_severity"]["high"] == 1
        assert data["categories"]["broken"]["total"] == 0

    def test_category(self, client):
        client.post("/api/findings/scan")

        data = client.get("/api/findings/category/identity").json()

        assert data["total"] == 1
        assert data["findings"][0]["category"] == "identity"
        assert data["findings"][0]["affected_resources"][0]["id"] == "u1"

    def test_registered_category_without_findings(self, client):
        response = client.get("/api/findings/category/broken")

        assert response.status_code == 200
        assert response.json()["total"] == 0

    def test_unknown_category_404(self, client):
        response = client.get("/api/findings/category/nonexistent")

        assert response.status_code == 404

    def test_directory_auth_error_maps_to_502(self, client, runtime):
        runtime.orchestrator.get_all = AsyncMock(side_effect=GraphAuthError("denied", status_code=403))

        response = client.get("/api/findings")

        assert response.status_code == 502
        assert response.json()["upstream_status"] == 403


class TestCacheAPI:
    """Test /api/cache endpoints."""

    def test_stats(self, client, runtime):
        client.portal.call(runtime.cache.set, "licenses", "licenses", [])

        data = client.get("/api/cache/stats").json()

        assert data["total_entries"] == 1
        assert data["by_type"] == {"licenses": 1}
        assert data["writes"] == 1

    def test_health(self, client):
        data = client.get("/api/cache/health").json()

        assert data["status"] == "healthy"
        assert data["worker_running"] is True

    def test_invalidate_by_type(self, client, runtime):
        client.portal.call(runtime.cache.set, "users-{}", "users", [])
        client.portal.call(runtime.cache.set, "licenses", "licenses", [])

        response = client.post("/api/cache/invalidate", params={"type": "users"})

        assert response.status_code == 200
        assert response.json()["keys_invalidated"] == 1
        assert client.get("/api/cache/stats").json()["total_entries"] == 1

    def test_invalidate_all(self, client, runtime):
        client.portal.call(runtime.cache.set, "users-{}", "users", [])
        client.portal.call(runtime.cache.set, "licenses", "licenses", [])

        response = client.post("/api/cache/invalidate")

        assert response.json()["keys_invalidated"] == 2


class TestHealth:
    """Test the service health endpoint."""

    def test_health(self, client):
        data = client.get("/api/health").json()

        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["orchestrator"] == "idle"
