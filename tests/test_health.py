"""
Tests for the /health database check and the published API schema.
"""
from unittest.mock import patch, MagicMock

from fastapi.testclient import TestClient


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_database_reachable(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "checks": {"database": "healthy"}}

    def test_database_unreachable_is_503(self, client: TestClient):
        """A failing SELECT 1 marks the service unhealthy."""
        broken_session = MagicMock()
        broken_session.execute.side_effect = Exception("database is locked")

        with patch("scanshare.main.SessionLocal", return_value=broken_session):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["checks"]["database"] == "unhealthy"
        broken_session.close.assert_called_once()


class TestAPISchema:
    """Tests for the OpenAPI schema of the session and viewer routes."""

    def test_schema_lists_session_routes(self, client: TestClient):
        paths = client.get("/openapi.json").json()["paths"]

        assert set(paths["/sessions/{short_code}/scans"]) == {"post", "delete"}
        assert "get" in paths["/sessions/{short_code}/export"]
        assert "post" in paths["/viewer/{short_code}/verify"]

    def test_schema_title(self, client: TestClient):
        info = client.get("/openapi.json").json()["info"]
        assert info["title"] == "ScanShare API"
