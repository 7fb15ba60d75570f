"""
Integration tests for the health check endpoint.

Verifies GET /health returns 200 with status "healthy" and the registered
source platforms. No authentication required for this endpoint.
Version: 1.0.0
"""
import os
import pytest
from unittest.mock import patch

os.environ.setdefault("AUTO_START_CELERY", "false")

from fastapi.testclient import TestClient


@pytest.fixture
def client():
    """Create a test client with Celery auto-start disabled."""
    with patch.dict(os.environ, {"AUTO_START_CELERY": "false"}):
        from migration_hub.main import app
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c


@pytest.mark.integration
class TestHealthRoutes:
    """Integration tests for the /health endpoint."""

    def test_health_returns_status_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_lists_platforms(self, client):
        response = client.get("/health")
        assert response.json()["platforms"] == ["etsy", "shopify"]

    def test_health_no_auth_required(self, client):
        response = client.get("/health", headers={})
        assert response.status_code == 200

    def test_health_wrong_method_not_allowed(self, client):
        response = client.post("/health")
        assert response.status_code == 405
