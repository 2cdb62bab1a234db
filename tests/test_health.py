"""Tests for the hookrelay application endpoints."""

from fastapi.testclient import TestClient
from hookrelay import __version__
from hookrelay.main import app

client = TestClient(app)


def test_root():
    """Test root endpoint returns service info."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data.get("status") == "ok"
    assert data.get("service") == "hookrelay"
    assert data.get("version") == __version__


def test_health():
    """Test health endpoint returns healthy status."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json().get("status") == "healthy"


def test_webhook_routes_mounted():
    paths = {route.path for route in app.routes}
    assert "/api/webhooks/send" in paths
    assert "/api/webhooks/receive/{source}" in paths
