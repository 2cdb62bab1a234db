"""Tests for the webhook API routes."""

import hashlib
import hmac
from unittest.mock import AsyncMock, patch
from urllib.parse import quote

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from hookrelay.core.settings import (
    CircuitBreakerSettings,
    ReceivingSettings,
    SecuritySettings,
    WebhookSettings,
)
from hookrelay.webhooks.router import router
from hookrelay.webhooks.service import build_services, set_services

SECRET = "api_secret"
PREFIX = "/api/webhooks"


@pytest.fixture
def services():
    settings = WebhookSettings(
        circuit_breaker=CircuitBreakerSettings(threshold=1),
        receiving=ReceivingSettings(process_async=False),
        security=SecuritySettings(default_signature_key=SECRET),
    )
    built = build_services(settings)
    set_services(built)
    yield built
    set_services(None)


@pytest.fixture
def client(services):
    app = FastAPI()
    app.include_router(router)
    with TestClient(app) as test_client:
        yield test_client


def mock_post(mock_client, *responses):
    mock_client.return_value.__aenter__.return_value.post = AsyncMock(side_effect=list(responses))


# ============================================================================
# Endpoint Routes
# ============================================================================

class TestEndpointRoutes:
    """Tests for endpoint administration routes."""

    def test_create_get_update_delete(self, client):
        response = client.post(f"{PREFIX}/endpoints", json={"url": "https://a.example.com/hook", "name": "A"})
        assert response.status_code == 200
        endpoint = response.json()
        assert len(endpoint["secret"]) == 64

        response = client.patch(f"{PREFIX}/endpoints/{endpoint['id']}", json={"timeout": 5})
        assert response.json()["timeout"] == 5

        response = client.post(f"{PREFIX}/endpoints/{endpoint['id']}/deactivate")
        assert response.json()["is_active"] is False

        assert len(client.get(f"{PREFIX}/endpoints").json()) == 1
        assert client.get(f"{PREFIX}/endpoints", params={"active_only": True}).json() == []

        assert client.delete(f"{PREFIX}/endpoints/{endpoint['id']}").status_code == 200
        assert client.get(f"{PREFIX}/endpoints/{endpoint['id']}").status_code == 404

    def test_not_found_detail(self, client):
        response = client.get(f"{PREFIX}/endpoints/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "EndpointNotFoundError"

    def test_subscriptions(self, client):
        endpoint = client.post(f"{PREFIX}/endpoints", json={"url": "https://a.example.com"}).json()

        response = client.post(
            f"{PREFIX}/subscriptions",
            json={"endpoint_id": endpoint["id"], "event_type": "order.*"},
        )
        assert response.status_code == 200
        subscription = response.json()

        listed = client.get(f"{PREFIX}/subscriptions", params={"endpoint_id": endpoint["id"]}).json()
        assert [s["id"] for s in listed] == [subscription["id"]]

        assert client.delete(f"{PREFIX}/subscriptions/{subscription['id']}").status_code == 200
        assert client.delete(f"{PREFIX}/subscriptions/{subscription['id']}").status_code == 404

    def test_subscribe_unknown_endpoint(self, client):
        response = client.post(f"{PREFIX}/subscriptions", json={"endpoint_id": "nope", "event_type": "*"})
        assert response.status_code == 404


# ============================================================================
# Dispatch Routes
# ============================================================================

class TestDispatchRoutes:
    """Tests for send, broadcast and delivery routes."""

    def test_queue_send(self, client, services):
        response = client.post(
            f"{PREFIX}/send",
            json={"event": "order.created", "payload": {"id": 1}, "url": "https://a.example.com"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert client.get(f"{PREFIX}/health").json()["queue_pending"] == 1

    def test_sync_send_success(self, client):
        with patch("httpx.AsyncClient") as mock_client:
            mock_post(mock_client, httpx.Response(200, text="ok"))
            response = client.post(
                f"{PREFIX}/send",
                json={"event": "order.created", "url": "https://a.example.com", "queue": False},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["headers"]["X-Webhook-Signature"] == body["signature"]

    def test_sync_send_failure_is_bad_gateway(self, client):
        with patch("httpx.AsyncClient") as mock_client:
            mock_post(mock_client, httpx.Response(500, text="boom"))
            response = client.post(
                f"{PREFIX}/send",
                json={"event": "order.created", "url": "https://a.example.com", "queue": False},
            )

        assert response.status_code == 502
        assert response.json()["detail"]["status_code"] == 500

        # Threshold of one: the circuit is now open
        response = client.post(
            f"{PREFIX}/send",
            json={"event": "order.created", "url": "https://a.example.com", "queue": False},
        )
        assert response.status_code == 503

    def test_send_requires_target(self, client):
        assert client.post(f"{PREFIX}/send", json={"event": "e"}).status_code == 422

    def test_send_to_inactive_endpoint(self, client):
        endpoint = client.post(
            f"{PREFIX}/endpoints", json={"url": "https://a.example.com", "is_active": False}
        ).json()

        response = client.post(f"{PREFIX}/send", json={"event": "e", "endpoint_id": endpoint["id"]})
        assert response.status_code == 422

    def test_broadcast(self, client):
        endpoint = client.post(f"{PREFIX}/endpoints", json={"url": "https://a.example.com"}).json()
        client.post(f"{PREFIX}/subscriptions", json={"endpoint_id": endpoint["id"], "event_type": "*"})

        response = client.post(f"{PREFIX}/broadcast", json={"event": "order.created", "payload": {}})

        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_list_get_and_cancel(self, client):
        delivery = client.post(
            f"{PREFIX}/send", json={"event": "order.created", "url": "https://a.example.com"}
        ).json()

        listed = client.get(f"{PREFIX}/deliveries", params={"status": "pending"}).json()
        assert listed["total"] == 1

        assert client.get(f"{PREFIX}/deliveries/{delivery['id']}").json()["event"] == "order.created"
        assert client.get(f"{PREFIX}/deliveries/missing").status_code == 404

        response = client.post(f"{PREFIX}/deliveries/{delivery['id']}/cancel", json={"reason": "duplicate"})
        assert response.json()["status"] == "cancelled"

        # Cancelled deliveries cannot be retried or cancelled again
        assert client.post(f"{PREFIX}/deliveries/{delivery['id']}/retry").status_code == 409
        assert client.post(f"{PREFIX}/deliveries/{delivery['id']}/cancel").status_code == 409


# ============================================================================
# Circuit, Stats and Inbound Routes
# ============================================================================

class TestOperationalRoutes:
    """Tests for circuits, stats, health and inbound reception."""

    def test_circuit_status_and_reset(self, client, services):
        with patch("httpx.AsyncClient") as mock_client:
            mock_post(mock_client, httpx.Response(503))
            client.post(
                f"{PREFIX}/send",
                json={"event": "e", "url": "https://a.example.com/hook", "queue": False},
            )

        destination = quote("https://A.example.com/hook/", safe="")
        status = client.get(f"{PREFIX}/circuits/{destination}").json()
        assert status["state"] == "open"
        assert client.get(f"{PREFIX}/health").json()["open_circuits"] == ["https://a.example.com/hook"]

        assert client.post(f"{PREFIX}/circuits/{destination}/reset").status_code == 200
        assert client.get(f"{PREFIX}/circuits/{destination}").json()["state"] == "closed"

    def test_stats(self, client):
        client.post(f"{PREFIX}/send", json={"event": "e", "url": "https://a.example.com"})

        stats = client.get(f"{PREFIX}/stats").json()
        assert stats["deliveries"]["total"] == 1

    def test_receive_valid(self, client):
        body = b'{"event":"order.created"}'
        signature = hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()

        response = client.post(
            f"{PREFIX}/receive/shop",
            content=body,
            headers={"X-Webhook-Signature": signature, "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["event"] == "order.created"
        events = client.get(f"{PREFIX}/events", params={"source": "shop"}).json()
        assert events[0]["is_valid"] is True

    def test_receive_invalid_signature(self, client):
        response = client.post(
            f"{PREFIX}/receive/shop",
            content=b'{"event":"order.created"}',
            headers={"X-Webhook-Signature": "forged"},
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid webhook signature"
