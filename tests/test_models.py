"""Tests for webhook models and matching helpers."""

import json
from datetime import timedelta

from hookrelay.webhooks.models import (
    MISSING,
    DeliveryStatus,
    InboundEvent,
    ProcessingStatus,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookSubscription,
    event_matches,
    get_path,
    utcnow,
)


# ============================================================================
# Event Pattern Tests
# ============================================================================

class TestEventMatching:
    """Tests for event type patterns."""

    def test_exact_match(self):
        assert event_matches("order.created", "order.created")
        assert not event_matches("order.created", "order.updated")

    def test_prefix_wildcard(self):
        """A trailing * matches anything after the prefix."""
        assert event_matches("payment.*", "payment.failed")
        assert event_matches("payment.*", "payment.refund.created")
        assert not event_matches("payment.*", "payment")
        assert not event_matches("payment.*", "order.created")

    def test_star_matches_everything(self):
        assert event_matches("*", "anything.at.all")


class TestGetPath:
    """Tests for dotted payload lookups."""

    def test_nested_lookup(self):
        payload = {"order": {"status": "paid", "total": 10}}
        assert get_path(payload, "order.status") == "paid"

    def test_literal_dotted_key_wins(self):
        assert get_path({"a.b": 1, "a": {"b": 2}}, "a.b") == 1

    def test_missing_returns_sentinel(self):
        assert get_path({"order": {}}, "order.status") is MISSING
        assert get_path({"order": {}}, "order.status", None) is None

    def test_none_value_is_not_missing(self):
        assert get_path({"order": {"status": None}}, "order.status") is None


# ============================================================================
# Endpoint / Subscription Tests
# ============================================================================

class TestWebhookEndpoint:
    """Tests for endpoint defaults and event support."""

    def test_defaults(self):
        endpoint = WebhookEndpoint(url="https://example.com/hook")

        assert endpoint.id is not None
        assert endpoint.is_active is True
        assert endpoint.signature_algorithm == "sha256"
        assert endpoint.is_deleted is False

    def test_supports_all_events_when_unrestricted(self):
        endpoint = WebhookEndpoint(url="https://example.com/hook")
        assert endpoint.supports_event("anything")

    def test_supports_listed_patterns(self):
        endpoint = WebhookEndpoint(url="https://example.com/hook", events=["order.*", "user.created"])

        assert endpoint.supports_event("order.shipped")
        assert endpoint.supports_event("user.created")
        assert not endpoint.supports_event("user.deleted")


class TestWebhookSubscription:
    """Tests for subscription eligibility and filters."""

    def test_eligible_by_default(self):
        sub = WebhookSubscription(endpoint_id="e1", event_type="order.*")
        assert sub.is_eligible()

    def test_inactive_not_eligible(self):
        sub = WebhookSubscription(endpoint_id="e1", event_type="order.*", is_active=False)
        assert not sub.is_eligible()

    def test_expired_not_eligible(self):
        sub = WebhookSubscription(
            endpoint_id="e1",
            event_type="order.*",
            expires_at=utcnow() - timedelta(minutes=1),
        )
        assert sub.is_expired()
        assert not sub.is_eligible()

    def test_delivery_cap(self):
        sub = WebhookSubscription(endpoint_id="e1", event_type="x", max_deliveries=2, delivery_count=2)
        assert sub.has_reached_limit()
        assert not sub.is_eligible()

    def test_equality_filter(self):
        sub = WebhookSubscription(endpoint_id="e1", event_type="x", filters={"order.status": "paid"})

        assert sub.matches_filters({"order": {"status": "paid"}})
        assert not sub.matches_filters({"order": {"status": "pending"}})

    def test_list_filter_means_one_of(self):
        sub = WebhookSubscription(endpoint_id="e1", event_type="x", filters={"region": ["eu", "us"]})

        assert sub.matches_filters({"region": "eu"})
        assert not sub.matches_filters({"region": "apac"})

    def test_missing_filter_key_does_not_match(self):
        sub = WebhookSubscription(endpoint_id="e1", event_type="x", filters={"status": None})

        assert not sub.matches_filters({})
        assert sub.matches_filters({"status": None})


# ============================================================================
# Delivery / Inbound Event Tests
# ============================================================================

class TestWebhookDelivery:
    """Tests for delivery state helpers."""

    def test_defaults(self):
        delivery = WebhookDelivery(destination="https://example.com/hook", event="order.created")

        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempt == 1
        assert delivery.max_attempts == 3
        assert delivery.success is False

    def test_can_be_retried(self):
        delivery = WebhookDelivery(
            destination="https://example.com/hook",
            event="x",
            status=DeliveryStatus.FAILED,
            attempt=1,
        )
        assert delivery.can_be_retried()

        delivery.attempt = 3
        assert not delivery.can_be_retried()

    def test_success_cannot_be_retried_or_cancelled(self):
        delivery = WebhookDelivery(destination="u", event="x", status=DeliveryStatus.SUCCESS)

        assert not delivery.can_be_retried()
        assert not delivery.can_be_cancelled()

    def test_claimable_statuses(self):
        assert WebhookDelivery(destination="u", event="x").is_claimable()
        assert WebhookDelivery(destination="u", event="x", status=DeliveryStatus.RETRYING).is_claimable()
        assert not WebhookDelivery(destination="u", event="x", status=DeliveryStatus.IN_PROGRESS).is_claimable()

    def test_serialization(self):
        delivery = WebhookDelivery(destination="u", event="x", status=DeliveryStatus.RETRYING)
        data = json.loads(delivery.model_dump_json())

        assert data["status"] == "retrying"
        assert "created_at" in data


class TestInboundEvent:
    """Tests for inbound event processing marks."""

    def test_mark_processed(self):
        event = InboundEvent(source="stripe", event="charge.succeeded")
        event.mark_processed(ProcessingStatus.SUCCESS, processing_time_ms=5, handler="on_charge")

        assert event.is_processed
        assert event.processing_status == ProcessingStatus.SUCCESS
        assert event.handler == "on_charge"
        assert event.processed_at is not None
