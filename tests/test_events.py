"""Tests for the lifecycle event bus."""

import logging

import pytest

from hookrelay.webhooks.events import (
    WEBHOOK_DISPATCHED,
    WEBHOOK_INVALID,
    WEBHOOK_RECEIVED,
    EventBus,
    register_logging_listeners,
)
from hookrelay.webhooks.models import InboundEvent, WebhookDelivery


class TestEventBus:
    """Tests for subscribing to and emitting events."""

    @pytest.mark.asyncio
    async def test_subscribe_and_emit(self):
        bus = EventBus()
        seen = []
        bus.subscribe(WEBHOOK_DISPATCHED, lambda event, delivery, **_: seen.append((event, delivery)))

        await bus.emit(WEBHOOK_DISPATCHED, delivery="d1")

        assert seen == [(WEBHOOK_DISPATCHED, "d1")]

    @pytest.mark.asyncio
    async def test_wildcard_and_async_listener(self):
        bus = EventBus()
        seen = []

        async def record(event, **data):
            seen.append(event)

        bus.subscribe("*", record)
        await bus.emit(WEBHOOK_RECEIVED, inbound=None)
        await bus.emit(WEBHOOK_INVALID, inbound=None)

        assert seen == [WEBHOOK_RECEIVED, WEBHOOK_INVALID]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []

        def listener(event, **data):
            seen.append(event)

        bus.subscribe(WEBHOOK_DISPATCHED, listener)
        assert bus.unsubscribe(WEBHOOK_DISPATCHED, listener)
        assert not bus.unsubscribe(WEBHOOK_DISPATCHED, listener)

        await bus.emit(WEBHOOK_DISPATCHED)
        assert seen == []

    @pytest.mark.asyncio
    async def test_listener_error_does_not_propagate(self, caplog):
        bus = EventBus()
        seen = []

        def broken(event, **data):
            raise RuntimeError("listener down")

        bus.subscribe(WEBHOOK_DISPATCHED, broken)
        bus.subscribe(WEBHOOK_DISPATCHED, lambda event, **data: seen.append(event))

        with caplog.at_level(logging.ERROR):
            await bus.emit(WEBHOOK_DISPATCHED)

        assert seen == [WEBHOOK_DISPATCHED]
        assert "listener down" in caplog.text


class TestLoggingListeners:
    """Tests for the default logging listeners."""

    @pytest.mark.asyncio
    async def test_dispatched_logged(self, caplog):
        bus = register_logging_listeners(EventBus())
        delivery = WebhookDelivery(destination="https://a.example.com", event="order.created")

        with caplog.at_level(logging.INFO, logger="hookrelay.webhooks.events"):
            await bus.emit(WEBHOOK_DISPATCHED, delivery=delivery)

        assert "order.created -> https://a.example.com" in caplog.text

    @pytest.mark.asyncio
    async def test_received_payload_masked(self, caplog):
        bus = register_logging_listeners(EventBus())
        inbound = InboundEvent(source="acme", event="user.created", payload={"password": "hunter2222"})

        with caplog.at_level(logging.INFO, logger="hookrelay.webhooks.events"):
            await bus.emit(WEBHOOK_RECEIVED, inbound=inbound)

        assert "hunter2222" not in caplog.text
        assert "user.created" in caplog.text
