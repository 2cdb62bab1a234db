"""Tests for inbound webhook verification and processing."""

import hashlib
import hmac
import time
from unittest.mock import patch

import pytest

from hookrelay.core.settings import ProviderSettings, ReceivingSettings, SecuritySettings
from hookrelay.webhooks.events import WEBHOOK_INVALID, EventBus
from hookrelay.webhooks.exceptions import InvalidSignatureError
from hookrelay.webhooks.models import InboundEvent, ProcessingStatus
from hookrelay.webhooks.receiver import HandlerRegistry, WebhookReceiver
from hookrelay.webhooks.repository import InMemoryWebhookRepository
from hookrelay.webhooks.security import HmacValidator, InboundRequest

SECRET = "receiver_secret"
BODY = b'{"event":"order.created","id":7}'


def _sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def signed_request(body: bytes = BODY, **headers) -> InboundRequest:
    return InboundRequest(body=body, headers={"X-Webhook-Signature": _sign(body), **headers})


@pytest.fixture
def repository():
    return InMemoryWebhookRepository()


def make_receiver(repository, process_async: bool = False, **settings) -> WebhookReceiver:
    return WebhookReceiver(
        repository,
        settings=ReceivingSettings(process_async=process_async, **settings),
        security=SecuritySettings(default_signature_key=SECRET),
    )


# ============================================================================
# Handler Registry Tests
# ============================================================================

class TestHandlerRegistry:
    """Tests for handler resolution order."""

    def test_exact_then_wildcard_then_prefix(self):
        registry = HandlerRegistry()

        def exact(e): pass
        def any_event(e): pass
        def prefix(e): pass
        def longer_prefix(e): pass

        registry.on("shop", "order.created", exact)
        registry.on("shop", "order.*", prefix)
        registry.on("shop", "order.refund.*", longer_prefix)

        assert registry.resolve("shop", "order.created")[1] is exact
        assert registry.resolve("shop", "order.refund.partial")[1] is longer_prefix
        assert registry.resolve("shop", "order.paid")[1] is prefix
        assert registry.resolve("shop", "user.created") is None

        registry.on_any("shop", any_event)
        assert registry.resolve("shop", "order.paid")[1] is any_event
        assert registry.resolve("shop", "order.created")[1] is exact

    def test_registered_names(self):
        registry = HandlerRegistry()

        def handle_push(e): pass

        registry.on("github", "github.push", handle_push)
        assert registry.registered() == {"github": {"github.push": "handle_push"}}


# ============================================================================
# Signature Tests
# ============================================================================

class TestSignatureVerification:
    """Tests for the signature policy."""

    @pytest.mark.asyncio
    async def test_valid_signature_accepted(self, repository):
        receiver = make_receiver(repository)

        result = await receiver.handle_request("shop", signed_request())

        assert result.status_code == 200
        stored = await repository.get_event(result.event_id)
        assert stored.is_valid is True
        assert stored.event == "order.created"
        assert stored.signature == _sign(BODY)

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, repository):
        bus = EventBus()
        invalid = []
        bus.subscribe(WEBHOOK_INVALID, lambda event, inbound, error: invalid.append((inbound.id, error.source)))
        receiver = WebhookReceiver(
            repository,
            settings=ReceivingSettings(process_async=False),
            security=SecuritySettings(default_signature_key=SECRET),
            events=bus,
        )
        request = InboundRequest(body=BODY, headers={"X-Webhook-Signature": "deadbeef"})

        result = await receiver.handle_request("shop", request)

        assert result.status_code == 401
        assert result.outcome == "rejected"
        assert result.message == "Invalid webhook signature"
        stored = await repository.get_event(result.event_id)
        assert stored.is_valid is False
        assert stored.validation_message == "Signature mismatch"
        assert stored.is_processed is False
        assert invalid == [(result.event_id, "shop")]

    @pytest.mark.asyncio
    async def test_non_ascii_signature_rejected_and_stored(self, repository):
        receiver = make_receiver(repository)
        request = InboundRequest(body=BODY, headers={"X-Webhook-Signature": "caf\u00e9"})

        result = await receiver.handle_request("shop", request)

        assert result.status_code == 401
        assert result.message == "Invalid webhook signature"
        stored = await repository.get_event(result.event_id)
        assert stored.is_valid is False
        assert stored.validation_message == "Signature mismatch"

    @pytest.mark.asyncio
    async def test_validator_error_treated_as_mismatch(self, repository):
        receiver = make_receiver(repository)

        with patch.object(HmacValidator, "validate", side_effect=ValueError("bad header")):
            ok, message = await receiver.verify_signature("shop", signed_request())

        assert not ok
        assert message == "Signature mismatch"

    @pytest.mark.asyncio
    async def test_require_signature_raises(self, repository):
        receiver = make_receiver(repository)
        request = InboundRequest(body=BODY, headers={"X-Webhook-Signature": "deadbeef"})

        with pytest.raises(InvalidSignatureError) as exc_info:
            await receiver.require_signature("shop", request)

        assert exc_info.value.signature == "deadbeef"
        assert exc_info.value.message == "Signature mismatch"
        await receiver.require_signature("shop", signed_request())

    @pytest.mark.asyncio
    async def test_invalid_signature_processed_when_allowed(self, repository):
        receiver = make_receiver(repository, require_valid_signature=False)
        seen = []
        receiver.on("shop", "order.created", seen.append)

        result = await receiver.handle_request("shop", InboundRequest(body=BODY))

        assert result.outcome == "success"
        assert seen[0].is_valid is False
        assert seen[0].validation_message == "Missing signature"

    @pytest.mark.asyncio
    async def test_missing_secret(self, repository):
        receiver = WebhookReceiver(repository, settings=ReceivingSettings(process_async=False))

        ok, message = await receiver.verify_signature("shop", signed_request())
        assert not ok
        assert "No signature secret" in message

        lenient = WebhookReceiver(
            repository,
            settings=ReceivingSettings(process_async=False, require_signature_secret=False),
        )
        ok, _ = await lenient.verify_signature("shop", signed_request())
        assert ok

    @pytest.mark.asyncio
    async def test_explicit_secret_wins(self, repository):
        receiver = make_receiver(repository)
        body = b'{"a":1}'
        request = InboundRequest(body=body, headers={"X-Webhook-Signature": _sign(body, "other")})

        assert (await receiver.verify_signature("shop", request, secret="other"))[0]
        assert not (await receiver.verify_signature("shop", request))[0]

    @pytest.mark.asyncio
    async def test_verification_disabled(self, repository):
        receiver = make_receiver(repository, verify_signatures=False)

        result = await receiver.handle_request("shop", InboundRequest(body=BODY))

        assert result.status_code == 200
        assert (await repository.get_event(result.event_id)).signature is None

    @pytest.mark.asyncio
    async def test_stripe_provider(self, repository):
        timestamp = int(time.time())
        body = b'{"id":"evt_1","type":"charge.succeeded"}'
        signature = _sign(f"{timestamp}.".encode() + body, "whsec_stripe")
        receiver = WebhookReceiver(
            repository,
            settings=ReceivingSettings(process_async=False),
            providers={
                "stripe": ProviderSettings(
                    provider="stripe", signature_header="Stripe-Signature", secret="whsec_stripe"
                )
            },
        )

        result = await receiver.handle_request(
            "stripe",
            InboundRequest(body=body, headers={"Stripe-Signature": f"t={timestamp},v1={signature}"}),
        )

        assert result.status_code == 200
        assert result.event == "charge.succeeded"

    @pytest.mark.asyncio
    async def test_github_provider_event_header(self, repository):
        body = b'{"ref":"refs/heads/main"}'
        receiver = WebhookReceiver(
            repository,
            settings=ReceivingSettings(process_async=False),
            providers={
                "github": ProviderSettings(
                    provider="github",
                    signature_header="X-Hub-Signature-256",
                    event_header="X-GitHub-Event",
                    secret="gh_secret",
                )
            },
        )
        pushes = []
        receiver.on("github", "push", lambda e: pushes.append(e.payload["ref"]))

        result = await receiver.handle_request(
            "github",
            InboundRequest(
                body=body,
                headers={"X-Hub-Signature-256": "sha256=" + _sign(body, "gh_secret"), "X-GitHub-Event": "push"},
            ),
        )

        assert result.outcome == "success"
        assert pushes == ["refs/heads/main"]


# ============================================================================
# Processing Tests
# ============================================================================

class TestProcessing:
    """Tests for handler dispatch and outcomes."""

    @pytest.mark.asyncio
    async def test_sync_success(self, repository):
        receiver = make_receiver(repository)

        @receiver.on("shop", "order.*")
        async def handle_order(event: InboundEvent):
            assert event.payload["id"] == 7

        result = await receiver.handle_request("shop", signed_request())

        assert result.outcome == "success"
        stored = await repository.get_event(result.event_id)
        assert stored.processing_status == ProcessingStatus.SUCCESS
        assert stored.handler == "handle_order"
        assert stored.processed_at is not None

    @pytest.mark.asyncio
    async def test_handler_error(self, repository):
        receiver = make_receiver(repository)

        def broken(event):
            raise ValueError("bad order")

        receiver.on("shop", "order.created", broken)
        result = await receiver.handle_request("shop", signed_request())

        assert result.status_code == 500
        assert result.message == "Webhook processing failed"
        stored = await repository.get_event(result.event_id)
        assert stored.processing_status == ProcessingStatus.ERROR
        assert stored.processing_error == "bad order"

    @pytest.mark.asyncio
    async def test_no_handler_skipped(self, repository):
        receiver = make_receiver(repository)

        result = await receiver.handle_request("shop", signed_request())

        assert result.status_code == 200
        assert result.outcome == "skipped"

    @pytest.mark.asyncio
    async def test_async_processing(self, repository):
        receiver = make_receiver(repository, process_async=True)
        seen = []
        receiver.on_any("shop", seen.append)

        result = await receiver.handle_request("shop", signed_request())
        assert result.outcome == "queued"

        await receiver.wait_for_pending()
        assert len(seen) == 1
        assert (await repository.get_event(result.event_id)).is_processed

    @pytest.mark.asyncio
    async def test_before_hook_aborts(self, repository):
        receiver = make_receiver(repository)
        handled = []
        receiver.on_any("shop", handled.append)

        def reject(event):
            raise PermissionError("blocked")

        receiver.before("*", reject)
        result = await receiver.handle_request("shop", signed_request())

        assert result.status_code == 500
        assert handled == []
        stored = await repository.get_event(result.event_id)
        assert "blocked" in stored.processing_error

    @pytest.mark.asyncio
    async def test_after_hook_errors_ignored(self, repository):
        receiver = make_receiver(repository)
        receiver.on_any("shop", lambda e: None)

        def noisy(event):
            raise RuntimeError("after failed")

        receiver.after("shop", noisy)
        result = await receiver.handle_request("shop", signed_request())

        assert result.outcome == "success"

    @pytest.mark.asyncio
    async def test_process_event_is_idempotent(self, repository):
        receiver = make_receiver(repository)
        calls = []
        receiver.on_any("shop", calls.append)

        result = await receiver.handle_request("shop", signed_request())
        again = await receiver.process_event(result.event_id)

        assert again.is_processed
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_process_missing_event(self, repository):
        assert await make_receiver(repository).process_event("missing") is None

    @pytest.mark.asyncio
    async def test_non_json_body(self, repository):
        body = b"plain text"
        receiver = make_receiver(repository)

        result = await receiver.handle_request("shop", signed_request(body))

        stored = await repository.get_event(result.event_id)
        assert stored.payload == "plain text"
        assert stored.event == "unknown"
