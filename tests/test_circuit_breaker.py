"""Tests for the per-destination circuit breaker."""

import asyncio

import fakeredis.aioredis
import pytest

from hookrelay.webhooks.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    InMemoryCircuitStore,
    RedisCircuitStore,
    with_circuit_breaker,
)
from hookrelay.webhooks.exceptions import CircuitOpenError, ConfigurationError

URL = "https://hooks.example.com/in"


def redis_store() -> RedisCircuitStore:
    store = RedisCircuitStore(prefix="test-circuit:")
    store._redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    return store


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "redis":
        return redis_store()
    return InMemoryCircuitStore()


# ============================================================================
# State Machine Tests
# ============================================================================

class TestCircuitBreaker:
    """Tests for CircuitBreaker against every store."""

    @pytest.mark.asyncio
    async def test_initial_state(self, store):
        breaker = CircuitBreaker(store)

        assert await breaker.get_state(URL) == CircuitState.CLOSED
        assert not await breaker.is_open(URL)
        assert await breaker.get_failure_count(URL) == 0

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, store):
        breaker = CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=3))

        for _ in range(2):
            await breaker.record_failure(URL)
        assert not await breaker.is_open(URL)

        await breaker.record_failure(URL)
        assert await breaker.is_open(URL)
        assert await breaker.get_reset_timeout(URL) is not None

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, store):
        breaker = CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=3))

        await breaker.record_failure(URL)
        await breaker.record_failure(URL)
        await breaker.record_success(URL)
        await breaker.record_failure(URL)

        assert not await breaker.is_open(URL)
        assert await breaker.get_failure_count(URL) == 1

    @pytest.mark.asyncio
    async def test_half_open_after_duration(self, store):
        breaker = CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=1, open_duration_seconds=0))

        await breaker.record_failure(URL)
        assert await breaker.get_state(URL) == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, store):
        breaker = CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=1))
        await breaker.force_open(URL, duration=0)

        await breaker.record_success(URL)

        assert await breaker.get_state(URL) == CircuitState.CLOSED
        assert await breaker.get_failure_count(URL) == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, store):
        breaker = CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=5, open_duration_seconds=60))
        await breaker.force_open(URL, duration=0)
        assert await breaker.get_state(URL) == CircuitState.HALF_OPEN

        await breaker.record_failure(URL)
        assert await breaker.is_open(URL)

    @pytest.mark.asyncio
    async def test_destinations_are_isolated(self, store):
        breaker = CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=1))
        await breaker.record_failure(URL)

        assert await breaker.is_open(URL)
        assert not await breaker.is_open("https://other.example.com/in")

    @pytest.mark.asyncio
    async def test_force_close_and_reset(self, store):
        breaker = CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=1))
        await breaker.record_failure(URL)

        await breaker.force_close(URL)
        assert not await breaker.is_open(URL)

        await breaker.record_failure(URL)
        await breaker.reset(URL)
        assert await breaker.get_state(URL) == CircuitState.CLOSED
        assert await breaker.get_failure_count(URL) == 0

    @pytest.mark.asyncio
    async def test_concurrent_failures_counted(self, store):
        breaker = CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=100))

        await asyncio.gather(*[breaker.record_failure(URL) for _ in range(20)])

        assert await breaker.get_failure_count(URL) == 20

    @pytest.mark.asyncio
    async def test_status_and_open_circuits(self, store):
        breaker = CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=1))
        await breaker.record_failure(URL)

        status = await breaker.get_status(URL)
        assert status["state"] == "open"
        assert status["failure_count"] == 1
        assert status["threshold"] == 1
        assert await breaker.get_open_circuits() == [URL]

    def test_invalid_config(self):
        with pytest.raises(ConfigurationError):
            CircuitBreakerConfig(failure_threshold=0)


# ============================================================================
# Execute / Decorator Tests
# ============================================================================

class TestExecute:
    """Tests for guarded execution."""

    @pytest.mark.asyncio
    async def test_execute_success(self):
        breaker = CircuitBreaker()

        async def work():
            return "ok"

        assert await breaker.execute(URL, work) == "ok"

    @pytest.mark.asyncio
    async def test_execute_records_failure_and_reraises(self):
        breaker = CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=2))

        def boom():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError):
            await breaker.execute(URL, boom)
        assert await breaker.get_failure_count(URL) == 1

    @pytest.mark.asyncio
    async def test_execute_rejects_when_open(self):
        breaker = CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=1))
        await breaker.record_failure(URL)

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(URL, lambda: "never")

        assert exc_info.value.destination == URL

    @pytest.mark.asyncio
    async def test_fallback_after_opening_failure(self):
        breaker = CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=1))

        def boom():
            raise RuntimeError("down")

        assert await breaker.execute(URL, boom, fallback=lambda: "cached") == "cached"
        assert await breaker.execute(URL, boom, fallback=lambda: "cached") == "cached"

    @pytest.mark.asyncio
    async def test_decorator(self):
        breaker = CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=1))
        calls = []

        @with_circuit_breaker(breaker, URL)
        async def ping(value):
            calls.append(value)
            raise ConnectionError("refused")

        with pytest.raises(ConnectionError):
            await ping(1)
        with pytest.raises(CircuitOpenError):
            await ping(2)

        assert calls == [1]
