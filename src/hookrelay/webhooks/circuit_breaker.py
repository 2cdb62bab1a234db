"""Circuit Breaker Pattern - Isolate failing webhook destinations.

Tracks consecutive delivery failures per destination and stops sending to a
destination that keeps failing, giving it time to recover without blocking
delivery to anyone else.

Circuit state lives in a ``CircuitStore`` so several dispatch workers can
share it. Counters are changed with atomic increments, and the
open -> half_open transition is computed when the state is read, so no
background timer is needed.
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from .exceptions import CircuitOpenError, ConfigurationError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"        # Normal operation, deliveries pass through
    OPEN = "open"            # Failing, deliveries are blocked
    HALF_OPEN = "half_open"  # Next outcome decides whether to close or reopen


@dataclass
class CircuitRecord:
    """Stored state for one destination."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    open_until: Optional[float] = None  # epoch seconds

    @property
    def reopen_at(self) -> Optional[datetime]:
        if self.open_until is None:
            return None
        return datetime.fromtimestamp(self.open_until, tz=timezone.utc)


@dataclass
class CircuitBreakerConfig:
    """Configuration for the circuit breaker."""

    failure_threshold: int = 5          # Failures before opening
    open_duration_seconds: int = 300    # Time before a trial is allowed

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ConfigurationError(
                "Circuit breaker threshold must be at least 1",
                key="circuit_breaker.threshold",
            )
        if self.open_duration_seconds < 0:
            raise ConfigurationError(
                "Circuit breaker open duration cannot be negative",
                key="circuit_breaker.open_duration",
            )


# ============================================================================
# Stores
# ============================================================================

class CircuitStore(ABC):
    """Abstract base class for circuit state storage backends."""

    @abstractmethod
    async def get(self, destination: str) -> CircuitRecord:
        """Load the record for a destination (a fresh closed one if unknown)."""
        pass

    @abstractmethod
    async def increment(self, destination: str, counter: str) -> int:
        """Atomically increment ``failures`` or ``successes`` and return the new value."""
        pass

    @abstractmethod
    async def update(self, destination: str, **fields: Any) -> None:
        """Overwrite fields: ``state``, ``open_until``, ``failures``, ``successes``."""
        pass

    @abstractmethod
    async def delete(self, destination: str) -> None:
        pass

    @abstractmethod
    async def destinations(self) -> List[str]:
        """All destinations with stored state."""
        pass


class InMemoryCircuitStore(CircuitStore):
    """Process-local store guarded by an asyncio lock.

    Good for development and single-process deployments. Use
    ``RedisCircuitStore`` when several workers deliver concurrently.
    """

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def _raw(self, destination: str) -> Dict[str, Any]:
        return self._records.setdefault(
            destination,
            {"state": CircuitState.CLOSED.value, "failures": 0, "successes": 0, "open_until": None},
        )

    async def get(self, destination: str) -> CircuitRecord:
        async with self._lock:
            raw = self._records.get(destination)
            if raw is None:
                return CircuitRecord()
            return CircuitRecord(
                state=CircuitState(raw["state"]),
                failure_count=raw["failures"],
                success_count=raw["successes"],
                open_until=raw["open_until"],
            )

    async def increment(self, destination: str, counter: str) -> int:
        async with self._lock:
            raw = self._raw(destination)
            raw[counter] += 1
            return raw[counter]

    async def update(self, destination: str, **fields: Any) -> None:
        async with self._lock:
            raw = self._raw(destination)
            for key, value in fields.items():
                raw[key] = value.value if isinstance(value, CircuitState) else value

    async def delete(self, destination: str) -> None:
        async with self._lock:
            self._records.pop(destination, None)

    async def destinations(self) -> List[str]:
        async with self._lock:
            return list(self._records)


class RedisCircuitStore(CircuitStore):
    """Redis-backed store shared by every dispatch worker.

    Each destination is a hash under ``{prefix}{destination}`` with fields
    ``state``, ``failures``, ``successes`` and ``open_until``. Counters use
    ``HINCRBY`` so concurrent workers never lose an update.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0", prefix: str = "webhook-circuit:"):
        self.redis_url = redis_url
        self.prefix = prefix
        self._redis = None

    @property
    def redis(self):
        """Lazy Redis connection."""
        if self._redis is None:
            import redis.asyncio as redis

            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def _key(self, destination: str) -> str:
        return f"{self.prefix}{destination}"

    async def get(self, destination: str) -> CircuitRecord:
        raw = await self.redis.hgetall(self._key(destination))
        if not raw:
            return CircuitRecord()
        open_until = raw.get("open_until")
        return CircuitRecord(
            state=CircuitState(raw.get("state", CircuitState.CLOSED.value)),
            failure_count=int(raw.get("failures", 0)),
            success_count=int(raw.get("successes", 0)),
            open_until=float(open_until) if open_until else None,
        )

    async def increment(self, destination: str, counter: str) -> int:
        return int(await self.redis.hincrby(self._key(destination), counter, 1))

    async def update(self, destination: str, **fields: Any) -> None:
        mapping = {}
        for key, value in fields.items():
            if isinstance(value, CircuitState):
                value = value.value
            mapping[key] = "" if value is None else value
        await self.redis.hset(self._key(destination), mapping=mapping)

    async def delete(self, destination: str) -> None:
        await self.redis.delete(self._key(destination))

    async def destinations(self) -> List[str]:
        keys = []
        async for key in self.redis.scan_iter(match=f"{self.prefix}*"):
            keys.append(key[len(self.prefix):])
        return keys

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# ============================================================================
# Circuit breaker
# ============================================================================

T = TypeVar("T")
Work = Callable[[], Union[T, Awaitable[T]]]


async def _call(fn: Callable[[], Any]) -> Any:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


class CircuitBreaker:
    """Per-destination circuit breaker.

    - closed: failures accumulate; reaching the threshold opens the circuit.
    - open: calls are rejected until ``open_until`` passes.
    - half_open: the next failure reopens, the next success closes.

    Example:
        >>> breaker = CircuitBreaker(InMemoryCircuitStore())
        >>> if not await breaker.is_open(url):
        ...     try:
        ...         await post(url)
        ...         await breaker.record_success(url)
        ...     except httpx.HTTPError:
        ...         await breaker.record_failure(url)
    """

    def __init__(
        self,
        store: Optional[CircuitStore] = None,
        config: Optional[CircuitBreakerConfig] = None,
    ):
        """Initialize circuit breaker.

        Args:
            store: State backend (defaults to in-memory).
            config: Threshold and open duration.
        """
        self.store = store or InMemoryCircuitStore()
        self.config = config or CircuitBreakerConfig()

    async def get_state(self, destination: str) -> CircuitState:
        """Read the state, moving an expired open circuit to half_open."""
        record = await self.store.get(destination)
        if record.state == CircuitState.OPEN and record.open_until is not None:
            if record.open_until <= time.time():
                await self.store.update(destination, state=CircuitState.HALF_OPEN)
                logger.info(f"Circuit '{destination}': open -> half_open")
                return CircuitState.HALF_OPEN
        return record.state

    async def is_open(self, destination: str) -> bool:
        return await self.get_state(destination) == CircuitState.OPEN

    async def get_failure_count(self, destination: str) -> int:
        return (await self.store.get(destination)).failure_count

    async def get_reset_timeout(self, destination: str) -> Optional[datetime]:
        """When an open circuit allows its next trial."""
        return (await self.store.get(destination)).reopen_at

    async def record_success(self, destination: str) -> None:
        """Record a successful delivery; closes a half-open circuit."""
        state = await self.get_state(destination)
        if state == CircuitState.HALF_OPEN:
            await self.store.update(
                destination,
                state=CircuitState.CLOSED,
                open_until=None,
                failures=0,
                successes=0,
            )
            logger.info(f"Circuit '{destination}': half_open -> closed")
            return

        await self.store.update(destination, failures=0)
        await self.store.increment(destination, "successes")

    async def record_failure(self, destination: str) -> None:
        """Record a failed delivery; may open the circuit."""
        state = await self.get_state(destination)
        failures = await self.store.increment(destination, "failures")

        if state == CircuitState.HALF_OPEN:
            await self._open(destination, failures)
        elif state == CircuitState.CLOSED and failures >= self.config.failure_threshold:
            await self._open(destination, failures)

    async def _open(
        self,
        destination: str,
        failures: int,
        duration: Optional[int] = None,
    ) -> None:
        duration = self.config.open_duration_seconds if duration is None else duration
        await self.store.update(
            destination,
            state=CircuitState.OPEN,
            open_until=time.time() + duration,
        )
        logger.warning(
            f"Circuit '{destination}' opened after {failures} failures "
            f"for {duration}s"
        )

    async def force_open(self, destination: str, duration: Optional[int] = None) -> None:
        """Manually open a circuit, optionally for a custom duration."""
        failures = await self.get_failure_count(destination)
        await self._open(destination, failures, duration)

    async def force_close(self, destination: str) -> None:
        """Manually close a circuit and clear its failure counter."""
        await self.store.update(
            destination,
            state=CircuitState.CLOSED,
            open_until=None,
            failures=0,
        )
        logger.info(f"Circuit '{destination}' force-closed")

    async def reset(self, destination: str) -> None:
        """Forget all state for a destination."""
        await self.store.delete(destination)

    async def execute(
        self,
        destination: str,
        fn: Work,
        fallback: Optional[Work] = None,
    ) -> Any:
        """Run a unit of work through the circuit.

        Args:
            destination: Circuit key, usually the URL.
            fn: Zero-argument callable, sync or async.
            fallback: Called instead of ``fn`` while the circuit is open, and
                after a failure that leaves the circuit open.

        Raises:
            CircuitOpenError: If the circuit is open and no fallback is given.
        """
        if await self.is_open(destination):
            if fallback is not None:
                return await _call(fallback)
            record = await self.store.get(destination)
            raise CircuitOpenError(destination, record.failure_count, record.reopen_at)

        try:
            result = await _call(fn)
        except Exception:
            await self.record_failure(destination)
            if fallback is not None and await self.is_open(destination):
                return await _call(fallback)
            raise

        await self.record_success(destination)
        return result

    async def get_status(self, destination: str) -> Dict[str, Any]:
        """Snapshot of a destination's circuit for inspection endpoints."""
        state = await self.get_state(destination)
        record = await self.store.get(destination)
        return {
            "destination": destination,
            "state": state.value,
            "failure_count": record.failure_count,
            "success_count": record.success_count,
            "reopen_at": record.reopen_at.isoformat() if record.reopen_at else None,
            "threshold": self.config.failure_threshold,
        }

    async def get_open_circuits(self) -> List[str]:
        """Destinations whose circuit is currently open."""
        return [d for d in await self.store.destinations() if await self.is_open(d)]


def with_circuit_breaker(
    breaker: CircuitBreaker,
    destination: str,
    fallback: Optional[Callable[..., Any]] = None,
):
    """Decorator to guard an async function with a destination's circuit.

    Example:
        >>> @with_circuit_breaker(breaker, "https://hooks.example.com")
        ... async def ping():
        ...     ...
    """
    def decorator(func: Callable[..., Awaitable[Any]]):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            fb = None
            if fallback is not None:
                fb = lambda: fallback(*args, **kwargs)  # noqa: E731
            return await breaker.execute(destination, lambda: func(*args, **kwargs), fb)
        return wrapper
    return decorator
