"""Retry delay computation for outbound deliveries."""

from typing import Optional, Sequence, Union

from .exceptions import ConfigurationError
from .models import RetryStrategy


def compute_retry_delay(
    attempt: int,
    strategy: Union[RetryStrategy, str] = RetryStrategy.EXPONENTIAL,
    base_delay: float = 30,
    multiplier: float = 2,
    max_delay: float = 3600,
    intervals: Optional[Sequence[int]] = None,
) -> float:
    """Seconds to wait after a failed attempt before the next one.

    Args:
        attempt: Number of the attempt that just failed (1-based).
        strategy: ``exponential``, ``linear`` or ``fixed``.
        base_delay: Delay after the first failure.
        multiplier: Growth factor for the exponential strategy.
        max_delay: Upper bound for computed delays.
        intervals: Explicit per-attempt delays; entry ``attempt - 1`` wins
            over the strategy, and the last entry is reused past the end.

    Returns:
        Delay in seconds.

    Example:
        >>> compute_retry_delay(1)
        30
        >>> compute_retry_delay(2)
        60
        >>> compute_retry_delay(2, intervals=[10, 90])
        90
    """
    attempt = max(attempt, 1)

    if intervals:
        index = min(attempt - 1, len(intervals) - 1)
        return intervals[index]

    try:
        strategy = RetryStrategy(strategy)
    except ValueError:
        raise ConfigurationError(f"Unknown retry strategy: {strategy}", key="retry_strategy")

    if strategy == RetryStrategy.FIXED:
        delay = base_delay
    elif strategy == RetryStrategy.LINEAR:
        delay = base_delay * attempt
    else:
        delay = base_delay * (multiplier ** (attempt - 1))

    return min(delay, max_delay)
