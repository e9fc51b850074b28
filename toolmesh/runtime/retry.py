"""Retry policy value object.

A ``RetryPolicy`` describes *how* to retry (attempt budget, exponential
backoff, jitter) and ``RetryPolicy.run`` is the single loop that applies it:
it returns the operation's result or raises the last error, with no nested
continuation chains.

Usage:
    policy = RetryPolicy(max_attempts=3, base_delay=0.5)
    result = await policy.run(lambda: client.call("tools/list"), retry_on=(NetworkError,))
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterator, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff configuration.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1).
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound for any single delay.
        factor: Multiplier applied per attempt.
        jitter: Fractional random spread applied to each delay (0.1 = +/-10%).
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    factor: float = 2.0
    jitter: float = 0.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.factor ** max(attempt - 1, 0)), self.max_delay)
        if self.jitter and delay:
            spread = delay * self.jitter
            delay = max(0.0, delay + self.rng.uniform(-spread, spread))
        return delay

    def delays(self) -> Iterator[float]:
        """Yield the delays between consecutive attempts."""
        for attempt in range(1, self.max_attempts):
            yield self.delay_for(attempt)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: Tuple[Type[BaseException], ...],
        should_retry: Optional[Callable[[BaseException], bool]] = None,
        on_retry: Optional[Callable[[int, BaseException, float], Awaitable[None]]] = None,
    ) -> T:
        """Run ``operation`` until it succeeds or the attempt budget is spent.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt.
            retry_on: Exception types that are eligible for retry.
            should_retry: Optional extra predicate; returning False stops
                retrying and re-raises immediately.
            on_retry: Awaited before each backoff sleep with
                ``(attempt, error, delay)``.

        Returns:
            The first successful result.

        Raises:
            The last error once attempts are exhausted, or any error not
            listed in ``retry_on``.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as e:
                if attempt >= self.max_attempts or (should_retry is not None and not should_retry(e)):
                    raise
                delay = self.delay_for(attempt)
                logger.debug("Attempt %d/%d failed (%s); retrying in %.2fs", attempt, self.max_attempts, e, delay)
                if on_retry is not None:
                    await on_retry(attempt, e, delay)
                await asyncio.sleep(delay)
                attempt += 1
