"""Retry delays and the pool-wide rate limit gate."""

from typing import Optional

import structlog
from pydantic import BaseModel

from syosetu_translator.clock import Clock

logger = structlog.get_logger()


def retry_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential delay before retrying a chapter after its ``attempt``-th failure."""
    if attempt < 1:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


class BackoffState(BaseModel):
    """Rate limit gate status for progress displays."""

    active: bool = False
    delay: float = 0.0
    remaining: float = 0.0
    consecutive: int = 0


class RateLimitGate:
    """Shared pause for every translate worker after a rate limit.

    Workers call ``wait`` before each request and remember the ``generation``
    they saw. A rate limit reported for the current generation escalates the
    delay and starts a new generation; rate limits from requests issued in an
    earlier generation (the same burst) only extend the window by their hint.
    """

    def __init__(self, clock: Clock, base_delay: float, max_delay: float):
        self.clock = clock
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.delay = 0.0
        self.consecutive = 0
        self.generation = 0
        self._until = 0.0

    @property
    def active(self) -> bool:
        return self.clock.now() < self._until

    def remaining(self) -> float:
        return max(0.0, self._until - self.clock.now())

    def trip(self, retry_after: Optional[float] = None, generation: Optional[int] = None) -> float:
        """Record a rate limit response.

        Args:
            retry_after: Server hint in seconds, if any
            generation: Gate generation seen when the failed request was issued

        Returns:
            The current pause length
        """
        hint = min(retry_after, self.max_delay) if retry_after else 0.0
        if generation is None or generation == self.generation:
            if self.delay:
                escalated = self.delay * 2
            else:
                escalated = hint or self.base_delay
            self.delay = min(self.max_delay, max(escalated, hint))
            self.consecutive += 1
            self.generation += 1
            self._until = max(self._until, self.clock.now() + self.delay)
            logger.warning(
                "rate_limit_backoff",
                delay=self.delay,
                consecutive=self.consecutive,
                retry_after=retry_after,
            )
        elif hint:
            self._until = max(self._until, self.clock.now() + hint)
        return self.delay

    def reset(self) -> None:
        """A request succeeded: the next rate limit starts from the base delay again."""
        if self.consecutive:
            logger.info("rate_limit_cleared", after=self.consecutive)
        self.delay = 0.0
        self.consecutive = 0

    async def wait(self) -> int:
        """Sleep until no backoff window is active.

        Returns:
            The generation the caller's next request belongs to
        """
        while True:
            remaining = self.remaining()
            if remaining <= 0:
                return self.generation
            await self.clock.sleep(remaining)

    def state(self) -> BackoffState:
        return BackoffState(
            active=self.active,
            delay=self.delay,
            remaining=self.remaining(),
            consecutive=self.consecutive,
        )
