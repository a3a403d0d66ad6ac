"""Clock abstraction so retry and backoff timing can be driven by tests."""

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic time source with an awaitable sleep."""

    def now(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall clock backed by time.monotonic and asyncio.sleep."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
