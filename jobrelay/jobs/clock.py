"""Time source for schedulers and pollers.

Every sleep and timestamp in the orchestrator goes through a Clock so tests
can drive timers deterministically instead of waiting on real delays.
"""

import asyncio
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Wall-clock time plus an awaitable sleep."""

    def now(self) -> datetime:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Real time, backed by the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
