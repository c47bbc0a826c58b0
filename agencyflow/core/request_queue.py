"""
Per-tenant request queue for hosted generation APIs.

Each tenant key gets its own lane. Calls in one lane run one at a time, in
arrival order, and never start sooner than min_delay after the previous call
in that lane was dispatched. Lanes of different tenants are independent.

The queue is process-local state: it is created once per process (see
EngineServices) and injected where needed.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Lane:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_dispatch: Optional[float] = None
    last_used: float = 0.0
    pending: int = 0


class PerTenantQueue:

    def __init__(
        self,
        min_delay: float,
        idle_timeout: float = 300.0,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            min_delay: Minimum seconds between dispatches within one lane
            idle_timeout: Seconds an empty lane is kept before eviction
            name: Label for logs (usually the backend name)
            clock: Monotonic time source
            sleep: Awaitable sleep
        """
        self.min_delay = min_delay
        self.idle_timeout = idle_timeout
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._lanes: Dict[Hashable, _Lane] = {}
        self._last_sweep = clock()
        self._sweep_task: Optional[asyncio.Task] = None

    def _lane(self, tenant_key: Hashable) -> _Lane:
        now = self._clock()
        if now - self._last_sweep >= self.idle_timeout:
            self.evict_idle(now)

        lane = self._lanes.get(tenant_key)
        if lane is None:
            lane = _Lane(last_used=now)
            self._lanes[tenant_key] = lane
        return lane

    async def submit(self, tenant_key: Hashable, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run call() in the tenant's lane and return its result.

        Exceptions raised by call() propagate to the caller; the lane keeps
        processing the next queued call.
        """
        lane = self._lane(tenant_key)
        lane.pending += 1
        try:
            async with lane.lock:
                if lane.last_dispatch is not None:
                    wait = lane.last_dispatch + self.min_delay - self._clock()
                    if wait > 0:
                        logger.debug(f"Queue[{self.name}] {tenant_key}: waiting {wait:.2f}s")
                        await self._sleep(wait)
                # Stamped before the call so a slow call does not shorten the next gap
                lane.last_dispatch = self._clock()
                return await call()
        finally:
            lane.pending -= 1
            lane.last_used = self._clock()

    def evict_idle(self, now: Optional[float] = None) -> int:
        """Drop lanes with nothing queued or running that have been idle past idle_timeout."""
        now = self._clock() if now is None else now
        self._last_sweep = now

        idle = [
            key for key, lane in self._lanes.items()
            if lane.pending == 0 and not lane.lock.locked() and now - lane.last_used >= self.idle_timeout
        ]
        for key in idle:
            del self._lanes[key]

        if idle:
            logger.debug(f"Queue[{self.name}]: evicted {len(idle)} idle lanes")
        return len(idle)

    async def _sweep_loop(self) -> None:
        while True:
            await self._sleep(self.idle_timeout)
            self.evict_idle()

    def start(self) -> None:
        """Sweep idle lanes every idle_timeout seconds, even when no tenant is submitting."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name=f"queue-{self.name}-sweep")

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "lanes": len(self._lanes),
            "pending": sum(lane.pending for lane in self._lanes.values()),
        }
