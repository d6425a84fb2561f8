"""
Shared admission control for calls against one upstream rate budget.

A PacingGate serializes the *start* of upstream calls: no two dispatches are
closer together than ``min_gap_ms`` no matter which queue issued them. Each
queue runs at most one task at a time, in FIFO order, so a chatty feed can
delay but never starve another feed sharing the same upstream.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

# Set up logging
logger = logging.getLogger(__name__)

T = TypeVar('T')


class PacingGate:
    """
    Minimum-gap dispatcher with per-queue FIFO sub-queues.

    Uses a single "next allowed dispatch" watermark guarded by an admission
    lock. ``asyncio.Lock`` wakes waiters in acquisition order, which gives FIFO
    within a queue and arrival order across queues.
    """

    def __init__(
        self,
        min_gap_ms: int,
        queue_gaps_ms: Optional[Dict[str, int]] = None,
        name: str = "gate",
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize a pacing gate.

        Args:
            min_gap_ms: Global minimum gap between two dispatch starts
            queue_gaps_ms: Optional additional spacing per queue id
            name: Name used in log messages
            clock: Monotonic clock returning seconds
        """
        if min_gap_ms < 0:
            raise ValueError("min_gap_ms must not be negative")
        self.name = name
        self.min_gap = min_gap_ms / 1000.0
        self.queue_gaps = {q: gap / 1000.0 for q, gap in (queue_gaps_ms or {}).items()}
        self._clock = clock
        self._admission = asyncio.Lock()
        self._queue_locks: Dict[str, asyncio.Lock] = {}
        self._watermark = 0.0
        self._queue_watermarks: Dict[str, float] = {}
        self._dispatched: Dict[str, int] = {}
        self._waiting: Dict[str, int] = {}
        self.last_dispatch_at: Optional[float] = None

    def _queue_lock(self, queue_id: str) -> asyncio.Lock:
        lock = self._queue_locks.get(queue_id)
        if lock is None:
            lock = asyncio.Lock()
            self._queue_locks[queue_id] = lock
        return lock

    async def _wait_until(self, deadline: float) -> None:
        # asyncio may wake slightly early; loop until the clock really passed it
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            await asyncio.sleep(remaining)

    async def schedule(self, queue_id: str, task: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``task`` once the gate admits it.

        Args:
            queue_id: Sub-queue (bucket) the task belongs to
            task: Zero-argument coroutine function performing the upstream call

        Returns:
            Whatever the task returns. Exceptions from the task propagate
            unchanged; the gate only governs timing.
        """
        self._waiting[queue_id] = self._waiting.get(queue_id, 0) + 1
        admitted = False
        try:
            async with self._queue_lock(queue_id):
                await self._wait_until(self._queue_watermarks.get(queue_id, 0.0))

                async with self._admission:
                    await self._wait_until(self._watermark)
                    now = self._clock()
                    self._watermark = now + self.min_gap
                    if queue_id in self.queue_gaps:
                        self._queue_watermarks[queue_id] = now + self.queue_gaps[queue_id]
                    self.last_dispatch_at = now
                    self._dispatched[queue_id] = self._dispatched.get(queue_id, 0) + 1
                    self._waiting[queue_id] -= 1
                    admitted = True

                logger.debug(f"[{self.name}] dispatching {queue_id} task")
                return await task()
        finally:
            if not admitted:
                self._waiting[queue_id] -= 1

    def get_stats(self) -> Dict[str, Any]:
        """
        Dispatch counters for the status endpoint.

        Returns:
            Dictionary with the gate's configuration and per-queue counters
        """
        return {
            "name": self.name,
            "min_gap_ms": int(self.min_gap * 1000),
            "dispatched": dict(self._dispatched),
            "waiting": {q: n for q, n in self._waiting.items() if n},
        }
