"""
Collection Scheduler.

Drives the collection tick and the batch-flush tick on one loop,
accumulating snapshots into a pending batch and handing each completed
batch to a single registered callback. The scheduler never sends data
itself.
"""

import asyncio
import inspect
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Union

from .collectors.base import CollectorOutcome, Registry
from .models import Snapshot

logger = logging.getLogger(__name__)

BatchReadyHook = Callable[[list[Snapshot]], Union[Awaitable[None], None]]


class SchedulerError(Exception):
    """Raised on misuse of the scheduler's registration contract."""


async def wait_for_stop(stop: asyncio.Event, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for ``stop``; return True if it is set."""
    if stop.is_set():
        return True
    try:
        await asyncio.wait_for(stop.wait(), timeout)
    except asyncio.TimeoutError:
        pass
    return stop.is_set()


def _next_deadline(deadline: float, interval: float, now: float) -> float:
    """Advance a tick deadline past ``now``, dropping missed ticks."""
    while deadline <= now:
        deadline += interval
    return deadline


class Scheduler:
    """
    Periodic metric collection and batching.

    Collection and flush are handled one event at a time. When both are
    due at the same instant, collection runs first, so the flush carries
    the snapshot taken on that tick.
    """

    def __init__(
        self,
        registry: Registry,
        collect_interval: float = 15,
        batch_interval: float = 60,
        collect_timeout: float = 10,
        on_batch_ready: Optional[BatchReadyHook] = None,
        clock: Callable[[], float] = time.monotonic,
        waiter: Callable[[asyncio.Event, float], Awaitable[bool]] = wait_for_stop,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize the scheduler."""
        self.registry = registry
        self.collect_interval = collect_interval
        self.batch_interval = batch_interval
        self.collect_timeout = collect_timeout

        self._on_batch_ready: Optional[BatchReadyHook] = on_batch_ready
        self._clock = clock
        self._wait = waiter
        self._now = now

        self._batch: list[Snapshot] = []
        self._lock = asyncio.Lock()

    def on_batch_ready(self, fn: BatchReadyHook):
        """Register the callback that receives each completed batch."""
        if self._on_batch_ready is not None:
            raise SchedulerError("A batch-ready hook is already registered")
        self._on_batch_ready = fn

    @property
    def pending(self) -> int:
        """Number of snapshots waiting for the next flush."""
        return len(self._batch)

    async def start(self, stop: asyncio.Event):
        """
        Run the collection and flush loop until ``stop`` is set.

        Collects once immediately, then services ticks. The pending batch
        is flushed before returning, also when the task is cancelled or a
        collection cycle raises.
        """
        if self._on_batch_ready is None:
            raise SchedulerError("No batch-ready hook registered")

        started = self._clock()
        next_collect = started + self.collect_interval
        next_flush = started + self.batch_interval

        logger.info(
            f"Scheduler started (collect every {self.collect_interval:g}s, "
            f"flush every {self.batch_interval:g}s)"
        )

        try:
            await self.collect()

            while True:
                due = min(next_collect, next_flush)
                if await self._wait(stop, max(0.0, due - self._clock())):
                    break

                now = self._clock()
                if now >= next_collect:
                    await self.collect()
                    next_collect = _next_deadline(next_collect, self.collect_interval, now)
                if now >= next_flush:
                    await self.flush()
                    next_flush = _next_deadline(next_flush, self.batch_interval, now)
        finally:
            # Also reached on cancellation or a failing cycle
            logger.info("Scheduler stopping, flushing pending batch")
            await asyncio.shield(self.flush())

    async def collect(self):
        """Run one collection cycle and append the snapshot."""
        started_at = self._now()
        results = await self.registry.collect_all(self.collect_timeout)
        snapshot = self.assemble_snapshot(started_at, results)

        async with self._lock:
            self._batch.append(snapshot)

        logger.debug(f"Collected metrics at {snapshot.timestamp.isoformat()}")

    async def flush(self):
        """Hand the pending batch to the hook and reset it. Empty is a no-op."""
        async with self._lock:
            if not self._batch:
                return
            batch = self._batch
            self._batch = []

        logger.info(f"Flushing batch of {len(batch)} snapshots")

        try:
            result = self._on_batch_ready(batch)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Batch-ready hook failed")

    @staticmethod
    def assemble_snapshot(
        timestamp: datetime,
        results: dict[str, CollectorOutcome],
    ) -> Snapshot:
        """Merge successful collector results into one snapshot."""
        fields = {}
        for outcome in results.values():
            if outcome.ok:
                fields.update(outcome.result.snapshot_fields())
        return Snapshot(timestamp=timestamp, **fields)
