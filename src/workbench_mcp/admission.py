"""Bounded worker pool with FIFO admission."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class AdmissionError(RuntimeError):
    """Base class for admission controller errors."""


class CapacityExceededError(AdmissionError):
    """Raised when no worker slot could be obtained in time."""

    def __init__(self, message: str, *, queued: int, capacity: int) -> None:
        super().__init__(message)
        self.queued = queued
        self.capacity = capacity


@dataclass(slots=True)
class AdmissionSlot:
    """A unit of worker capacity held by one running agent."""

    slot_id: int
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AdmissionController:
    """Hands out at most ``capacity`` slots and queues the rest in arrival order.

    A released slot is passed straight to the oldest waiter instead of being
    returned to the pool, so a newcomer can never overtake someone already
    queued.
    """

    def __init__(self, capacity: int, *, max_queue_depth: int | None = None) -> None:
        if capacity < 1:
            raise ValueError("Admission capacity must be >= 1")
        if max_queue_depth is not None and max_queue_depth < 0:
            raise ValueError("max_queue_depth must be >= 0")
        self._capacity = capacity
        self._max_queue_depth = max_queue_depth
        self._available = capacity
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._outstanding: dict[int, AdmissionSlot] = {}
        self._ids = count(1)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)

    @property
    def queued(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def stats(self) -> dict[str, int]:
        return {
            "capacity": self._capacity,
            "outstanding": self.outstanding,
            "available": self._available,
            "queued": self.queued,
        }

    async def acquire(self, timeout: float | None = None) -> AdmissionSlot:
        """Wait for a slot, failing with ``CapacityExceededError`` after ``timeout`` seconds."""

        if self._available > 0 and not self._waiters:
            self._available -= 1
            return self._grant()

        queued = self.queued
        if self._max_queue_depth is not None and queued >= self._max_queue_depth:
            raise CapacityExceededError(
                "Worker pool is saturated and the wait queue is full",
                queued=queued,
                capacity=self._capacity,
            )

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
            if waiter.done() and not waiter.cancelled():
                # A slot was handed over while we were giving up; pass it on.
                self._hand_over()
            else:
                waiter.cancel()
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            if isinstance(exc, asyncio.CancelledError):
                raise
            logger.warning(
                "Admission wait timed out",
                extra={"timeout": timeout, "queued": self.queued, "capacity": self._capacity},
            )
            raise CapacityExceededError(
                f"No worker slot became available within {timeout} seconds",
                queued=self.queued,
                capacity=self._capacity,
            ) from None
        return self._grant()

    def release(self, slot: AdmissionSlot) -> bool:
        """Return ``slot`` to the pool; releasing twice is a no-op."""

        if self._outstanding.pop(slot.slot_id, None) is None:
            return False
        self._hand_over()
        return True

    @asynccontextmanager
    async def hold(self, timeout: float | None = None) -> AsyncIterator[AdmissionSlot]:
        """Acquire a slot for the duration of the block, releasing it on every exit path."""

        slot = await self.acquire(timeout)
        try:
            yield slot
        finally:
            self.release(slot)

    def _grant(self) -> AdmissionSlot:
        slot = AdmissionSlot(slot_id=next(self._ids))
        self._outstanding[slot.slot_id] = slot
        return slot

    def _hand_over(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._available += 1


__all__ = [
    "AdmissionController",
    "AdmissionError",
    "AdmissionSlot",
    "CapacityExceededError",
]
