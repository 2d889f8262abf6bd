"""Bounded admission gate for outbound LLM calls.

Limits how many calls to the generative-AI backend may be in flight at once.
Callers suspend (never busy-wait) until a slot frees up, and every slot is
released exactly once however the call ends: normal return, exception or
cancellation.

The gate is an explicitly constructed object. The application builds one at
startup and injects it into the LLM gateway, so tests can build their own
with any capacity.

Example:
    >>> gate = RateGate(capacity=3)
    >>> async def call_backend():
    ...     async with gate.slot():
    ...         return await client.post(...)
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator


@dataclass
class RateGateStats:
    """Gate statistics for monitoring."""
    capacity: int
    holders: int
    peak_holders: int
    total_acquisitions: int
    waiting: int

    def to_dict(self) -> dict:
        """Convert stats to dictionary."""
        return {
            "capacity": self.capacity,
            "holders": self.holders,
            "peak_holders": self.peak_holders,
            "total_acquisitions": self.total_acquisitions,
            "waiting": self.waiting,
        }


class RateGate:
    """Fixed-capacity permit pool built on asyncio.Semaphore.

    Invariant: holders <= capacity at all times.

    Attributes:
        capacity: Maximum number of concurrent holders
        holders: Current number of holders
        peak_holders: Highest number of simultaneous holders observed
    """

    def __init__(self, capacity: int = 3):
        """Initialize the gate.

        Args:
            capacity: Maximum concurrent holders (default: 3)

        Raises:
            ValueError: If capacity is less than 1
        """
        if capacity < 1:
            raise ValueError("RateGate capacity must be at least 1")
        self._capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._holders = 0
        self._peak_holders = 0
        self._total_acquisitions = 0
        self._waiting = 0

    async def acquire(self) -> None:
        """Suspend until a slot is free, then take it."""
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        self._holders += 1
        self._total_acquisitions += 1
        if self._holders > self._peak_holders:
            self._peak_holders = self._holders

    def release(self) -> None:
        """Give a slot back.

        Raises:
            RuntimeError: If called more times than acquire()
        """
        if self._holders <= 0:
            raise RuntimeError("RateGate released more times than acquired")
        self._holders -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one slot for the duration of the block.

        If the caller is cancelled while waiting, no slot is taken and
        nothing is released.
        """
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def holders(self) -> int:
        return self._holders

    @property
    def peak_holders(self) -> int:
        return self._peak_holders

    def get_stats(self) -> RateGateStats:
        """Get a snapshot of gate statistics."""
        return RateGateStats(
            capacity=self._capacity,
            holders=self._holders,
            peak_holders=self._peak_holders,
            total_acquisitions=self._total_acquisitions,
            waiting=self._waiting,
        )
