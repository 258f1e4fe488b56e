"""
Concurrency arbiter for risky operations against the target system

The target does not tolerate concurrent sessions well, so every operation
that can disturb it (form submits, availability probes) takes a slot here
first. One instance is built at startup and shared by every orchestrator and
monitor in the process.

Slot Lifecycle:
===============

    acquire() ──► [granted] ──► release()            normal path
         │            │
         │            └── hard timeout ──► [reclaimed] owner task cancelled,
         │                                 release is a no-op
         │
         └── all slots busy ──► queue[HIGH | NORMAL | LOW] ──► granted on release

run(operation_id, ...) additionally collapses callers that share an
operation id onto the one in-flight execution.

All bookkeeping happens synchronously on the event loop thread, so the slot
counter and queues need no further locking.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Union

from ...exceptions import ArbiterTimeoutError


class Priority(IntEnum):
    """Queue priority, lower value served first"""
    HIGH = 0
    NORMAL = 1
    LOW = 2

    @classmethod
    def parse(cls, value: Union["Priority", str, int]) -> "Priority":
        if isinstance(value, Priority):
            return value
        if isinstance(value, str):
            return cls[value.upper()]
        return cls(value)


@dataclass
class ConcurrencySlot:
    """Right to perform one risky operation"""
    slot_id: int
    operation_id: str
    priority: Priority
    acquired_at: float = field(default_factory=time.monotonic)
    reclaimed: bool = False
    released: bool = False
    owner: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    @property
    def active(self) -> bool:
        return not (self.reclaimed or self.released)


class ConcurrencyArbiter:
    """Process-wide gate limiting concurrent risky operations"""

    def __init__(self, max_concurrent_operations: int = 1, slot_timeout_seconds: float = 300.0):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.max_concurrent_operations = max_concurrent_operations
        self.slot_timeout_seconds = slot_timeout_seconds

        self._ids = itertools.count(1)
        self._active: Dict[int, ConcurrencySlot] = {}
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._queues: Dict[Priority, Deque] = {p: deque() for p in Priority}
        self._inflight: Dict[str, asyncio.Future] = {}

        self.stats = {'granted': 0, 'reclaimed': 0, 'shared_results': 0, 'peak_active': 0}

    @classmethod
    def from_config(cls, config) -> "ConcurrencyArbiter":
        return cls(config.max_concurrent_operations, config.slot_timeout_seconds)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def _queued(self) -> int:
        return sum(len(q) for q in self._queues.values())

    async def acquire(self, operation_id: str, priority: Union[Priority, str] = Priority.NORMAL) -> ConcurrencySlot:
        """
        Take a slot, waiting in the priority queue while all slots are busy

        The calling task owns the slot. If it still holds the slot when the hard
        timeout fires, the slot is reclaimed and the task is cancelled.
        """
        priority = Priority.parse(priority)

        if len(self._active) < self.max_concurrent_operations and self._queued() == 0:
            granted = self._grant(operation_id, priority)
            granted.owner = asyncio.current_task()
            return granted

        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        entry = (operation_id, waiter)
        self._queues[priority].append(entry)
        self.logger.debug(f"🚦 Slot limit reached, queued {operation_id} (priority: {priority.name.lower()})")

        try:
            granted = await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Granted just as we were cancelled: hand the slot back
                self.release(waiter.result())
            else:
                try:
                    self._queues[priority].remove(entry)
                except ValueError:
                    pass
            raise
        granted.owner = asyncio.current_task()
        return granted

    def release(self, slot: ConcurrencySlot):
        """Return a slot; releasing twice or after a reclaim does nothing"""
        if slot.slot_id not in self._active:
            return
        slot.released = True
        self._drop(slot)
        self._drain()

    @asynccontextmanager
    async def slot(self, operation_id: str, priority: Union[Priority, str] = Priority.NORMAL):
        """
        Scoped acquisition: the slot is released however the block exits

        Raises:
            ArbiterTimeoutError: If the block still holds the slot when the hard
                timeout reclaims it
        """
        acquired = await self.acquire(operation_id, priority)
        try:
            yield acquired
        except asyncio.CancelledError:
            if not acquired.reclaimed:
                raise
            task = asyncio.current_task()
            if task is not None and hasattr(task, "uncancel"):
                task.uncancel()
            raise ArbiterTimeoutError(operation_id, self.slot_timeout_seconds) from None
        finally:
            self.release(acquired)

    async def run(self, operation_id: str, operation: Callable[[], Awaitable[Any]],
                  priority: Union[Priority, str] = Priority.NORMAL) -> Any:
        """
        Run an operation under a slot with at-most-one-in-flight per operation id

        Args:
            operation_id: Identity of the operation; concurrent callers with the
                same id share one execution and observe the same result
            operation: Zero-argument coroutine function performing the work
            priority: Queue band used if all slots are busy

        Returns:
            Whatever the operation returns

        Raises:
            ArbiterTimeoutError: If the operation outlives the slot's hard timeout
        """
        existing = self._inflight.get(operation_id)
        if existing is not None:
            self.stats['shared_results'] += 1
            self.logger.debug(f"⏳ {operation_id} already in flight, awaiting its result")
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(self._run_in_slot(operation_id, operation, Priority.parse(priority)))
        self._inflight[operation_id] = task

        def _done(finished: asyncio.Future):
            if self._inflight.get(operation_id) is finished:
                del self._inflight[operation_id]
            if not finished.cancelled():
                finished.exception()  # mark retrieved; callers re-raise it themselves

        task.add_done_callback(_done)
        return await asyncio.shield(task)

    async def _run_in_slot(self, operation_id: str, operation, priority: Priority):
        started = time.monotonic()
        try:
            async with self.slot(operation_id, priority):
                return await operation()
        finally:
            self.logger.debug(f"{operation_id} finished in {(time.monotonic() - started) * 1000:.0f}ms")

    def _grant(self, operation_id: str, priority: Priority) -> ConcurrencySlot:
        slot = ConcurrencySlot(next(self._ids), operation_id, priority)
        self._active[slot.slot_id] = slot
        self._timers[slot.slot_id] = asyncio.get_running_loop().call_later(
            self.slot_timeout_seconds, self._reclaim, slot
        )
        self.stats['granted'] += 1
        self.stats['peak_active'] = max(self.stats['peak_active'], len(self._active))
        return slot

    def _reclaim(self, slot: ConcurrencySlot):
        if slot.slot_id not in self._active:
            return
        self.logger.warning(f"⏰ Force-reclaiming slot held by {slot.operation_id} after {self.slot_timeout_seconds}s")
        slot.reclaimed = True
        self.stats['reclaimed'] += 1
        self._drop(slot)
        if slot.owner is not None and not slot.owner.done():
            slot.owner.cancel()
        self._drain()

    def _drop(self, slot: ConcurrencySlot):
        self._active.pop(slot.slot_id, None)
        timer = self._timers.pop(slot.slot_id, None)
        if timer is not None:
            timer.cancel()

    def _drain(self):
        """Grant free slots to waiters: HIGH before NORMAL before LOW, FIFO within a band"""
        while len(self._active) < self.max_concurrent_operations:
            entry = self._next_waiter()
            if entry is None:
                return
            operation_id, waiter, priority = entry
            waiter.set_result(self._grant(operation_id, priority))

    def _next_waiter(self):
        for priority in Priority:
            queue = self._queues[priority]
            while queue:
                operation_id, waiter = queue.popleft()
                if not waiter.done():
                    return operation_id, waiter, priority
        return None

    def get_stats(self) -> dict:
        return {
            'active_operations': len(self._active),
            'max_concurrent_operations': self.max_concurrent_operations,
            'queue_sizes': {p.name.lower(): len(q) for p, q in self._queues.items()},
            'total_queued': self._queued(),
            'in_flight_ids': list(self._inflight),
            **self.stats,
        }
