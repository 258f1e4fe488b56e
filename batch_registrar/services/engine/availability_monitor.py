"""
Target availability monitoring and backoff control

Keeps the process-wide view of whether the target system is reachable and
how long callers should wait before probing again. Probes are throttled and
serialized through the concurrency arbiter, so a burst of failing items
produces one probe rather than one per item.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .concurrency_arbiter import ConcurrencyArbiter, Priority

AVAILABILITY_OPERATION_ID = "availability_check"


@dataclass
class ResilienceState:
    """Shared resilience view; only the AvailabilityMonitor writes to it"""
    is_target_available: bool = True
    last_checked_at: Optional[float] = None
    consecutive_failures: int = 0
    current_backoff_ms: float = 10_000
    last_activity_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "consecutiveFailures": self.consecutive_failures,
            "currentBackoffMs": self.current_backoff_ms,
        }


class AvailabilityMonitor:
    """
    Availability monitor with exponential backoff

    Args:
        probe: Coroutine function returning True when the target answers
        arbiter: Shared concurrency arbiter used to serialize probes
        base_delay_ms: Backoff after a success, and the starting point of a streak
        multiplier: Growth factor applied on every failed probe
        max_backoff_ms: Upper bound of the backoff
        check_interval_ms: Minimum time between unforced probes
        max_wait_ms: Default budget for wait_for_availability
        clock: Monotonic clock in seconds (injectable for tests)
        sleep: Coroutine sleeping for a number of seconds (injectable for tests)
    """

    def __init__(self, probe: Callable[[], Awaitable[bool]], arbiter: ConcurrencyArbiter,
                 base_delay_ms: float = 10_000, multiplier: float = 1.3,
                 max_backoff_ms: float = 120_000, check_interval_ms: float = 20_000,
                 max_wait_ms: float = 600_000, state: Optional[ResilienceState] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._probe = probe
        self._arbiter = arbiter
        self.base_delay_ms = base_delay_ms
        self.multiplier = multiplier
        self.max_backoff_ms = max_backoff_ms
        self.check_interval_ms = check_interval_ms
        self.max_wait_ms = max_wait_ms
        self._clock = clock
        self._sleep = sleep

        self._state = state or ResilienceState(current_backoff_ms=base_delay_ms)
        self.on_activity: Optional[Callable[[float], None]] = None
        self.probe_count = 0

    @classmethod
    def from_config(cls, probe, arbiter: ConcurrencyArbiter, config, **kwargs) -> "AvailabilityMonitor":
        return cls(
            probe, arbiter,
            base_delay_ms=config.base_delay_ms,
            multiplier=config.multiplier,
            max_backoff_ms=config.max_backoff_ms,
            check_interval_ms=config.check_interval_ms,
            max_wait_ms=config.max_wait_ms,
            **kwargs,
        )

    @property
    def state(self) -> ResilienceState:
        """Read-only use expected; mutate through the monitor's methods"""
        return self._state

    def set_probe(self, probe: Callable[[], Awaitable[bool]]):
        self._probe = probe

    def restore(self, data: dict):
        """Adopt persisted streak counters from a previous run"""
        failures = int(data.get("consecutiveFailures", 0))
        backoff = float(data.get("currentBackoffMs", self.base_delay_ms))
        self._state.consecutive_failures = max(0, failures)
        self._state.current_backoff_ms = min(max(backoff, self.base_delay_ms), self.max_backoff_ms)

    async def check_availability(self, force: bool = False) -> bool:
        """Probe the target unless a recent result is still fresh"""
        now = self._clock()
        last = self._state.last_checked_at
        if not force and last is not None and (now - last) * 1000 < self.check_interval_ms:
            return self._state.is_target_available

        return await self._arbiter.run(AVAILABILITY_OPERATION_ID, self._probe_once, Priority.HIGH)

    async def _probe_once(self) -> bool:
        self.probe_count += 1
        try:
            available = bool(await self._probe())
        except Exception as e:
            self.logger.warning(f"❌ Availability probe raised: {e}")
            available = False

        self._record(available)
        return available

    def _record(self, available: bool):
        state = self._state
        state.last_checked_at = self._clock()
        state.is_target_available = available
        if available:
            if state.consecutive_failures:
                self.logger.info(f"✅ Target available again after {state.consecutive_failures} failed probes")
            state.consecutive_failures = 0
            state.current_backoff_ms = self.base_delay_ms
        else:
            state.consecutive_failures += 1
            state.current_backoff_ms = min(state.current_backoff_ms * self.multiplier, self.max_backoff_ms)
            self.logger.warning(
                f"⚠️ Target unavailable ({state.consecutive_failures} in a row), "
                f"backoff now {state.current_backoff_ms / 1000:.1f}s"
            )

    async def wait_for_availability(self, max_wait_ms: Optional[float] = None) -> bool:
        """Probe, back off, probe again until the target answers or the budget runs out"""
        budget_ms = self.max_wait_ms if max_wait_ms is None else max_wait_ms
        deadline = self._clock() + budget_ms / 1000
        attempt = 1

        self.logger.info(f"Waiting for target availability (max {budget_ms / 1000:.0f}s)...")
        while True:
            if await self.check_availability(force=True):
                self.logger.info(f"✅ Target available after {attempt} probe(s)")
                return True

            remaining = deadline - self._clock()
            if remaining <= 0:
                self.logger.error("❌ Timed out waiting for target availability")
                return False

            wait_seconds = min(self._state.current_backoff_ms / 1000, remaining)
            self.logger.info(f"Target unavailable, next probe in {wait_seconds:.1f}s")
            await self._sleep(wait_seconds)
            attempt += 1

    def mark_activity(self):
        """Reset the idle clock so long batches do not look abandoned"""
        now = self._clock()
        self._state.last_activity_at = now
        if self.on_activity:
            self.on_activity(now)

    def idle_seconds(self) -> Optional[float]:
        last = self._state.last_activity_at
        return None if last is None else self._clock() - last

    def get_stats(self) -> dict:
        state = self._state
        return {
            'is_target_available': state.is_target_available,
            'last_checked_at': state.last_checked_at,
            'consecutive_failures': state.consecutive_failures,
            'current_backoff_ms': state.current_backoff_ms,
            'check_interval_ms': self.check_interval_ms,
            'probe_count': self.probe_count,
        }
