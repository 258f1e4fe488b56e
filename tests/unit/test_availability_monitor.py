"""
Unit tests for the availability monitor and its backoff
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from batch_registrar.config import BackoffConfig
from batch_registrar.services.engine.availability_monitor import AvailabilityMonitor
from batch_registrar.services.engine.concurrency_arbiter import ConcurrencyArbiter
from conftest import FakeClock, FakeSleep


def scripted_probe(results):
    """Probe returning results in order, repeating the last one"""
    results = list(results)
    calls = []

    async def probe():
        calls.append(len(calls))
        return results.pop(0) if len(results) > 1 else results[0]

    probe.calls = calls
    return probe


class TestAvailabilityMonitor:
    """Test throttling, backoff and waiting"""

    def setup_method(self):
        self.clock = FakeClock()
        self.sleep = FakeSleep(self.clock)
        self.arbiter = ConcurrencyArbiter()

    def make_monitor(self, probe, **kwargs) -> AvailabilityMonitor:
        return AvailabilityMonitor.from_config(probe, self.arbiter, BackoffConfig(**kwargs),
                                               clock=self.clock, sleep=self.sleep)

    @pytest.mark.asyncio
    async def test_wait_returns_true_only_after_both_backoff_sleeps(self):
        """Unavailable twice, then available"""
        probe = scripted_probe([False, False, True])
        monitor = self.make_monitor(probe)
        started = self.clock.now

        assert await monitor.wait_for_availability() is True

        assert self.sleep.calls == pytest.approx([13.0, 16.9])
        assert self.clock.now - started == pytest.approx(29.9)
        assert len(probe.calls) == 3
        assert monitor.state.consecutive_failures == 0
        assert monitor.state.current_backoff_ms == 10_000

    @pytest.mark.asyncio
    async def test_wait_gives_up_at_deadline_without_oversleeping(self):
        monitor = self.make_monitor(scripted_probe([False]))
        started = self.clock.now

        assert await monitor.wait_for_availability(max_wait_ms=30_000) is False

        assert sum(self.sleep.calls) == pytest.approx(30.0)
        assert self.clock.now - started == pytest.approx(30.0)
        assert monitor.state.is_target_available is False

    @pytest.mark.asyncio
    async def test_wait_returns_immediately_when_available(self):
        monitor = self.make_monitor(scripted_probe([True]))

        assert await monitor.wait_for_availability() is True
        assert self.sleep.calls == []

    @pytest.mark.asyncio
    async def test_backoff_is_monotonic_and_bounded(self):
        monitor = self.make_monitor(scripted_probe([False]))
        previous = monitor.state.current_backoff_ms

        for _ in range(20):
            await monitor.check_availability(force=True)
            current = monitor.state.current_backoff_ms
            assert current >= previous
            assert current <= 120_000
            previous = current

        assert monitor.state.current_backoff_ms == 120_000
        assert monitor.state.consecutive_failures == 20

    @pytest.mark.asyncio
    async def test_success_resets_backoff(self):
        monitor = self.make_monitor(scripted_probe([False, False, True]))

        await monitor.check_availability(force=True)
        await monitor.check_availability(force=True)
        assert monitor.state.current_backoff_ms == pytest.approx(16_900)

        assert await monitor.check_availability(force=True) is True
        assert monitor.state.current_backoff_ms == 10_000
        assert monitor.state.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_unforced_checks_are_throttled(self):
        probe = scripted_probe([False, True])
        monitor = self.make_monitor(probe)

        assert await monitor.check_availability() is False
        self.clock.advance(19)
        assert await monitor.check_availability() is False  # cached
        assert len(probe.calls) == 1

        self.clock.advance(1)
        assert await monitor.check_availability() is True
        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_force_bypasses_throttle(self):
        probe = scripted_probe([True])
        monitor = self.make_monitor(probe)

        await monitor.check_availability()
        await monitor.check_availability(force=True)

        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_probe_exception_counts_as_failure(self):
        async def broken_probe():
            raise ConnectionError("refused")

        monitor = self.make_monitor(broken_probe)

        assert await monitor.check_availability(force=True) is False
        assert monitor.state.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_concurrent_checks_share_one_probe(self):
        started = asyncio.Event()
        release = asyncio.Event()
        count = 0

        async def slow_probe():
            nonlocal count
            count += 1
            started.set()
            await release.wait()
            return True

        monitor = self.make_monitor(slow_probe)
        tasks = [asyncio.ensure_future(monitor.check_availability(force=True)) for _ in range(3)]
        await started.wait()
        release.set()

        assert await asyncio.gather(*tasks) == [True, True, True]
        assert count == 1
        assert self.arbiter.get_stats()['shared_results'] == 2

    def test_mark_activity_updates_state_and_calls_hook(self):
        monitor = self.make_monitor(scripted_probe([True]))
        monitor.on_activity = MagicMock()

        monitor.mark_activity()

        assert monitor.state.last_activity_at == self.clock.now
        monitor.on_activity.assert_called_once_with(self.clock.now)
        self.clock.advance(5)
        assert monitor.idle_seconds() == 5

    def test_restore_clamps_persisted_backoff(self):
        monitor = self.make_monitor(scripted_probe([True]))

        monitor.restore({"consecutiveFailures": 4, "currentBackoffMs": 999_999})
        assert monitor.state.consecutive_failures == 4
        assert monitor.state.current_backoff_ms == 120_000

        monitor.restore({"currentBackoffMs": 1})
        assert monitor.state.current_backoff_ms == 10_000

    def test_get_stats(self):
        monitor = self.make_monitor(scripted_probe([True]))
        stats = monitor.get_stats()

        assert stats['is_target_available'] is True
        assert stats['current_backoff_ms'] == 10_000
        assert stats['probe_count'] == 0
