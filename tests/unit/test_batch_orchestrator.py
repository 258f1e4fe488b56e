"""
Unit tests for the batch orchestrator
"""

from unittest.mock import MagicMock, patch

import pytest

from batch_registrar.exceptions import InvalidItemError
from batch_registrar.models.classification import ErrorKind
from batch_registrar.models.item import BatchReport, Item, ItemOutcome, SessionHandle
from batch_registrar.services.engine import BasicNameResolver, BatchOrchestrator, EngineServices, SessionPolicy
from conftest import make_config


class TestBatchOrchestrator:
    """Test session lifecycle, ordering, callbacks and bookkeeping"""

    @pytest.mark.asyncio
    async def test_processes_items_in_order(self, orchestrator, adapter, items):
        """Test processes items in order"""
        report = await orchestrator.run_batch(items)

        assert [r.index for r in report.results] == [0, 1, 2]
        assert [r.item.label for r in report.results] == ["Alpha", "Beta", "Gamma"]
        assert report.succeeded == 3
        assert report.completed
        assert report.terminated_reason is None
        assert report.resume_from is None
        assert adapter.submitted == ["Alpha", "Beta", "Gamma"]

    @pytest.mark.asyncio
    async def test_owned_session_opened_and_closed_once(self, orchestrator, adapter, items):
        """Test owned session opened and closed once"""
        await orchestrator.run_batch(items)

        assert adapter.open_count == 1
        assert adapter.close_count == 1
        assert adapter.dismiss_count == 2

    @pytest.mark.asyncio
    async def test_settles_between_items(self, adapter, services, clock, fake_sleep, items):
        """Test settles between items"""
        config = make_config()
        config.timeouts.settle_ms = 1000
        orchestrator = BatchOrchestrator(adapter, BasicNameResolver(), services, config,
                                         sleep=fake_sleep, clock=clock)

        await orchestrator.run_batch(items)

        assert fake_sleep.calls == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_callbacks(self, orchestrator, items):
        """Test callbacks"""
        started, completed, finished, messages = [], [], [], []
        orchestrator.set_callbacks(
            on_item_start=lambda item, index: started.append((item.label, index)),
            on_item_complete=completed.append,
            on_batch_complete=finished.append,
            on_log_message=messages.append,
        )

        report = await orchestrator.run_batch(items)

        assert started == [("Alpha", 0), ("Beta", 1), ("Gamma", 2)]
        assert [r.item.label for r in completed] == ["Alpha", "Beta", "Gamma"]
        assert finished == [report]
        assert any("finished" in m for m in messages)

    @pytest.mark.asyncio
    async def test_adapter_log_messages_are_forwarded(self, orchestrator, adapter):
        """Test adapter log messages are forwarded"""
        messages = []
        orchestrator.set_callbacks(on_log_message=messages.append)

        adapter._log("hello from the adapter")

        assert messages == ["hello from the adapter"]

    @pytest.mark.asyncio
    async def test_rejects_non_items(self, orchestrator, adapter):
        """Test rejects non items"""
        with pytest.raises(InvalidItemError):
            await orchestrator.run_batch([Item("Alpha"), "Beta"])

        assert adapter.open_count == 0
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_rejects_concurrent_run(self, orchestrator, items):
        """Test rejects concurrent run"""
        orchestrator.is_running = True

        with pytest.raises(RuntimeError):
            await orchestrator.run_batch(items)

    @pytest.mark.asyncio
    async def test_empty_batch(self, orchestrator):
        """Test empty batch"""
        report = await orchestrator.run_batch([])

        assert report.total == 0
        assert report.results == []
        assert report.resume_from is None
        assert report.completed

    @pytest.mark.asyncio
    async def test_session_open_failure_fails_every_item(self, orchestrator, adapter, items):
        """Test session open failure fails every item"""
        adapter.fail_open_after = 0

        report = await orchestrator.run_batch(items)

        assert report.failed == 3
        assert report.terminated_reason == "session_lost"
        assert report.resume_from == 0
        assert all(r.attempts == 0 for r in report.results)
        assert all(r.classification == ErrorKind.TRANSIENT for r in report.results)
        assert len(orchestrator.get_error_log()) == 3
        assert adapter.close_count == 0

    @pytest.mark.asyncio
    async def test_closed_session_is_reopened_between_items(self, orchestrator, adapter, items):
        """Test closed session is reopened between items"""
        adapter.lose_session_after_submits = 1

        report = await orchestrator.run_batch(items)

        assert report.succeeded == 3
        assert adapter.open_count == 3
        assert report.terminated_reason is None

    @pytest.mark.asyncio
    async def test_failed_reopen_ends_batch(self, orchestrator, adapter, items):
        """Test failed reopen ends batch"""
        adapter.lose_session_after_submits = 1
        adapter.fail_open_after = 1

        report = await orchestrator.run_batch(items)

        assert report.results[0].outcome == ItemOutcome.SUCCESS
        assert [r.outcome for r in report.results[1:]] == [ItemOutcome.ERROR, ItemOutcome.ERROR]
        assert report.terminated_reason == "session_lost"
        assert report.resume_from == 1
        assert adapter.submitted == ["Alpha"]

    @pytest.mark.asyncio
    async def test_adopted_session_is_left_open(self, orchestrator, adapter, items):
        """Test adopted session is left open"""
        handle = await adapter.open_session()

        report = await orchestrator.run_batch(items, SessionPolicy(session=handle, job_id="adopted"))

        assert report.job_id == "adopted"
        assert report.succeeded == 3
        assert adapter.open_count == 1
        assert adapter.close_count == 0

    @pytest.mark.asyncio
    async def test_replacement_for_dead_adopted_session_is_closed(self, orchestrator, adapter):
        """Test replacement for dead adopted session is closed"""
        stale = SessionHandle(native=-1)

        report = await orchestrator.run_batch([Item("Alpha")], SessionPolicy(session=stale))

        assert report.succeeded == 1
        assert adapter.open_count == 1
        assert adapter.close_count == 1
        assert not adapter.session_alive

    @pytest.mark.asyncio
    async def test_adopted_session_closed_on_request(self, orchestrator, adapter, items):
        """Test adopted session closed on request"""
        handle = await adapter.open_session()

        await orchestrator.run_batch(items, SessionPolicy(session=handle, close_on_finish=True))

        assert adapter.close_count == 1

    def test_session_policy_ownership(self):
        """Test session policy ownership"""
        assert SessionPolicy().owns_session
        assert not SessionPolicy(session=MagicMock()).owns_session
        assert not SessionPolicy(close_on_finish=False).owns_session

    @pytest.mark.asyncio
    async def test_stop_between_items(self, orchestrator, items):
        """Test stop between items"""
        orchestrator.set_callbacks(on_item_complete=lambda result: orchestrator.stop())

        report = await orchestrator.run_batch(items)

        assert len(report.results) == 1
        assert report.pending == 2
        assert report.terminated_reason == "cancelled"
        assert report.resume_from == 1

    def test_stop_when_idle(self, orchestrator):
        """Test stop when idle"""
        assert orchestrator.stop() is False

    @pytest.mark.asyncio
    async def test_progress_info(self, orchestrator, items):
        """Test progress info"""
        assert orchestrator.get_progress_info()['total'] == 0

        report = await orchestrator.run_batch(items)
        progress = orchestrator.get_progress_info()

        assert progress['job_id'] == report.job_id
        assert progress['completed'] == 3
        assert progress['progress_percent'] == 100
        assert progress['is_running'] is False

    @pytest.mark.asyncio
    async def test_error_log(self, orchestrator):
        """Test error log"""
        await orchestrator.run_batch([Item("Alpha"), Item("Zeta")])

        log = orchestrator.get_error_log()
        assert len(log) == 1
        assert log[0]['label'] == "Zeta"
        assert log[0]['classification'] == "Fatal"

        log.clear()
        assert len(orchestrator.get_error_log()) == 1
        orchestrator.clear_error_log()
        assert orchestrator.get_error_log() == []

    @pytest.mark.asyncio
    async def test_unexpected_processor_error_is_contained(self, orchestrator, items):
        """Test unexpected processor error is contained"""
        with patch("batch_registrar.services.engine.batch_orchestrator.ItemProcessor.run",
                   side_effect=RuntimeError("boom")):
            report = await orchestrator.run_batch(items)

        assert report.failed == 3
        assert all(r.classification == ErrorKind.UNKNOWN for r in report.results)
        assert "boom" in report.results[0].diagnostic
        assert isinstance(report, BatchReport)

    @pytest.mark.asyncio
    async def test_marks_activity_after_each_item(self, orchestrator, services, items):
        """Test marks activity after each item"""
        services.monitor.on_activity = MagicMock()

        await orchestrator.run_batch(items)

        assert services.monitor.on_activity.call_count == 3

    @pytest.mark.asyncio
    async def test_cache_reordered_at_batch_start(self, orchestrator, services, items):
        """Test cache reordered at batch start"""
        with patch.object(services.cache, "reorder", wraps=services.cache.reorder) as reorder:
            await orchestrator.run_batch(items)

        reorder.assert_called_once()


class TestEngineServices:
    """Test learned state snapshots"""

    def test_snapshot_keeps_strategies_apart_from_resilience(self, services, config, adapter, clock, fake_sleep):
        """Test a control named like the resilience entry survives a round trip"""
        services.cache.record_success("resilience", "#resilience-panel")
        services.cache.record_success("option", "mat-select[name='option']")
        services.monitor.restore({"consecutiveFailures": 2, "currentBackoffMs": 16_900})

        snapshot = services.snapshot()
        restored = EngineServices.build(config, adapter.probe, clock=clock, sleep=fake_sleep)
        restored.restore(snapshot)

        assert set(snapshot) == {"strategies", "resilience"}
        assert restored.cache.get("resilience").strategy_spec == "#resilience-panel"
        assert restored.snapshot() == snapshot

    def test_restore_tolerates_missing_sections(self, services):
        """Test restore tolerates missing sections"""
        services.restore({})
        services.restore({"strategies": [], "resilience": "broken"})

        assert len(services.cache) == 0
