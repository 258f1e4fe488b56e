"""
Batch orchestrator

Coordinates one batch of items against one session: opens or adopts the
session, runs every item through an ItemProcessor strictly in input order,
keeps the session alive between items and aggregates the BatchReport.
Operational failures never escape run_batch; they end up in item results or
in the report's terminated_reason.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence

from ...config import EngineConfig
from ...exceptions import InvalidItemError
from ...models.classification import ErrorKind
from ...models.item import BatchJob, BatchReport, Item, ItemOutcome, ItemResult, SessionHandle
from .availability_monitor import AvailabilityMonitor
from .concurrency_arbiter import ConcurrencyArbiter
from .error_classifier import ErrorClassifier
from .item_processor import ItemProcessor
from .strategy_cache import StrategyCache
from .target_adapter import BasicNameResolver, NameResolver, TargetAdapter

STRATEGIES_KEY = "strategies"
RESILIENCE_KEY = "resilience"


@dataclass
class SessionPolicy:
    """
    How run_batch obtains its session

    Args:
        session: Already open session to adopt; None opens a new one
        close_on_finish: Close the session when the batch ends. Defaults to
            True for sessions the batch opened itself, False for adopted ones.
            A session opened to replace a dead adopted one is always closed
        job_id: Optional identifier for the batch
    """
    session: Optional[SessionHandle] = None
    close_on_finish: Optional[bool] = None
    job_id: Optional[str] = None

    @property
    def owns_session(self) -> bool:
        if self.close_on_finish is not None:
            return self.close_on_finish
        return self.session is None


@dataclass
class EngineServices:
    """Process-wide engine services, built once at startup and shared by every batch"""
    cache: StrategyCache
    classifier: ErrorClassifier
    arbiter: ConcurrencyArbiter
    monitor: AvailabilityMonitor

    @classmethod
    def build(cls, config: EngineConfig, probe: Callable[[], Awaitable[bool]], **monitor_kwargs) -> "EngineServices":
        """
        Wire the shared services from configuration

        Args:
            config: Engine configuration
            probe: Liveness probe for the availability monitor (usually adapter.probe)
            **monitor_kwargs: Extra monitor arguments such as clock or sleep
        """
        arbiter = ConcurrencyArbiter.from_config(config.arbiter)
        return cls(
            cache=StrategyCache(config.cache.capacity, config.cache.ttl_seconds),
            classifier=ErrorClassifier.from_config(config.classifier),
            arbiter=arbiter,
            monitor=AvailabilityMonitor.from_config(probe, arbiter, config.backoff, **monitor_kwargs),
        )

    def snapshot(self) -> dict:
        """Learned state worth keeping between runs"""
        return {
            STRATEGIES_KEY: self.cache.snapshot(),
            RESILIENCE_KEY: self.monitor.state.to_dict(),
        }

    def restore(self, data: dict):
        data = data or {}
        strategies = data.get(STRATEGIES_KEY)
        if isinstance(strategies, dict):
            self.cache.restore(strategies)
        resilience = data.get(RESILIENCE_KEY)
        if isinstance(resilience, dict):
            self.monitor.restore(resilience)


class CallbackManager:
    """Manages callbacks for progress reporting"""

    def __init__(self):
        self.on_item_start: Optional[Callable[[Item, int], None]] = None
        self.on_item_complete: Optional[Callable[[ItemResult], None]] = None
        self.on_batch_complete: Optional[Callable[[BatchReport], None]] = None
        self.on_log_message: Optional[Callable[[str], None]] = None

    def set_callbacks(self,
                      on_item_start: Callable[[Item, int], None] = None,
                      on_item_complete: Callable[[ItemResult], None] = None,
                      on_batch_complete: Callable[[BatchReport], None] = None,
                      on_log_message: Callable[[str], None] = None):
        """Set callback functions for progress updates"""
        self.on_item_start = on_item_start
        self.on_item_complete = on_item_complete
        self.on_batch_complete = on_batch_complete
        self.on_log_message = on_log_message


class BatchOrchestrator:
    """
    Batch orchestrator

    One orchestrator runs one batch at a time. Independent batches run as
    separate orchestrators sharing the same EngineServices.
    """

    def __init__(self, adapter: TargetAdapter, resolver: Optional[NameResolver] = None,
                 services: Optional[EngineServices] = None, config: Optional[EngineConfig] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.config = config or EngineConfig()
        self.adapter = adapter
        self.resolver = resolver or BasicNameResolver()
        self.services = services or EngineServices.build(self.config, adapter.probe, sleep=sleep)
        self.catalog = self.config.build_catalog()
        self._sleep = sleep
        self._clock = clock

        # State management
        self.is_running = False
        self._stop_requested = False
        self._job: Optional[BatchJob] = None
        self._results: List[ItemResult] = []

        # Callback management
        self._callbacks = CallbackManager()

        # Error tracking
        self.error_log: List[dict] = []

        self.adapter.set_log_callback(self._log_message)

    def _log_message(self, message: str):
        """Internal logging and callback"""
        self.logger.info(message)
        if self._callbacks.on_log_message:
            self._callbacks.on_log_message(message)

    def set_callbacks(self,
                      on_item_start: Callable[[Item, int], None] = None,
                      on_item_complete: Callable[[ItemResult], None] = None,
                      on_batch_complete: Callable[[BatchReport], None] = None,
                      on_log_message: Callable[[str], None] = None):
        """Set callback functions for progress updates"""
        self._callbacks.set_callbacks(on_item_start, on_item_complete,
                                      on_batch_complete, on_log_message)

    def stop(self) -> bool:
        """Request cooperative cancellation; honoured between items"""
        if not self.is_running:
            return False
        self._stop_requested = True
        self._log_message("🛑 Stop requested, finishing current item")
        return True

    # Batch processing

    async def run_batch(self, items: Sequence[Item], session_policy: Optional[SessionPolicy] = None) -> BatchReport:
        """
        Process items in order against one session

        Args:
            items: Items to register
            session_policy: How to obtain the session (default: open and own one)

        Returns:
            The batch report

        Raises:
            InvalidItemError: If an element of items is not an Item
        """
        items = self._validate_items(items)
        if self.is_running:
            raise RuntimeError("A batch is already running on this orchestrator")

        policy = session_policy or SessionPolicy()
        job = BatchJob(items, policy.job_id)
        self._job = job
        self._results = []
        self._stop_requested = False
        self.is_running = True

        started = self._clock()
        terminated_reason: Optional[str] = None
        resume_from: Optional[int] = None

        self.services.cache.reorder()
        self._log_message(f"Started batch {job.job_id} with {len(job)} items")

        try:
            if not await self._open_session(job, policy):
                terminated_reason, resume_from = "session_lost", 0
                self._fail_remaining(job, 0, "Session lost: could not open a session with the target")
            else:
                terminated_reason, resume_from = await self._process_items(job)
        finally:
            replaced = policy.session is not None and job.session is not policy.session
            if job.session is not None and (policy.owns_session or replaced):
                await self._close_session(job)
            self.is_running = False

        if not job.items:
            resume_from = None

        report = BatchReport.from_results(
            total=len(job),
            results=self._results,
            duration_ms=(self._clock() - started) * 1000,
            job_id=job.job_id,
            terminated_reason=terminated_reason,
            resume_from=resume_from,
        )
        self._log_message(
            f"Batch {job.job_id} finished: {report.succeeded} succeeded, {report.skipped} skipped, "
            f"{report.failed} failed, {report.pending} pending"
        )
        if self._callbacks.on_batch_complete:
            self._callbacks.on_batch_complete(report)
        return report

    async def _process_items(self, job: BatchJob):
        """Returns (terminated_reason, resume_from)"""
        for index, item in enumerate(job.items):
            if self._stop_requested:
                self._log_message(f"Batch cancelled before item {index + 1}")
                return "cancelled", index

            if index > 0:
                await self._settle()
                if not await self._ensure_session(job):
                    self._fail_remaining(job, index, "Session lost: reopening the session failed")
                    return "session_lost", index
                await self._dismiss_banners()

            processor = await self._process_item(job, index, item)
            self.services.monitor.mark_activity()

            if processor is not None and processor.session_lost:
                self._fail_remaining(job, index + 1, "Session lost: reopening the session failed")
                return "session_lost", index
            if processor is not None and processor.target_unavailable:
                self._fail_remaining(job, index + 1, "Target unavailable: gave up waiting for availability")
                return "target_unavailable", index

        return None, None

    async def _process_item(self, job: BatchJob, index: int, item: Item) -> Optional[ItemProcessor]:
        job.mark_in_progress(index)
        if self._callbacks.on_item_start:
            self._callbacks.on_item_start(item, index)

        processor = ItemProcessor(
            item, index, job.job_id, self.adapter, self.resolver, self.services, self.config,
            self.catalog, session_guard=lambda: self._ensure_session(job),
            sleep=self._sleep, clock=self._clock,
        )
        processor.on_log = self._log_message

        try:
            result = await processor.run()
        except Exception as e:
            # Processor bugs must not take the batch down with them
            self.logger.error(f"Unexpected error processing item {index + 1}: {e}", exc_info=True)
            result = ItemResult(item, index, ItemOutcome.ERROR, max(processor.attempts, 1), 0.0,
                                f"Unexpected error: {e}", ErrorKind.UNKNOWN)
            processor = None

        self._record(job, result)
        return processor

    def _record(self, job: BatchJob, result: ItemResult):
        self._results.append(result)
        job.mark_from_result(result)

        if result.outcome == ItemOutcome.ERROR:
            self.error_log.append({
                'timestamp': datetime.now().isoformat(),
                'job_id': job.job_id,
                'index': result.index,
                'label': result.item.label,
                'classification': result.classification.value if result.classification else None,
                'attempts': result.attempts,
                'diagnostic': result.diagnostic,
            })

        if self._callbacks.on_item_complete:
            self._callbacks.on_item_complete(result)

    def _fail_remaining(self, job: BatchJob, start: int, diagnostic: str):
        for index in range(start, len(job)):
            self._record(job, ItemResult(job.items[index], index, ItemOutcome.ERROR, 0, 0.0,
                                         diagnostic, ErrorKind.TRANSIENT))

    @staticmethod
    def _validate_items(items: Sequence[Item]) -> List[Item]:
        if items is None:
            raise InvalidItemError("items must be a sequence")
        items = list(items)
        for position, item in enumerate(items):
            if not isinstance(item, Item):
                raise InvalidItemError(f"element {position} is {type(item).__name__}, not Item")
        return items

    # Session management

    async def _open_session(self, job: BatchJob, policy: SessionPolicy) -> bool:
        if policy.session is not None:
            job.session = policy.session
            self._log_message(f"Adopted session {job.session.session_id}")
            return await self._ensure_session(job)

        try:
            job.session = await self.adapter.open_session()
        except Exception as e:
            self.logger.error(f"Failed to open session: {e}")
            self._log_message(f"❌ Could not open session: {e}")
            return False
        self._log_message(f"Opened session {job.session.session_id} ({self.adapter.get_adapter_name()})")
        return True

    async def _session_alive(self, session: Optional[SessionHandle]) -> bool:
        if session is None:
            return False
        try:
            return bool(await self.adapter.is_session_open(session))
        except Exception as e:
            self.logger.warning(f"Session check failed: {e}")
            return False

    async def _ensure_session(self, job: BatchJob) -> bool:
        """Verify the session and reopen it once if it was closed"""
        if await self._session_alive(job.session):
            return True

        self._log_message("⚠️ Session closed unexpectedly, reopening")
        try:
            job.session = await self.adapter.open_session()
        except Exception as e:
            self.logger.error(f"Session reopen failed: {e}")
            self._log_message(f"❌ Session reopen failed: {e}")
            return False
        self._log_message(f"✅ Session reopened ({job.session.session_id})")
        return True

    async def _close_session(self, job: BatchJob):
        try:
            await self.adapter.close_session(job.session)
        except Exception as e:
            self.logger.warning(f"Error closing session: {e}")

    async def _settle(self):
        settle_ms = self.config.timeouts.settle_ms
        if settle_ms > 0:
            await self._sleep(settle_ms / 1000)

    async def _dismiss_banners(self):
        try:
            await self.adapter.dismiss_banners()
        except Exception as e:
            self.logger.debug(f"Could not dismiss banners: {e}")

    # Progress tracking

    def get_progress_info(self) -> dict:
        """Get current progress information"""
        total = len(self._job) if self._job else 0
        completed = len(self._results)

        return {
            'job_id': self._job.job_id if self._job else None,
            'total': total,
            'completed': completed,
            'progress_percent': int(completed * 100 / total) if total else 0,
            'is_running': self.is_running,
            'stop_requested': self._stop_requested,
        }

    # Error management

    def get_error_log(self) -> list[dict]:
        """Get the error log for debugging"""
        return self.error_log.copy()

    def clear_error_log(self):
        """Clear the error log"""
        self.error_log.clear()
