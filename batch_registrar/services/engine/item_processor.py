"""
Per-item registration state machine using the transitions framework

    pending ──► selecting ──► submitting ──► classifying ──┬──► succeeded
                   ▲   │                                    ├──► skipped
                   │   └── selection_failed ──────────────► │
                   │                                        ├──► failed
                   └──────── reselect ◄── retry_pending ◄───┘

Each state has one handler; the run loop calls the handler for the current
state and the handler fires exactly one trigger. Callbacks never fire
triggers themselves.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from transitions.extensions.asyncio import AsyncMachine

from ...exceptions import (
    ActionFailedError, AdapterTimeoutError, ElementNotFoundError, StrategiesExhaustedError
)
from ...models.classification import ErrorClassification, ErrorKind
from ...models.form_plan import SUBMIT_CONTROL, ControlCatalog, FormStep, StepAction
from ...models.item import Item, ItemOutcome, ItemResult
from .concurrency_arbiter import Priority
from .error_classifier import FailureSignal
from .target_adapter import Action, ActionKind, ControlHandle, NameResolver, TargetAdapter

SIGNAL_POLL_INTERVAL_MS = 250


class ItemProcessor:
    """
    Drives one item through selection, submission and classification

    Args:
        item: Item to register
        index: Position of the item in its batch
        job_id: Identifier of the batch, part of the submit operation id
        adapter: Target adapter holding the open session
        resolver: Name resolver used for choose/select steps
        services: Shared engine services (cache, classifier, monitor, arbiter)
        config: Engine configuration (retry budgets and timeouts)
        catalog: Control catalog with candidate strategies and form steps
        session_guard: Coroutine returning False when the session is gone for good
    """

    states = [
        'pending',
        'selecting',
        'submitting',
        'classifying',
        'retry_pending',
        'succeeded',
        'skipped',
        'failed',
    ]

    TERMINAL_STATES = ('succeeded', 'skipped', 'failed')

    def __init__(self, item: Item, index: int, job_id: str, adapter: TargetAdapter,
                 resolver: NameResolver, services, config, catalog: ControlCatalog,
                 session_guard: Optional[Callable[[], Awaitable[bool]]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.item = item
        self.index = index
        self.job_id = job_id
        self.adapter = adapter
        self.resolver = resolver
        self.services = services
        self.retry_config = config.retry
        self.timeouts = config.timeouts
        self.catalog = catalog
        self.session_guard = session_guard
        self._sleep = sleep
        self._clock = clock
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

        self.on_log: Optional[Callable[[str], None]] = None

        self.attempts = 0
        self.signal: Optional[FailureSignal] = None
        self.classification: Optional[ErrorClassification] = None
        self.final_diagnostic = ""
        self.session_lost = False
        self.target_unavailable = False
        self._started_at: Optional[float] = None

        self.machine = AsyncMachine(
            model=self,
            states=ItemProcessor.states,
            initial='pending',
            auto_transitions=False,
            ignore_invalid_triggers=False,
        )
        self._setup_transitions()

        self._handlers: Dict[str, Callable[[], Awaitable[None]]] = {
            'selecting': self._handle_selecting,
            'submitting': self._handle_submitting,
            'classifying': self._handle_classifying,
            'retry_pending': self._handle_retry_pending,
        }

    def _setup_transitions(self):
        """Set up state transitions"""
        transitions = [
            ['begin', 'pending', 'selecting'],
            ['selected', 'selecting', 'submitting'],
            ['selection_failed', 'selecting', 'classifying'],
            ['submitted', 'submitting', 'classifying'],
            ['succeed', 'classifying', 'succeeded'],
            ['skip', 'classifying', 'skipped'],
            {'trigger': 'retry', 'source': 'classifying', 'dest': 'retry_pending',
             'conditions': 'has_retry_budget'},
            # Budget exhausted: the same trigger falls through to failed
            ['retry', 'classifying', 'failed'],
            ['reselect', 'retry_pending', 'selecting'],
            ['fail', '*', 'failed'],
        ]
        self.machine.add_transitions(transitions)

    def _log(self, message: str):
        """Unified logging method"""
        self.logger.debug(message)
        if self.on_log:
            self.on_log(message)

    def is_terminal(self) -> bool:
        return self.state in self.TERMINAL_STATES

    # Budget helpers

    def retry_budget(self) -> int:
        """Total attempts allowed for the current classification"""
        budget = self.retry_config.retry_budget
        if self.classification and self.classification.kind == ErrorKind.UNKNOWN:
            return min(budget, self.retry_config.unknown_retry_budget)
        return budget

    def has_retry_budget(self) -> bool:
        return self.attempts < self.retry_budget()

    def retry_delay_seconds(self) -> float:
        cfg = self.retry_config
        delay_ms = cfg.retry_base_delay_ms * (cfg.retry_multiplier ** max(self.attempts - 1, 0))
        return min(delay_ms, cfg.retry_max_delay_ms) / 1000

    def elapsed_seconds(self) -> float:
        return 0.0 if self._started_at is None else self._clock() - self._started_at

    # Run loop

    async def run(self) -> ItemResult:
        """
        Run the machine until the item reaches a terminal state

        Returns:
            The item's result; operational failures never escape
        """
        self._started_at = self._clock()
        self._log(f"🚀 Processing item {self.index + 1}: {self.item.label}")
        await self.begin()

        while not self.is_terminal():
            await self._handlers[self.state]()

        return self._build_result()

    async def _handle_selecting(self):
        self.attempts += 1
        self.signal = None
        self._log(f"🔎 Selecting (attempt {self.attempts})")
        try:
            for step in self.catalog.steps:
                await self._perform_step(step)
        except Exception as e:
            self.signal = FailureSignal.from_exception(e)
            self._log(f"❌ Selection failed: {e}")
            await self.selection_failed()
            return
        await self.selected()

    async def _handle_submitting(self):
        operation_id = f"submit:{self.job_id}:{self.index}:{self.attempts}"
        try:
            control = await self._locate(SUBMIT_CONTROL)
            self._log(f"🚀 Submitting ({operation_id})")
            self.signal = await self.services.arbiter.run(
                operation_id, lambda: self._commit(control), Priority.NORMAL
            )
        except Exception as e:
            self.signal = FailureSignal.from_exception(e)
            self._log(f"❌ Submit failed: {e}")
        await self.submitted()

    async def _handle_classifying(self):
        signal = self.signal or FailureSignal()
        classifier = self.services.classifier

        if classifier.is_success(signal):
            self.classification = None
            self.final_diagnostic = signal.banner_text or "Registered"
            self._log(f"✅ Registered: {self.item.label}")
            await self.succeed()
            return

        self.classification = classifier.classify(signal)
        self.final_diagnostic = self.classification.diagnostic
        kind = self.classification.kind
        self._log(f"📋 Classified as {kind.value}: {self.classification.diagnostic}")

        if kind == ErrorKind.DUPLICATE:
            await self.skip()
        elif kind == ErrorKind.FATAL:
            await self.fail()
        else:
            await self.retry()
            if self.state == 'failed':
                self._log(f"❌ Retry budget exhausted after {self.attempts} attempts")

    async def _handle_retry_pending(self):
        item_timeout = self.timeouts.item_timeout_seconds
        if self.elapsed_seconds() >= item_timeout:
            self.final_diagnostic = f"{self.final_diagnostic} (item timed out after {item_timeout}s)"
            await self.fail()
            return

        if self.session_guard and not await self.session_guard():
            self.session_lost = True
            self.final_diagnostic = f"{self.final_diagnostic} (session lost)"
            await self.fail()
            return

        monitor = self.services.monitor
        force = self.classification is not None and self.classification.kind == ErrorKind.TRANSIENT
        if not await monitor.check_availability(force=force):
            self._log("⏳ Target unavailable, waiting before retry")
            if not await monitor.wait_for_availability():
                self.target_unavailable = True
                self.final_diagnostic = f"{self.final_diagnostic} (target unavailable)"
                await self.fail()
                return

        delay = self.retry_delay_seconds()
        self._log(f"🔄 Retrying in {delay:.1f}s")
        await self._sleep(delay)
        await self.reselect()

    # Adapter interaction

    async def _call(self, operation: str, awaitable):
        """Bound one adapter call by the action timeout"""
        timeout = self.timeouts.action_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise AdapterTimeoutError(operation, timeout)

    def _candidate_strategies(self, control_id: str) -> List[str]:
        """Cached hint first, then cache-ranked alternates, then catalog order"""
        cache = self.services.cache
        ordered: List[str] = []
        hint = cache.get(control_id)
        if hint is not None:
            ordered.append(hint.strategy_spec)
        ordered.extend(s.strategy_spec for s in cache.ranked(control_id))
        ordered.extend(self.catalog.candidates(control_id))
        return list(dict.fromkeys(ordered))

    async def _locate(self, control_id: str, required: bool = True) -> Optional[ControlHandle]:
        cache = self.services.cache
        tried = []
        for spec in self._candidate_strategies(control_id):
            try:
                handle = await self._call(f"locate {control_id}", self.adapter.locate(spec))
            except ElementNotFoundError:
                cache.record_failure(control_id, spec)
                tried.append(spec)
                continue
            cache.record_success(control_id, spec)
            handle.control_id = control_id
            if tried:
                self._log(f"🔁 {control_id} found with fallback strategy: {spec}")
            return handle

        if required:
            raise StrategiesExhaustedError(control_id, tried)
        self._log(f"⚠️ Optional control {control_id} not present, skipping")
        return None

    async def _act(self, control: ControlHandle, action: Action):
        result = await self._call(f"{action.kind.value} {control.control_id}", self.adapter.act(control, action))
        if not result.ok:
            raise ActionFailedError(action.kind.value, control.control_id or control.strategy_spec,
                                    {"detail": result.detail})
        return result

    async def _choose(self, control: ControlHandle, attributes: dict):
        listed = await self._act(control, Action(ActionKind.LIST_OPTIONS))
        chosen = self.resolver.resolve(attributes, listed.options)
        await self._act(control, Action(ActionKind.SELECT, chosen))
        self._log(f"   {control.control_id}: {chosen}")

    async def _perform_step(self, step: FormStep):
        value = self.item.attribute(step.attribute) if step.attribute else None
        if step.attribute and value is None:
            if not step.required:
                return
            raise ActionFailedError(step.action.value, step.control_id,
                                    {"reason": f"missing required attribute '{step.attribute}'"})

        control = await self._locate(step.control_id, required=step.required)
        if control is None:
            return

        if step.action == StepAction.CHOOSE:
            await self._choose(control, {**self.item.attributes, "label": self.item.label})
        elif step.action == StepAction.SELECT:
            await self._choose(control, {"label": value})
        elif step.action == StepAction.FILL:
            await self._act(control, Action(ActionKind.FILL, value))
        else:
            await self._act(control, Action(ActionKind.CLICK))

    async def _commit(self, control: ControlHandle) -> FailureSignal:
        """Click submit and poll the target for its verdict"""
        await self._act(control, Action(ActionKind.CLICK))

        polls = max(1, int(self.timeouts.signal_wait_ms // SIGNAL_POLL_INTERVAL_MS))
        signal = FailureSignal()
        for poll in range(polls):
            signal = await self._call("observe signal", self.adapter.observe_signal())
            if signal.banner_text or signal.has_error:
                break
            if poll < polls - 1:
                await self._sleep(SIGNAL_POLL_INTERVAL_MS / 1000)
        return signal

    def _build_result(self) -> ItemResult:
        outcome = {
            'succeeded': ItemOutcome.SUCCESS,
            'skipped': ItemOutcome.DUPLICATE,
            'failed': ItemOutcome.ERROR,
        }[self.state]
        return ItemResult(
            item=self.item,
            index=self.index,
            outcome=outcome,
            attempts=self.attempts,
            elapsed_ms=self.elapsed_seconds() * 1000,
            diagnostic=self.final_diagnostic,
            classification=self.classification.kind if self.classification else None,
        )
