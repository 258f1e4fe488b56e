"""
Shared fixtures: a scripted in-memory target adapter and a controllable clock
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional

import pytest

from batch_registrar.config import EngineConfig
from batch_registrar.exceptions import ElementNotFoundError, SessionOpenError
from batch_registrar.models.item import Item, SessionHandle
from batch_registrar.services.engine import (
    Action, ActionKind, ActionResult, BasicNameResolver, BatchOrchestrator, ControlHandle,
    EngineServices, FailureSignal, TargetAdapter
)


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeSleep:
    """Sleep replacement that advances a FakeClock and records every call"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        self.clock.advance(seconds)


class FakeTargetAdapter(TargetAdapter):
    """
    Scripted target

    Args:
        options: Options offered by every choose/select control
        signals: Per chosen option, the signals returned by successive submits;
            once a script runs out the submit succeeds with an empty banner
        hidden: Strategy specs that never resolve
        probes: Successive probe results; the last one repeats
    """

    def __init__(self, options: Iterable[str] = ("Alpha", "Beta", "Gamma"),
                 signals: Optional[Dict[str, List[FailureSignal]]] = None,
                 hidden: Iterable[str] = (), probes: Iterable[bool] = (True,)):
        super().__init__()
        self.options = list(options)
        self.signals = {k: list(v) for k, v in (signals or {}).items()}
        self.hidden = set(hidden)
        self.probes = list(probes)

        self.open_count = 0
        self.close_count = 0
        self.fail_open_after = None
        self.session_alive = False
        self.lose_session_after_submits = None

        self.located: List[str] = []
        self.submitted: List[str] = []
        self.selected: Dict[str, str] = {}
        self.probe_count = 0
        self.dismiss_count = 0
        self._pending_signal = FailureSignal()
        self.submits_per_option = defaultdict(int)

    def get_adapter_name(self) -> str:
        return "fake"

    def is_available(self) -> bool:
        return True

    async def open_session(self) -> SessionHandle:
        if self.fail_open_after is not None and self.open_count >= self.fail_open_after:
            raise SessionOpenError("target refused the session", adapter="fake")
        self.open_count += 1
        self.session_alive = True
        return SessionHandle(native=self.open_count)

    async def is_session_open(self, handle: SessionHandle) -> bool:
        return self.session_alive and handle is not None and handle.native == self.open_count

    async def close_session(self, handle: SessionHandle):
        self.close_count += 1
        self.session_alive = False

    async def locate(self, strategy_spec: str) -> ControlHandle:
        self.located.append(strategy_spec)
        if strategy_spec in self.hidden:
            raise ElementNotFoundError(strategy_spec)
        return ControlHandle(strategy_spec)

    async def act(self, control: ControlHandle, action: Action) -> ActionResult:
        if action.kind == ActionKind.LIST_OPTIONS:
            return ActionResult(options=tuple(self.options))
        if action.kind == ActionKind.SELECT:
            self.selected[control.control_id] = action.value
            return ActionResult()
        if action.kind == ActionKind.CLICK and control.control_id == "submit":
            option = self.selected.get("option", "")
            self.submitted.append(option)
            self.submits_per_option[option] += 1
            script = self.signals.get(option)
            self._pending_signal = script.pop(0) if script else FailureSignal()
            if self.lose_session_after_submits is not None and len(self.submitted) >= self.lose_session_after_submits:
                self.session_alive = False
        return ActionResult()

    async def observe_signal(self) -> FailureSignal:
        return self._pending_signal

    async def dismiss_banners(self):
        self.dismiss_count += 1

    async def probe(self) -> bool:
        self.probe_count += 1
        if len(self.probes) > 1:
            return self.probes.pop(0)
        return self.probes[0]


def make_config(**retry) -> EngineConfig:
    """Engine config with instant settle/signal waits"""
    config = EngineConfig.from_dict({
        "timeouts": {"settle_ms": 0, "signal_wait_ms": 0},
        "retry": retry,
    })
    return config


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def adapter():
    return FakeTargetAdapter()


@pytest.fixture
def services(config, adapter, clock, fake_sleep):
    return EngineServices.build(config, adapter.probe, clock=clock, sleep=fake_sleep)


@pytest.fixture
def orchestrator(adapter, services, config, clock, fake_sleep):
    return BatchOrchestrator(adapter, BasicNameResolver(), services, config, sleep=fake_sleep, clock=clock)


@pytest.fixture
def items():
    return [Item("Alpha"), Item("Beta"), Item("Gamma")]
