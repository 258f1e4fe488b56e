"""
Adaptive batch registration engine

Sits between a batch of registration items and a flaky, session-stateful
target system. Outcomes are classified, retries are gated by one shared
availability view, and locator strategies that work are remembered.

Architecture Overview:
======================

    CLI / caller
         │
         ▼
    ┌───────────────────────────────────────────────────┐
    │            BatchOrchestrator                      │ ← One per batch
    │  (session lifecycle + ordering + report)          │
    └───────────────────┬───────────────────────────────┘
                        │  one per item
                        ▼
    ┌───────────────────────────────────────────────────┐
    │            ItemProcessor                          │ ← transitions AsyncMachine
    │  selecting → submitting → classifying → ...       │
    └──────┬──────────────┬──────────────┬──────────────┘
           │              │              │
           ▼              ▼              ▼
    StrategyCache   ErrorClassifier   ConcurrencyArbiter ◄── AvailabilityMonitor
    (which locator  (what happened)   (one risky op at       (is the target up,
     works)                            a time)                how long to back off)
           │
           ▼
    ┌───────────────────────────────────────────────────┐
    │            TargetAdapter                          │ ← Abstract interface
    └─────────────────┬─────────────┬───────────────────┘
                      ▼             ▼
           PlaywrightAdapter   SeleniumAdapter

Component Responsibilities:
===========================

1. **BatchOrchestrator**: opens or adopts the session, processes items in
   input order, settles and checks the session between items, honours stop()
   requests, aggregates the BatchReport.

2. **ItemProcessor**: per-item state machine; locates controls through the
   strategy cache, asks the NameResolver which option to pick, submits
   through the arbiter and decides succeed/skip/retry/fail.

3. **EngineServices**: the process-wide StrategyCache, ErrorClassifier,
   ConcurrencyArbiter and AvailabilityMonitor, built once and shared.

Usage Patterns:
===============

adapter = AdapterFactory.create_adapter("playwright", "https://target.example/")
services = EngineServices.build(config, adapter.probe)
orchestrator = BatchOrchestrator(adapter, BasicNameResolver(), services, config)
report = await orchestrator.run_batch(items)
"""

from .adapter_factory import AdapterFactory
from .availability_monitor import AvailabilityMonitor, ResilienceState
from .batch_orchestrator import BatchOrchestrator, CallbackManager, EngineServices, SessionPolicy
from .concurrency_arbiter import ConcurrencyArbiter, ConcurrencySlot, Priority
from .error_classifier import ClassificationRule, ErrorClassifier, FailureSignal
from .item_processor import ItemProcessor
from .strategy_cache import LocatorStrategy, StrategyCache
from .target_adapter import (
    Action, ActionKind, ActionResult, BasicNameResolver, ControlHandle, NameResolver, TargetAdapter
)

__all__ = [
    'AdapterFactory',
    'AvailabilityMonitor',
    'ResilienceState',
    'BatchOrchestrator',
    'CallbackManager',
    'EngineServices',
    'SessionPolicy',
    'ConcurrencyArbiter',
    'ConcurrencySlot',
    'Priority',
    'ClassificationRule',
    'ErrorClassifier',
    'FailureSignal',
    'ItemProcessor',
    'LocatorStrategy',
    'StrategyCache',
    # Collaborator interfaces
    'Action',
    'ActionKind',
    'ActionResult',
    'BasicNameResolver',
    'ControlHandle',
    'NameResolver',
    'TargetAdapter',
]
