"""
Adaptive locator strategy cache

Remembers, per logical control, which locator strategies have worked and in
what order to try them next time.

Ranking Model:
==============

    control "submit"            head = strategy tried first
    ┌──────────────────────────────────────────────────────┐
    │ [working] ─► [alternate] ─► [alternate] ─► ...       │
    └──────────────────────────────────────────────────────┘

- record_success moves the strategy to the head (it is the one that works now)
- record_failure lowers its weight and sinks it below alternates that weigh
  at least as much, keeping its history for when the layout swings back
- reorder re-sorts by success count, then recency, between batch runs

Entries expire from `get` after a period of inactivity but are kept for
ranking; the cache as a whole is bounded and evicts least recently touched
entries.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

StrategyKey = Tuple[str, str]


@dataclass
class LocatorStrategy:
    """A way of finding one control, with its track record"""
    control_id: str
    strategy_spec: str
    success_count: int = 0
    failure_count: int = 0
    last_used: float = 0.0

    @property
    def weight(self) -> int:
        return self.success_count - self.failure_count

    def to_dict(self) -> dict:
        return {
            "strategySpec": self.strategy_spec,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "lastUsed": self.last_used,
        }


def rank_key(strategy: LocatorStrategy):
    """Sort key: most successful first, most recently used breaks ties"""
    return (-strategy.success_count, -strategy.last_used)


class StrategyCache:
    """In-memory strategy cache shared by the items of a batch (and across batches)"""

    def __init__(self, capacity: int = 200, ttl_seconds: float = 600.0,
                 clock: Callable[[], float] = time.time):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        # LRU order over all entries, oldest first
        self._entries: "OrderedDict[StrategyKey, LocatorStrategy]" = OrderedDict()
        # Ranked keys per control
        self._order: Dict[str, List[str]] = {}

        self.stats = {'hits': 0, 'misses': 0, 'evictions': 0}

    def __len__(self):
        return len(self._entries)

    def get(self, control_id: str) -> Optional[LocatorStrategy]:
        """Best non-expired strategy for a control, or None"""
        now = self._clock()
        for spec in self._order.get(control_id, []):
            strategy = self._entries[(control_id, spec)]
            if now - strategy.last_used <= self.ttl_seconds:
                self.stats['hits'] += 1
                return strategy
        self.stats['misses'] += 1
        return None

    def ranked(self, control_id: str) -> List[LocatorStrategy]:
        """All known strategies for a control in current try order, expired ones included"""
        return [self._entries[(control_id, spec)] for spec in self._order.get(control_id, [])]

    def record_success(self, control_id: str, strategy_spec: str) -> LocatorStrategy:
        strategy = self._touch(control_id, strategy_spec)
        strategy.success_count += 1
        strategy.last_used = self._clock()

        order = self._order[control_id]
        order.remove(strategy_spec)
        order.insert(0, strategy_spec)
        return strategy

    def record_failure(self, control_id: str, strategy_spec: str):
        key = (control_id, strategy_spec)
        strategy = self._entries.get(key)
        if strategy is None:
            return

        strategy.failure_count += 1
        self._entries.move_to_end(key)

        order = self._order[control_id]
        position = order.index(strategy_spec)
        order.pop(position)
        while position < len(order) and self._entries[(control_id, order[position])].weight >= strategy.weight:
            position += 1
        order.insert(position, strategy_spec)
        self.logger.debug(f"Strategy demoted for {control_id}: {strategy_spec} (weight {strategy.weight})")

    def reorder(self):
        """Re-sort every control's strategies by success count, recency as tie-break"""
        for control_id, order in self._order.items():
            order.sort(key=lambda spec, c=control_id: rank_key(self._entries[(c, spec)]))

    def _touch(self, control_id: str, strategy_spec: str) -> LocatorStrategy:
        key = (control_id, strategy_spec)
        strategy = self._entries.get(key)
        if strategy is None:
            strategy = LocatorStrategy(control_id, strategy_spec)
            self._entries[key] = strategy
            self._order.setdefault(control_id, []).append(strategy_spec)
            self._evict_overflow()
        else:
            self._entries.move_to_end(key)
        return strategy

    def _evict_overflow(self):
        while len(self._entries) > self.capacity:
            (control_id, spec), _ = self._entries.popitem(last=False)
            order = self._order.get(control_id, [])
            if spec in order:
                order.remove(spec)
            if not order:
                self._order.pop(control_id, None)
            self.stats['evictions'] += 1

    # Persistence helpers

    def snapshot(self) -> Dict[str, List[dict]]:
        """Serializable view: {control_id: [strategy dicts in try order]}"""
        return {
            control_id: [self._entries[(control_id, spec)].to_dict() for spec in order]
            for control_id, order in self._order.items()
        }

    def restore(self, data: Dict[str, List[dict]]):
        """Load strategies saved by snapshot(); malformed entries are skipped"""
        for control_id, strategies in data.items():
            if not isinstance(strategies, list):
                continue
            for raw in strategies:
                try:
                    spec = raw["strategySpec"]
                    strategy = self._touch(control_id, spec)
                    strategy.success_count = int(raw.get("successCount", 0))
                    strategy.failure_count = int(raw.get("failureCount", 0))
                    strategy.last_used = float(raw.get("lastUsed", 0.0))
                except (KeyError, TypeError, ValueError) as e:
                    self.logger.warning(f"Skipping malformed cached strategy for {control_id}: {e}")

    def clear(self):
        self._entries.clear()
        self._order.clear()

    def get_stats(self) -> dict:
        return {
            'size': len(self._entries),
            'capacity': self.capacity,
            'controls': len(self._order),
            **self.stats,
        }
