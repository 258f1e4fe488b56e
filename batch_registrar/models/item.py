"""
Registration item data model for the Batch Registration Engine
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from ..exceptions import InvalidItemError
from .classification import ErrorKind


class ItemStatus(Enum):
    """Item lifecycle status within a batch"""
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    SKIPPED = "Skipped"
    FAILED = "Failed"

    @property
    def is_final(self) -> bool:
        return self in (ItemStatus.SUCCEEDED, ItemStatus.SKIPPED, ItemStatus.FAILED)


class ItemOutcome(Enum):
    """Outcome recorded for a processed item"""
    SUCCESS = "Success"
    DUPLICATE = "Duplicate"
    ERROR = "Error"

    def to_status(self) -> ItemStatus:
        return {
            ItemOutcome.SUCCESS: ItemStatus.SUCCEEDED,
            ItemOutcome.DUPLICATE: ItemStatus.SKIPPED,
            ItemOutcome.ERROR: ItemStatus.FAILED,
        }[self]


@dataclass(frozen=True)
class Item:
    """A registration unit: an option label plus structured attributes such as role or profile"""
    label: str
    attributes: Mapping[str, str] = field(default_factory=dict)
    item_id: Optional[str] = None

    def __post_init__(self):
        """Post initialization validation"""
        if not isinstance(self.label, str) or not self.label.strip():
            raise InvalidItemError("label is required", label=self.label if isinstance(self.label, str) else None)
        if not isinstance(self.attributes, Mapping):
            raise InvalidItemError("attributes must be a mapping", label=self.label)
        for key, value in self.attributes.items():
            if not isinstance(key, str) or not key:
                raise InvalidItemError(f"attribute name {key!r} must be a non-empty string", label=self.label)
            if value is not None and not isinstance(value, str):
                raise InvalidItemError(f"attribute {key!r} must be a string", label=self.label)
        # Freeze the attribute mapping along with the item
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    def attribute(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self.attributes.get(name)
        return value if value else default

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "attributes": dict(self.attributes), "itemId": self.item_id}


@dataclass(frozen=True)
class ItemResult:
    """Immutable record of how one item ended"""
    item: Item
    index: int
    outcome: ItemOutcome
    attempts: int
    elapsed_ms: float
    diagnostic: str = ""
    classification: Optional[ErrorKind] = None

    @property
    def status(self) -> ItemStatus:
        return self.outcome.to_status()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "label": self.item.label,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "elapsedMs": round(self.elapsed_ms, 1),
            "diagnostic": self.diagnostic,
            "classification": self.classification.value if self.classification else None,
        }


@dataclass
class SessionHandle:
    """Opaque reference to an open session with the target system"""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    native: Any = None
    opened_at: Optional[float] = None


class BatchJob:
    """
    Ordered items processed against one session

    Items are immutable, so lifecycle status lives here rather than on the item.
    """

    def __init__(self, items: List[Item], job_id: Optional[str] = None):
        self.job_id = job_id or uuid.uuid4().hex[:8]
        self.items = list(items)
        self.session: Optional[SessionHandle] = None
        self._statuses = [ItemStatus.PENDING] * len(self.items)

    def __len__(self):
        return len(self.items)

    def status_of(self, index: int) -> ItemStatus:
        return self._statuses[index]

    def mark_in_progress(self, index: int):
        """Mark item as being processed"""
        self._statuses[index] = ItemStatus.IN_PROGRESS

    def mark_succeeded(self, index: int):
        self._statuses[index] = ItemStatus.SUCCEEDED

    def mark_skipped(self, index: int):
        self._statuses[index] = ItemStatus.SKIPPED

    def mark_failed(self, index: int):
        self._statuses[index] = ItemStatus.FAILED

    def mark_from_result(self, result: ItemResult):
        self._statuses[result.index] = result.status

    def first_pending_index(self) -> Optional[int]:
        """Index of the first item that has not reached a final status"""
        for index, status in enumerate(self._statuses):
            if not status.is_final:
                return index
        return None

    def count(self, status: ItemStatus) -> int:
        return sum(1 for s in self._statuses if s == status)


@dataclass
class BatchReport:
    """Aggregated result of one batch run"""
    total: int
    succeeded: int
    skipped: int
    failed: int
    results: List[ItemResult]
    duration_ms: float
    job_id: str = ""
    terminated_reason: Optional[str] = None
    resume_from: Optional[int] = None

    @property
    def pending(self) -> int:
        """Items that were never attempted"""
        return self.total - len(self.results)

    @property
    def completed(self) -> bool:
        return self.terminated_reason is None and self.pending == 0

    @classmethod
    def from_results(cls, total: int, results: List[ItemResult], duration_ms: float,
                     job_id: str = "", terminated_reason: Optional[str] = None,
                     resume_from: Optional[int] = None) -> "BatchReport":
        return cls(
            total=total,
            succeeded=sum(1 for r in results if r.outcome == ItemOutcome.SUCCESS),
            skipped=sum(1 for r in results if r.outcome == ItemOutcome.DUPLICATE),
            failed=sum(1 for r in results if r.outcome == ItemOutcome.ERROR),
            results=list(results),
            duration_ms=duration_ms,
            job_id=job_id,
            terminated_reason=terminated_reason,
            resume_from=resume_from,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "pending": self.pending,
            "durationMs": round(self.duration_ms, 1),
            "terminatedReason": self.terminated_reason,
            "resumeFrom": self.resume_from,
            "results": [r.to_dict() for r in self.results],
        }
