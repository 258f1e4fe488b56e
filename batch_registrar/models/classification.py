"""
Error classification values shared by the classifier and item results
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Closed taxonomy of failure observations"""
    DUPLICATE = "Duplicate"
    TRANSIENT = "Transient"
    FATAL = "Fatal"
    UNKNOWN = "Unknown"

    @property
    def is_retryable(self) -> bool:
        # Unknown failures are retried like transient ones, under a smaller budget
        return self in (ErrorKind.TRANSIENT, ErrorKind.UNKNOWN)


@dataclass(frozen=True)
class ErrorClassification:
    """Result of interpreting one failure signal"""
    kind: ErrorKind
    diagnostic: str = ""
    matched: Optional[str] = None

    def __str__(self):
        if self.matched:
            return f"{self.kind.value}: {self.diagnostic} (matched: {self.matched})"
        return f"{self.kind.value}: {self.diagnostic}"
