"""
Abstract target adapter and name resolver interfaces

The engine never talks to a browser directly. Everything it needs from the
target system goes through a TargetAdapter, and every "which option is the
right one" decision goes through a NameResolver.
"""

import difflib
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from ...exceptions import NoMatchError
from ...models.item import SessionHandle
from .error_classifier import FailureSignal

__all__ = [
    "ActionKind", "Action", "ActionResult", "ControlHandle", "SessionHandle",
    "TargetAdapter", "NameResolver", "BasicNameResolver", "normalize_name",
]


class ActionKind(Enum):
    """Primitive operations an adapter performs on a located control"""
    CLICK = "click"
    FILL = "fill"
    SELECT = "select"
    LIST_OPTIONS = "list_options"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    value: Optional[str] = None


@dataclass(frozen=True)
class ActionResult:
    """What an adapter reports back after acting on a control"""
    ok: bool = True
    options: Tuple[str, ...] = ()
    detail: str = ""


@dataclass
class ControlHandle:
    """A located control together with the strategy that found it"""
    strategy_spec: str
    control_id: Optional[str] = None
    native: Any = field(default=None, repr=False)


class TargetAdapter(ABC):
    """Abstract base class for target system adapters"""

    def __init__(self):
        """Initialize the adapter"""
        self.on_log_message: Optional[Callable[[str], None]] = None

    def set_log_callback(self, callback: Optional[Callable[[str], None]]):
        """Set the logging callback function"""
        self.on_log_message = callback

    def _log(self, message: str):
        """Internal logging helper"""
        if self.on_log_message:
            self.on_log_message(message)

    @abstractmethod
    async def open_session(self) -> SessionHandle:
        """
        Open a session with the target system

        Returns:
            Handle for the new session

        Raises:
            SessionOpenError: If the target cannot be reached or logged into
        """
        pass

    @abstractmethod
    async def is_session_open(self, handle: SessionHandle) -> bool:
        """Check whether the session behind a handle is still usable"""
        pass

    @abstractmethod
    async def locate(self, strategy_spec: str) -> ControlHandle:
        """
        Resolve a locator strategy to a control

        Raises:
            ElementNotFoundError: If the strategy matches nothing visible
        """
        pass

    @abstractmethod
    async def act(self, control: ControlHandle, action: Action) -> ActionResult:
        """Perform an action on a located control"""
        pass

    @abstractmethod
    async def observe_signal(self) -> FailureSignal:
        """Read the banner/error state the target shows after an operation"""
        pass

    @abstractmethod
    async def close_session(self, handle: SessionHandle):
        """Close a session; closing an already closed session does nothing"""
        pass

    async def probe(self) -> bool:
        """Liveness probe used by the availability monitor"""
        return True

    async def dismiss_banners(self):
        """Clear transient messages left over from the previous item"""
        return None

    @abstractmethod
    def get_adapter_name(self) -> str:
        """Get the name of this adapter"""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this adapter's driver is installed"""
        pass


class NameResolver(ABC):
    """Chooses which offered option corresponds to an item"""

    @abstractmethod
    def resolve(self, attributes: Mapping[str, str], offered_options: Sequence[str]) -> str:
        """
        Pick one of the offered options

        Args:
            attributes: Item attributes; "label" carries the item label
            offered_options: Options currently shown by the target

        Returns:
            The chosen option, exactly as offered

        Raises:
            NoMatchError: If no offered option corresponds to the item
        """
        pass


def normalize_name(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace"""
    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(stripped.lower().split())


class BasicNameResolver(NameResolver):
    """
    Resolver working on normalized names

    Tries an exact match, then an option containing every keyword of the
    label, then the closest option by difflib similarity above a threshold.
    """

    STOPWORDS = {"de", "da", "do", "das", "dos", "e", "a", "o", "the", "of"}

    def __init__(self, similarity_threshold: float = 0.85):
        self.similarity_threshold = similarity_threshold

    def resolve(self, attributes: Mapping[str, str], offered_options: Sequence[str]) -> str:
        label = attributes.get("label", "")
        target = normalize_name(label)
        options: List[Tuple[str, str]] = [(normalize_name(o), o) for o in offered_options if o and o.strip()]

        for normalized, original in options:
            if normalized == target:
                return original

        keywords = [w for w in target.split() if w not in self.STOPWORDS]
        if keywords:
            containing = [original for normalized, original in options
                          if all(k in normalized.split() for k in keywords)]
            if containing:
                # Shortest option carries the least unrelated text
                return min(containing, key=len)

        best, best_ratio = None, 0.0
        for normalized, original in options:
            ratio = difflib.SequenceMatcher(None, target, normalized).ratio()
            if ratio > best_ratio:
                best, best_ratio = original, ratio
        if best is not None and best_ratio >= self.similarity_threshold:
            return best

        raise NoMatchError(label, offered_options)
