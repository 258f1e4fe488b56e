"""
Failure signal classification

Maps what the target adapter reports after an operation (banner text,
adapter exception, response status) onto a closed taxonomy. The rules are a
plain data table evaluated in priority order; the first matching rule wins.
An error type taken from a typed adapter exception is consulted across the
whole table before any status or text evidence.

Priority:
    1. DUPLICATE  - the registration already exists (benign, expected)
    2. TRANSIENT  - the target is unreachable or the session/context broke
    3. FATAL      - the item can never succeed as-is (control or option missing)
    4. UNKNOWN    - anything else, retried conservatively by the caller
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Pattern, Sequence, Tuple

from ...exceptions import (
    ActionFailedError, AdapterTimeoutError, ArbiterTimeoutError, ElementNotFoundError,
    NetworkError, NoMatchError, SessionLostError, StrategiesExhaustedError
)
from ...models.classification import ErrorClassification, ErrorKind


# Exception type -> error type reported in a FailureSignal. Order matters for subclasses.
EXCEPTION_ERROR_TYPES = (
    (StrategiesExhaustedError, "strategies_exhausted"),
    (NoMatchError, "no_match"),
    (ElementNotFoundError, "not_found"),
    (ArbiterTimeoutError, "arbiter_timeout"),
    (AdapterTimeoutError, "timeout"),
    (asyncio.TimeoutError, "timeout"),
    (NetworkError, "network"),
    (ConnectionError, "network"),
    (SessionLostError, "session_closed"),
    (ActionFailedError, "action_failed"),
)

# Detail entries carrying the target's own error text; other details such as offered options are left out.
DIAGNOSTIC_DETAIL_KEYS = ("error", "reason", "detail")


@dataclass(frozen=True)
class FailureSignal:
    """What the adapter observed after an operation"""
    banner_text: str = ""
    last_error: str = ""
    error_type: Optional[str] = None
    response_status: Optional[int] = None

    @property
    def text(self) -> str:
        return " | ".join(part for part in (self.banner_text, self.last_error) if part)

    @property
    def has_error(self) -> bool:
        return bool(self.last_error or self.error_type or
                    (self.response_status is not None and self.response_status >= 400))

    @classmethod
    def from_exception(cls, error: BaseException, banner_text: str = "") -> "FailureSignal":
        error_type = "exception"
        for exc_type, name in EXCEPTION_ERROR_TYPES:
            if isinstance(error, exc_type):
                error_type = name
                break
        status = getattr(error, "status_code", None)
        message = getattr(error, "message", None)
        if message:
            details = getattr(error, "details", None) or {}
            extra = [str(details[key]) for key in DIAGNOSTIC_DETAIL_KEYS if details.get(key)]
            if extra:
                message = f"{message}: {'; '.join(extra)}"
        else:
            message = str(error) or error.__class__.__name__
        return cls(banner_text=banner_text, last_error=message, error_type=error_type,
                   response_status=status if isinstance(status, int) else None)


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the classification table"""
    kind: ErrorKind
    patterns: Tuple[str, ...] = ()
    statuses: Tuple[int, ...] = ()
    error_types: Tuple[str, ...] = ()
    _compiled: Tuple[Pattern, ...] = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self):
        compiled = tuple(re.compile(p, re.IGNORECASE) for p in self.patterns)
        object.__setattr__(self, "_compiled", compiled)

    def match(self, signal: FailureSignal) -> Optional[str]:
        """Return what matched, or None"""
        return self.match_error_type(signal) or self.match_evidence(signal)

    def match_error_type(self, signal: FailureSignal) -> Optional[str]:
        if signal.error_type and signal.error_type in self.error_types:
            return f"error_type={signal.error_type}"
        return None

    def match_evidence(self, signal: FailureSignal) -> Optional[str]:
        """Match on response status, then on banner and error text"""
        if signal.response_status is not None and signal.response_status in self.statuses:
            return f"status={signal.response_status}"
        text = signal.text
        if text:
            for pattern in self._compiled:
                if pattern.search(text):
                    return pattern.pattern
        return None

    def extended(self, patterns: Iterable[str]) -> "ClassificationRule":
        extra = tuple(p for p in patterns if p not in self.patterns)
        if not extra:
            return self
        return ClassificationRule(self.kind, self.patterns + extra, self.statuses, self.error_types)


DUPLICATE_PATTERNS = (
    r"already (exists|registered|linked)",
    r"duplicate",
    r"PJE-281",
    r"per[ií]odo ativo conflitante",
    r"j[aá] cadastrad",
    r"j[aá] existe",
    r"j[aá] vinculad",
    r"duplicad",
    "已存在",
    "已注册",
    "已被占用",
)

TRANSIENT_PATTERNS = (
    r"gateway time-?out",
    r"\b504\b",
    r"ERR_HTTP_RESPONSE_CODE_FAILURE",
    r"ECONNRESET",
    r"ECONNREFUSED",
    r"ETIMEDOUT",
    r"socket hang up",
    r"fetch failed",
    r"connection (closed|reset|refused|terminated)",
    r"navigation timeout",
    r"protocol error",
    r"target (page, context or browser has been )?closed",
    r"browser has been closed",
    r"session (closed|expired|invalid)",
    r"context disposed",
    r"page crashed",
    r"service unavailable",
    r"系统繁忙",
    r"网络错误",
)

FATAL_PATTERNS = (
    r"required control .* not found",
    r"no matching option",
    r"missing required attribute",
)

SUCCESS_PATTERNS = (
    r"success",
    r"saved",
    r"registered",
    r"sucesso",
    r"salvo",
    r"gravado",
    r"vinculado com sucesso",
    "注册成功",
)

DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(ErrorKind.DUPLICATE, patterns=DUPLICATE_PATTERNS),
    ClassificationRule(
        ErrorKind.TRANSIENT,
        patterns=TRANSIENT_PATTERNS,
        statuses=(408, 429, 500, 502, 503, 504),
        error_types=("timeout", "arbiter_timeout", "network", "session_closed"),
    ),
    ClassificationRule(
        ErrorKind.FATAL,
        patterns=FATAL_PATTERNS,
        error_types=("strategies_exhausted", "no_match"),
    ),
)


class ErrorClassifier:
    """
    Pure classifier over failure signals

    Same input, same output: no state is kept between calls.
    """

    def __init__(self, rules: Optional[Sequence[ClassificationRule]] = None,
                 success_patterns: Sequence[str] = SUCCESS_PATTERNS):
        self.rules: Tuple[ClassificationRule, ...] = tuple(rules) if rules is not None else DEFAULT_RULES
        self._success = tuple(re.compile(p, re.IGNORECASE) for p in success_patterns)

    @classmethod
    def from_config(cls, config) -> "ErrorClassifier":
        """Build a classifier whose default tables are extended by a ClassifierConfig"""
        extra = {
            ErrorKind.DUPLICATE: config.duplicate_patterns,
            ErrorKind.TRANSIENT: config.transient_patterns,
            ErrorKind.FATAL: config.fatal_patterns,
        }
        rules = [rule.extended(extra.get(rule.kind, ())) for rule in DEFAULT_RULES]
        success = SUCCESS_PATTERNS + tuple(p for p in config.success_patterns if p not in SUCCESS_PATTERNS)
        return cls(rules, success)

    def classify(self, signal: FailureSignal) -> ErrorClassification:
        diagnostic = signal.text or (f"HTTP {signal.response_status}" if signal.response_status else "no diagnostic")
        for rule in self.rules:
            matched = rule.match_error_type(signal)
            if matched is not None:
                return ErrorClassification(rule.kind, diagnostic, matched)
        for rule in self.rules:
            matched = rule.match_evidence(signal)
            if matched is not None:
                return ErrorClassification(rule.kind, diagnostic, matched)
        return ErrorClassification(ErrorKind.UNKNOWN, diagnostic)

    def is_success(self, signal: FailureSignal) -> bool:
        """True when the post-submit signal carries no failure evidence"""
        if signal.has_error:
            return False
        if not signal.banner_text:
            return True
        if any(rule.match(signal) is not None for rule in self.rules):
            return False
        return any(p.search(signal.banner_text) for p in self._success)
