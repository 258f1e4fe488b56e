"""
Engine configuration

All retry budgets, backoff constants and TTLs live here as plain values so a
deployment can tune them from one JSON file. Missing keys fall back to the
defaults below.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .exceptions import ConfigurationError
from .models.form_plan import ControlCatalog, FormStep


@dataclass
class CacheConfig:
    capacity: int = 200
    ttl_seconds: float = 600.0


@dataclass
class BackoffConfig:
    base_delay_ms: float = 10_000
    multiplier: float = 1.3
    max_backoff_ms: float = 120_000
    check_interval_ms: float = 20_000
    max_wait_ms: float = 600_000


@dataclass
class ArbiterConfig:
    max_concurrent_operations: int = 1
    slot_timeout_seconds: float = 300.0


@dataclass
class RetryConfig:
    retry_budget: int = 3
    unknown_retry_budget: int = 2
    retry_base_delay_ms: float = 500
    retry_multiplier: float = 2.0
    retry_max_delay_ms: float = 10_000


@dataclass
class TimeoutConfig:
    action_timeout_seconds: float = 30.0
    item_timeout_seconds: float = 300.0
    settle_ms: float = 1_000
    signal_wait_ms: float = 1_500


@dataclass
class ClassifierConfig:
    duplicate_patterns: List[str] = field(default_factory=list)
    transient_patterns: List[str] = field(default_factory=list)
    fatal_patterns: List[str] = field(default_factory=list)
    success_patterns: List[str] = field(default_factory=list)


@dataclass
class EngineConfig:
    """Complete engine configuration"""
    cache: CacheConfig = field(default_factory=CacheConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    arbiter: ArbiterConfig = field(default_factory=ArbiterConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    controls: Dict[str, List[str]] = field(default_factory=dict)
    steps: Optional[List[FormStep]] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ConfigurationError on values the engine cannot honour"""
        if self.cache.capacity < 1:
            raise ConfigurationError("cache.capacity", "must be at least 1")
        if self.cache.ttl_seconds <= 0:
            raise ConfigurationError("cache.ttl_seconds", "must be positive")
        if self.backoff.base_delay_ms < 0:
            raise ConfigurationError("backoff.base_delay_ms", "must not be negative")
        if self.backoff.multiplier < 1.0:
            raise ConfigurationError("backoff.multiplier", "must be >= 1.0")
        if self.backoff.max_backoff_ms < self.backoff.base_delay_ms:
            raise ConfigurationError("backoff.max_backoff_ms", "must be >= base_delay_ms")
        if self.arbiter.max_concurrent_operations < 1:
            raise ConfigurationError("arbiter.max_concurrent_operations", "must be at least 1")
        if self.arbiter.slot_timeout_seconds <= 0:
            raise ConfigurationError("arbiter.slot_timeout_seconds", "must be positive")
        if self.retry.retry_budget < 1:
            raise ConfigurationError("retry.retry_budget", "must be at least 1")
        if self.retry.unknown_retry_budget < 1:
            raise ConfigurationError("retry.unknown_retry_budget", "must be at least 1")
        if self.timeouts.action_timeout_seconds <= 0 or self.timeouts.item_timeout_seconds <= 0:
            raise ConfigurationError("timeouts", "timeouts must be positive")

    def build_catalog(self) -> ControlCatalog:
        return ControlCatalog(self.controls, self.steps)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        """Build a config from a (possibly partial) dictionary"""
        data = data or {}
        try:
            steps = data.get("steps")
            return cls(
                cache=CacheConfig(**data.get("cache", {})),
                backoff=BackoffConfig(**data.get("backoff", {})),
                arbiter=ArbiterConfig(**data.get("arbiter", {})),
                retry=RetryConfig(**data.get("retry", {})),
                timeouts=TimeoutConfig(**data.get("timeouts", {})),
                classifier=ClassifierConfig(**data.get("classifier", {})),
                controls={k: list(v) for k, v in data.get("controls", {}).items()},
                steps=[FormStep.from_dict(s) for s in steps] if steps is not None else None,
            )
        except TypeError as e:
            raise ConfigurationError("config", f"unknown or malformed key ({e})") from e
        except (KeyError, ValueError) as e:
            raise ConfigurationError("steps", str(e)) from e


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """Load engine configuration from a JSON file; no path means defaults"""
    if path is None:
        return EngineConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(str(config_path), "file does not exist")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(str(config_path), f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(str(config_path), "top level must be an object")
    return EngineConfig.from_dict(data)
