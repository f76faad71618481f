#!/usr/bin/env python3
"""
⚙️ Workload Configuration
=========================
Validated, immutable configuration for the virtual traffic population, the
stress load generator and the population loop tunables, plus the shared
config store read on every scheduling tick.

Config files are plain JSON:

    {
        "baseUrl": "http://localhost:3001",
        "workload": {"enabled": true, "targetConcurrentUsers": 5,
                     "journeyPattern": "mixed", "trafficTiming": "steady"},
        "stressTest": {"durationSeconds": 30, "requestsPerSecond": 5,
                       "concurrentRequests": 3, "errorRatePercent": 20},
        "checkoutSimulator": {"orderCount": 10, "delayBetweenOrdersMs": 2000},
        "traffic": {"tickSeconds": 2.0, "bounceRate": 0.15}
    }
"""

import json
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, Tuple

from workload_errors import ConfigValidationError


# =============================================================================
# ENUMS AND LIMITS
# =============================================================================

class JourneyPattern(Enum):
    """Archetype mix used when spawning virtual users."""
    MIXED = "mixed"
    BUYERS = "buyers"
    BROWSERS = "browsers"
    RESEARCHERS = "researchers"


class TrafficTiming(Enum):
    """Traffic-intensity regime applied to the population target."""
    STEADY = "steady"
    NORMAL = "normal"
    PEAK = "peak"
    LOW = "low"
    BURST = "burst"


MAX_CONCURRENT_USERS = 100

STRESS_DURATION_RANGE = (10, 300)
STRESS_RPS_RANGE = (1, 20)
STRESS_CONCURRENCY_RANGE = (1, 50)
STRESS_ERROR_RATE_RANGE = (0, 50)

CHECKOUT_ORDER_COUNT_RANGE = (1, 100)
CHECKOUT_DELAY_MS_RANGE = (100, 60000)
CHECKOUT_ORDER_TYPES = ("random", "delivery", "pickup")

DEFAULT_BASE_URL = "http://localhost:3001"


def _snake(key: str) -> str:
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_snake(k): v for k, v in data.items()}


def _check_int(name: str, value: Any, bounds: Tuple[int, int]) -> None:
    # bool is an int subclass; a JSON "true" is never a valid count
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigValidationError(name, value, "must be an integer")
    low, high = bounds
    if not low <= value <= high:
        raise ConfigValidationError(name, value, f"must be within [{low}, {high}]")


def _check_enum(name: str, value: Any, enum_cls):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigValidationError(name, value, f"must be one of: {allowed}") from None


# =============================================================================
# CONFIG DATACLASSES
# =============================================================================

@dataclass(frozen=True)
class WorkloadConfig:
    """Virtual traffic population settings.

    A target of 0 (or enabled=False) stops spawning; running journeys drain.
    """
    enabled: bool = False
    target_concurrent_users: int = 5
    journey_pattern: JourneyPattern = JourneyPattern.MIXED
    traffic_timing: TrafficTiming = TrafficTiming.STEADY

    def __post_init__(self):
        if not isinstance(self.enabled, bool):
            raise ConfigValidationError("enabled", self.enabled, "must be a boolean")
        _check_int("targetConcurrentUsers", self.target_concurrent_users, (0, MAX_CONCURRENT_USERS))
        object.__setattr__(self, "journey_pattern", _check_enum("journeyPattern", self.journey_pattern, JourneyPattern))
        object.__setattr__(self, "traffic_timing", _check_enum("trafficTiming", self.traffic_timing, TrafficTiming))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkloadConfig":
        values = _normalize_keys(data)
        unknown = set(values) - {"enabled", "target_concurrent_users", "journey_pattern", "traffic_timing"}
        if unknown:
            raise ConfigValidationError("workload", sorted(unknown), "unknown keys")
        return cls(**values)

    def merged(self, changes: Dict[str, Any]) -> "WorkloadConfig":
        """Return a copy with a partial camelCase/snake_case update applied."""
        merged = self.to_dict()
        merged.update({_camel(_snake(k)): v for k, v in changes.items()})
        return WorkloadConfig.from_dict(merged)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "targetConcurrentUsers": self.target_concurrent_users,
            "journeyPattern": self.journey_pattern.value,
            "trafficTiming": self.traffic_timing.value,
        }


@dataclass(frozen=True)
class StressTestConfig:
    """One stress run. Immutable for the lifetime of the run."""
    duration_seconds: int = 30
    requests_per_second: int = 5
    concurrent_requests: int = 3
    error_rate_percent: int = 20

    def __post_init__(self):
        _check_int("durationSeconds", self.duration_seconds, STRESS_DURATION_RANGE)
        _check_int("requestsPerSecond", self.requests_per_second, STRESS_RPS_RANGE)
        _check_int("concurrentRequests", self.concurrent_requests, STRESS_CONCURRENCY_RANGE)
        _check_int("errorRatePercent", self.error_rate_percent, STRESS_ERROR_RATE_RANGE)

    @property
    def tick_interval(self) -> float:
        """Seconds between ticks: 1000ms / requestsPerSecond."""
        return 1.0 / self.requests_per_second

    @property
    def expected_requests(self) -> int:
        return self.duration_seconds * self.requests_per_second * self.concurrent_requests

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StressTestConfig":
        aliases = {"duration": "duration_seconds", "rps": "requests_per_second",
                   "concurrent": "concurrent_requests", "error_rate": "error_rate_percent"}
        values = {aliases.get(k, k): v for k, v in _normalize_keys(data).items()}
        unknown = set(values) - {f for f in cls.__dataclass_fields__}
        if unknown:
            raise ConfigValidationError("stressTest", sorted(unknown), "unknown keys")
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "durationSeconds": self.duration_seconds,
            "requestsPerSecond": self.requests_per_second,
            "concurrentRequests": self.concurrent_requests,
            "errorRatePercent": self.error_rate_percent,
        }


@dataclass(frozen=True)
class CheckoutSimulatorConfig:
    """A bounded batch of server-side checkout orders."""
    order_count: int = 10
    delay_between_orders_ms: int = 2000
    order_type: str = "random"

    def __post_init__(self):
        _check_int("orderCount", self.order_count, CHECKOUT_ORDER_COUNT_RANGE)
        _check_int("delayBetweenOrdersMs", self.delay_between_orders_ms, CHECKOUT_DELAY_MS_RANGE)
        if self.order_type not in CHECKOUT_ORDER_TYPES:
            raise ConfigValidationError(
                "orderType", self.order_type, f"must be one of: {', '.join(CHECKOUT_ORDER_TYPES)}",
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckoutSimulatorConfig":
        aliases = {"orders": "order_count", "delay_ms": "delay_between_orders_ms",
                   "delay_between_orders": "delay_between_orders_ms"}
        values = {aliases.get(k, k): v for k, v in _normalize_keys(data).items()}
        unknown = set(values) - {f for f in cls.__dataclass_fields__}
        if unknown:
            raise ConfigValidationError("checkoutSimulator", sorted(unknown), "unknown keys")
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderCount": self.order_count,
            "delayBetweenOrdersMs": self.delay_between_orders_ms,
            "orderType": self.order_type,
        }


@dataclass(frozen=True)
class TrafficSettings:
    """Population loop tunables that operators rarely touch."""
    tick_seconds: float = 2.0
    spawn_interval_range: Tuple[float, float] = (30.0, 120.0)
    ramp_stagger_seconds: float = 0.5
    replacement_delay_seconds: float = 1.0
    bounce_rate: float = 0.15
    think_time_scale: float = 1.0
    recent_durations_kept: int = 100
    time_scale: float = 1.0

    def __post_init__(self):
        if self.tick_seconds <= 0:
            raise ConfigValidationError("tickSeconds", self.tick_seconds, "must be positive")
        low, high = self.spawn_interval_range
        if low <= 0 or high < low:
            raise ConfigValidationError("spawnIntervalRange", self.spawn_interval_range, "must be 0 < min <= max")
        if not 0.0 <= self.bounce_rate <= 1.0:
            raise ConfigValidationError("bounceRate", self.bounce_rate, "must be within [0, 1]")
        if self.think_time_scale < 0 or self.time_scale <= 0:
            raise ConfigValidationError("timeScale", self.time_scale, "must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrafficSettings":
        values = _normalize_keys(data)
        if "spawn_interval_range" in values:
            values["spawn_interval_range"] = tuple(values["spawn_interval_range"])
        return cls(**values)


# =============================================================================
# CONFIG STORE
# =============================================================================

class ConfigStore:
    """
    Process-wide holder of the current WorkloadConfig.

    Writes replace the whole (immutable) config under a lock, so a reader on
    a scheduling tick always sees a consistent snapshot. Last writer wins.
    """

    def __init__(self, initial: Optional[WorkloadConfig] = None):
        self._lock = threading.Lock()
        self._config = initial or WorkloadConfig()
        self._version = 0

    def get(self) -> WorkloadConfig:
        with self._lock:
            return self._config

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def set(self, config: WorkloadConfig) -> WorkloadConfig:
        if not isinstance(config, WorkloadConfig):
            raise ConfigValidationError("workload", type(config).__name__, "must be a WorkloadConfig")
        with self._lock:
            previous = self._config
            self._config = config
            self._version += 1
        return previous


@dataclass
class EngineConfig:
    """Everything a config file may carry."""
    base_url: str = DEFAULT_BASE_URL
    workload: WorkloadConfig = field(default_factory=WorkloadConfig)
    stress_test: Optional[StressTestConfig] = None
    checkout_simulator: Optional[CheckoutSimulatorConfig] = None
    traffic: TrafficSettings = field(default_factory=TrafficSettings)


def load_engine_config(path: str) -> EngineConfig:
    """Read a JSON config file. Missing sections fall back to defaults."""
    raw = json.loads(Path(path).read_text())
    if not isinstance(raw, dict):
        raise ConfigValidationError("config", type(raw).__name__, "top level must be an object")

    config = EngineConfig(base_url=raw.get("baseUrl", DEFAULT_BASE_URL))
    if "workload" in raw:
        config.workload = WorkloadConfig.from_dict(raw["workload"])
    if "stressTest" in raw:
        config.stress_test = StressTestConfig.from_dict(raw["stressTest"])
    if "checkoutSimulator" in raw:
        config.checkout_simulator = CheckoutSimulatorConfig.from_dict(raw["checkoutSimulator"])
    if "traffic" in raw:
        config.traffic = TrafficSettings.from_dict(raw["traffic"])
    return config
