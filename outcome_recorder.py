"""
📊 Outcome Recorder
===================
Shared, lock-protected aggregator for per-request outcomes produced by the
virtual traffic population, the stress load generator and real users.

Latency statistics are streamed (Welford running mean/variance plus a
fixed-size reservoir for percentiles) so a long-running process never holds
every sample in memory.
"""

import math
import random
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any


class OutcomeKind(Enum):
    SUCCESS = "success"
    ERROR = "error"


class OutcomeSource(Enum):
    TRAFFIC = "traffic"
    STRESS = "stress"
    REAL = "real"


@dataclass(frozen=True)
class OutcomeSample:
    """A single recorded outcome. Never mutated after recording."""
    timestamp: float
    kind: OutcomeKind
    latency_ms: float
    source: OutcomeSource
    status_code: int = 0
    endpoint: str = ""

    @property
    def is_error(self) -> bool:
        return self.kind is OutcomeKind.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "latencyMs": round(self.latency_ms, 2),
            "source": self.source.value,
            "statusCode": self.status_code,
            "endpoint": self.endpoint,
        }


# =============================================================================
# STREAMING STATISTICS
# =============================================================================

class ReservoirSampler:
    """
    Reservoir sampling for memory-efficient percentile estimation.
    Keeps a fixed-size sample that represents the whole stream.
    """
    def __init__(self, size: int = 5000, rng: Optional[random.Random] = None):
        self.size = size
        self.reservoir: List[float] = []
        self.count = 0
        self._rng = rng or random.Random()

    def add(self, value: float):
        self.count += 1
        if len(self.reservoir) < self.size:
            self.reservoir.append(value)
            return
        j = self._rng.randint(0, self.count - 1)
        if j < self.size:
            self.reservoir[j] = value

    def percentile(self, p: float) -> float:
        if not self.reservoir:
            return 0
        ordered = sorted(self.reservoir)
        idx = int(len(ordered) * p / 100)
        return ordered[min(idx, len(ordered) - 1)]

    def clear(self):
        self.reservoir.clear()
        self.count = 0


@dataclass
class SourceStats:
    """Counters and latency stats for one outcome source (or one run)."""
    total: int = 0
    successes: int = 0
    errors: int = 0
    status_codes: Dict[int, int] = field(default_factory=lambda: defaultdict(int))
    sampler: ReservoirSampler = field(default_factory=ReservoirSampler)

    _mean: float = 0.0
    _m2: float = 0.0
    _min: float = float('inf')
    _max: float = float('-inf')

    def add(self, kind: OutcomeKind, latency_ms: float, status_code: int = 0):
        self.total += 1
        if kind is OutcomeKind.SUCCESS:
            self.successes += 1
        else:
            self.errors += 1
        if status_code:
            self.status_codes[status_code] += 1

        # Welford's online algorithm
        delta = latency_ms - self._mean
        self._mean += delta / self.total
        self._m2 += delta * (latency_ms - self._mean)
        self._min = min(self._min, latency_ms)
        self._max = max(self._max, latency_ms)
        self.sampler.add(latency_ms)

    @property
    def avg_latency(self) -> float:
        return self._mean if self.total else 0.0

    @property
    def latency_std_dev(self) -> float:
        if self.total < 2:
            return 0.0
        return math.sqrt(self._m2 / (self.total - 1))

    @property
    def min_latency(self) -> float:
        return self._min if self.total else 0.0

    @property
    def max_latency(self) -> float:
        return self._max if self.total else 0.0

    @property
    def success_rate(self) -> float:
        return (self.successes / self.total * 100) if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successes": self.successes,
            "errors": self.errors,
            "successRate": round(self.success_rate, 2),
            "latencyMs": {
                "average": round(self.avg_latency, 2),
                "stdDev": round(self.latency_std_dev, 2),
                "min": round(self.min_latency, 2),
                "max": round(self.max_latency, 2),
                "p50": round(self.sampler.percentile(50), 2),
                "p95": round(self.sampler.percentile(95), 2),
                "p99": round(self.sampler.percentile(99), 2),
            },
            "statusCodes": dict(sorted(self.status_codes.items())),
        }


# =============================================================================
# RECORDER
# =============================================================================

class OutcomeRecorder:
    """
    Thread-safe accumulator shared by all generators.

    Every mutation happens under one lock; `snapshot()` copies what it needs
    under the same lock, so a poller never observes a half-applied update.
    Counters only ever grow until `reset()`.
    """

    def __init__(self, recent_size: int = 200, clock=time.time):
        self._lock = threading.Lock()
        self._clock = clock
        self._by_source: Dict[OutcomeSource, SourceStats] = {s: SourceStats() for s in OutcomeSource}
        self._recent: deque = deque(maxlen=recent_size)
        self._started_at = clock()

    def record(
        self,
        source: OutcomeSource,
        kind: OutcomeKind,
        latency_ms: float,
        status_code: int = 0,
        endpoint: str = "",
    ) -> OutcomeSample:
        sample = OutcomeSample(
            timestamp=self._clock(),
            kind=kind,
            latency_ms=max(0.0, float(latency_ms)),
            source=source,
            status_code=status_code,
            endpoint=endpoint,
        )
        with self._lock:
            self._by_source[source].add(kind, sample.latency_ms, status_code)
            self._recent.append(sample)
        return sample

    def record_success(self, source: OutcomeSource, latency_ms: float, status_code: int = 200, endpoint: str = ""):
        return self.record(source, OutcomeKind.SUCCESS, latency_ms, status_code, endpoint)

    def record_error(self, source: OutcomeSource, latency_ms: float, status_code: int = 0, endpoint: str = ""):
        return self.record(source, OutcomeKind.ERROR, latency_ms, status_code, endpoint)

    def counts(self, source: Optional[OutcomeSource] = None) -> Dict[str, int]:
        with self._lock:
            sources = [source] if source else list(OutcomeSource)
            return {
                "total": sum(self._by_source[s].total for s in sources),
                "successes": sum(self._by_source[s].successes for s in sources),
                "errors": sum(self._by_source[s].errors for s in sources),
            }

    def recent(self, limit: int = 20) -> List[OutcomeSample]:
        with self._lock:
            return list(self._recent)[-limit:]

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            by_source = {s.value: stats.to_dict() for s, stats in self._by_source.items()}
            recent = [sample.to_dict() for sample in list(self._recent)[-10:]]
            started_at = self._started_at
        totals = {
            "total": sum(v["total"] for v in by_source.values()),
            "successes": sum(v["successes"] for v in by_source.values()),
            "errors": sum(v["errors"] for v in by_source.values()),
        }
        return {
            "since": started_at,
            "totals": totals,
            "bySource": by_source,
            "recent": recent,
        }

    def reset(self):
        with self._lock:
            self._by_source = {s: SourceStats() for s in OutcomeSource}
            self._recent.clear()
            self._started_at = self._clock()
