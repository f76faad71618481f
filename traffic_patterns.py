"""
🎨 Traffic Timing Patterns
==========================
Multiplier/variance profiles applied to the population target to simulate
traffic-intensity regimes.

    steady  exactly the target, spawn window shortened to hold it there
    normal  target ±20%, default spawn window
    peak    1.5x target, spawns come faster
    low     0.6x target, spawns come slower
    burst   30% of ticks spike to 2x with clustered spawns, otherwise a
            0.3x lull with long gaps
"""

import math
import random
from dataclasses import dataclass
from typing import Optional, Tuple

from workload_config import TrafficTiming


@dataclass(frozen=True)
class TimingProfile:
    """Static description of one timing pattern."""
    timing: TrafficTiming
    multiplier: float
    variance: float
    interval_scale: Tuple[float, float]
    spike_multiplier: float = 0.0
    spike_probability: float = 0.0
    spike_interval_scale: Tuple[float, float] = (1.0, 1.0)

    @property
    def peak_multiplier(self) -> float:
        return max(self.multiplier, self.spike_multiplier)


PROFILES = {
    TrafficTiming.STEADY: TimingProfile(TrafficTiming.STEADY, 1.0, 0.0, (0.5, 0.7)),
    TrafficTiming.NORMAL: TimingProfile(TrafficTiming.NORMAL, 1.0, 0.2, (1.0, 1.0)),
    TrafficTiming.PEAK: TimingProfile(TrafficTiming.PEAK, 1.5, 0.2, (0.3, 0.5)),
    TrafficTiming.LOW: TimingProfile(TrafficTiming.LOW, 0.6, 0.2, (2.0, 3.0)),
    TrafficTiming.BURST: TimingProfile(
        TrafficTiming.BURST, 0.3, 0.2, (4.0, 6.0),
        spike_multiplier=2.0, spike_probability=0.3, spike_interval_scale=(0.1, 0.2),
    ),
}


@dataclass(frozen=True)
class TargetWindow:
    """What one scheduling tick should aim for."""
    effective_target: int
    ceiling: int
    multiplier: float
    interval_scale: Tuple[float, float]
    clustered: bool = False

    def spawn_delay(self, base_range: Tuple[float, float], rng: Optional[random.Random] = None) -> float:
        """Seconds until the next spawn is allowed."""
        low, high = base_range
        lo_scale, hi_scale = self.interval_scale
        return (rng or random).uniform(low * lo_scale, high * hi_scale)


def profile_for(timing: TrafficTiming) -> TimingProfile:
    return PROFILES[TrafficTiming(timing)]


def population_ceiling(target_users: int, timing: TrafficTiming) -> int:
    """Hard cap: target x peak multiplier x (1 + variance), at least 1 for a non-zero target."""
    profile = profile_for(timing)
    if target_users <= 0:
        return 0
    return max(1, math.floor(target_users * profile.peak_multiplier * (1 + profile.variance) + 1e-9))


def resolve_target(target_users: int, timing: TrafficTiming, rng: Optional[random.Random] = None) -> TargetWindow:
    """Roll the timing pattern for one tick."""
    rng = rng or random
    profile = profile_for(timing)
    ceiling = population_ceiling(target_users, timing)

    multiplier = profile.multiplier
    interval_scale = profile.interval_scale
    clustered = False
    if profile.spike_probability and rng.random() < profile.spike_probability:
        multiplier = profile.spike_multiplier
        interval_scale = profile.spike_interval_scale
        clustered = True

    jitter = rng.uniform(-profile.variance, profile.variance) if profile.variance else 0.0
    effective = round(target_users * multiplier * (1 + jitter))
    effective = max(0, min(effective, ceiling))
    if target_users > 0 and effective == 0 and multiplier > 0:
        # a non-zero target never rounds down to an empty population
        effective = 1

    return TargetWindow(
        effective_target=effective,
        ceiling=ceiling,
        multiplier=multiplier,
        interval_scale=interval_scale,
        clustered=clustered,
    )
