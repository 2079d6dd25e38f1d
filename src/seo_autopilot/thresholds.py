"""
Decision Thresholds

Named, frozen threshold sets consulted by each decision family, the kill
switch, the learning loop, the lock manager and the rate limiter.  Values
come from ``AutopilotSettings``; the defaults below match the settings
defaults so the pure functions can be exercised without a settings object.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

# Expected CTR by rounded rank position (1-indexed).
CTR_BENCHMARK_BY_POSITION: Dict[int, float] = {
    1: 0.35,
    2: 0.25,
    3: 0.18,
    4: 0.12,
    5: 0.09,
    6: 0.07,
    7: 0.05,
    8: 0.04,
    9: 0.03,
    10: 0.025,
}
_BENCHMARK_BANDS: Tuple[Tuple[int, float], ...] = (
    (15, 0.02),
    (20, 0.015),
    (30, 0.01),
)
_BENCHMARK_BEYOND = 0.005


def ctr_benchmark(position: float) -> float:
    """Return the benchmark CTR for ``position`` (rounded half up)."""
    rounded = max(1, int(position + 0.5))
    if rounded in CTR_BENCHMARK_BY_POSITION:
        return CTR_BENCHMARK_BY_POSITION[rounded]
    for upper, value in _BENCHMARK_BANDS:
        if rounded <= upper:
            return value
    return _BENCHMARK_BEYOND


@dataclass(frozen=True)
class CreateThresholds:
    min_impressions: int = 100
    min_position: float = 8.0
    max_position: float = 30.0
    position_weight: float = 2.0
    ctr_weight: float = 1000.0
    allowed_services: Tuple[str, ...] = ("plumbing", "electrical")
    # Empty means every location is in scope.
    allowed_locations: Tuple[str, ...] = ()
    max_per_run: int = 5


@dataclass(frozen=True)
class RewriteThresholds:
    min_impressions: int = 200
    min_days_between_optimizations: float = 7.0
    max_per_run: int = 10


@dataclass(frozen=True)
class ExpandThresholds:
    min_position: float = 4.0
    max_position: float = 15.0
    min_clicks_trend: float = 0.10
    max_bounce_rate: float = 0.60
    min_days_between_optimizations: float = 7.0
    max_per_run: int = 5


@dataclass(frozen=True)
class FreezeThresholds:
    min_impressions: int = 200
    max_position: float = 10.0
    # CTR must beat the positional benchmark by this fraction.
    winning_margin: float = 0.25
    max_per_run: int = 20


@dataclass(frozen=True)
class DecisionThresholds:
    create: CreateThresholds = field(default_factory=CreateThresholds)
    rewrite: RewriteThresholds = field(default_factory=RewriteThresholds)
    expand: ExpandThresholds = field(default_factory=ExpandThresholds)
    freeze: FreezeThresholds = field(default_factory=FreezeThresholds)


@dataclass(frozen=True)
class KillSwitchThresholds:
    enabled: bool = True
    max_click_drop: float = 0.20
    max_submission_error_rate: float = 0.50
    min_submission_attempts: int = 5
    suspicious_impressions_rise: float = 0.10
    suspicious_click_drop: float = 0.10
    window_days: int = 7


@dataclass(frozen=True)
class LearningThresholds:
    window_days: int = 7
    ctr_delta: float = 0.01
    high_ctr: float = 0.05
    min_pattern_samples: int = 2
    max_top_performers: int = 10
    max_targets_per_pattern: int = 5
    max_clones_per_run: int = 10
    expansion_locations: Tuple[str, ...] = (
        "los-angeles", "san-francisco", "san-diego", "sacramento", "san-jose",
        "fresno", "long-beach", "oakland", "bakersfield", "anaheim",
        "santa-ana", "riverside", "stockton", "irvine", "chula-vista",
        "fremont", "santa-clarita", "modesto", "fontana", "moreno-valley",
    )


@dataclass(frozen=True)
class TuningThresholds:
    """Current values the tuning pass compares observed performance against."""

    low_ctr: float = 0.02
    high_ctr: float = 0.05
    min_impressions_create: int = 100
    min_sample_size: int = 20


@dataclass(frozen=True)
class RateLimit:
    per_hour: Optional[int] = None
    per_day: Optional[int] = None
