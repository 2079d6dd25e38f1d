from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Tuple

from .errors import KillSwitchTripped
from .thresholds import KillSwitchThresholds

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class KillSwitchMetrics:
    """Aggregate outcomes for a recent window versus the window before it."""

    recent_clicks: float = 0.0
    previous_clicks: float = 0.0
    recent_impressions: float = 0.0
    previous_impressions: float = 0.0
    submission_attempts: int = 0
    submission_errors: int = 0

    @property
    def clicks_drop_percentage(self) -> float:
        if self.previous_clicks <= 0:
            return 0.0
        return (self.previous_clicks - self.recent_clicks) / self.previous_clicks

    @property
    def impressions_change(self) -> float:
        if self.previous_impressions <= 0:
            return 0.0
        return (self.recent_impressions - self.previous_impressions) / self.previous_impressions

    @property
    def submission_error_rate(self) -> float:
        if self.submission_attempts <= 0:
            return 0.0
        return self.submission_errors / self.submission_attempts


@dataclass(frozen=True)
class KillSwitchState:
    enabled: bool
    tripped: bool
    reasons: Tuple[str, ...]
    metrics: Optional[KillSwitchMetrics]

    def to_dict(self) -> dict:
        metrics = self.metrics
        return {
            "enabled": self.enabled,
            "tripped": self.tripped,
            "reasons": list(self.reasons),
            "clicks_drop_percentage": metrics.clicks_drop_percentage if metrics else None,
            "impressions_change": metrics.impressions_change if metrics else None,
            "submission_error_rate": metrics.submission_error_rate if metrics else None,
        }


class KillSwitch:
    """Pre-flight gate; passes open when there is no history."""

    def __init__(self, thresholds: KillSwitchThresholds = KillSwitchThresholds()) -> None:
        self._t = thresholds

    def evaluate(self, metrics: Optional[KillSwitchMetrics]) -> KillSwitchState:
        if not self._t.enabled or metrics is None:
            return KillSwitchState(enabled=self._t.enabled, tripped=False, reasons=(), metrics=metrics)

        reasons = []
        drop = metrics.clicks_drop_percentage
        if metrics.previous_clicks > 0 and drop >= self._t.max_click_drop:
            reasons.append(
                f"Clicks dropped {drop * 100:.1f}% (threshold {self._t.max_click_drop * 100:.1f}%)"
            )

        if (
            metrics.submission_attempts >= self._t.min_submission_attempts
            and metrics.submission_error_rate >= self._t.max_submission_error_rate
        ):
            reasons.append(
                f"Submission error rate {metrics.submission_error_rate * 100:.1f}% "
                f"({metrics.submission_errors}/{metrics.submission_attempts}) "
                f"exceeds {self._t.max_submission_error_rate * 100:.1f}%"
            )

        rise = metrics.impressions_change
        if (
            metrics.previous_clicks > 0
            and rise >= self._t.suspicious_impressions_rise
            and drop >= self._t.suspicious_click_drop
        ):
            reasons.append(
                f"Impressions up {rise * 100:.1f}% while clicks down {drop * 100:.1f}%"
            )

        return KillSwitchState(
            enabled=True,
            tripped=bool(reasons),
            reasons=tuple(reasons),
            metrics=metrics,
        )


def check_kill_switch(
    metrics: Optional[KillSwitchMetrics],
    thresholds: KillSwitchThresholds = KillSwitchThresholds(),
) -> KillSwitchState:
    """Raise ``KillSwitchTripped`` when any danger threshold is crossed."""
    state = KillSwitch(thresholds).evaluate(metrics)
    if state.tripped:
        message = "KILL SWITCH TRIPPED: " + "; ".join(state.reasons)
        logger.error(message)
        raise KillSwitchTripped(message, state=state)
    if metrics is None:
        logger.info("Kill switch: no history yet, passing open")
    else:
        logger.info(
            "Kill switch passed: click_drop=%.3f impressions_change=%.3f submission_error_rate=%.3f",
            metrics.clicks_drop_percentage,
            metrics.impressions_change,
            metrics.submission_error_rate,
        )
    return state


def _avg(values: list) -> float:
    return sum(values) / len(values) if values else 0.0


def metrics_from_audit(
    entries: Iterable[Mapping[str, Any]],
    *,
    now: float,
    window_days: int = 7,
) -> Optional[KillSwitchMetrics]:
    """Derive metrics from daily audit entries (``ts``, ``totals``, ``submissions``).

    Traffic is averaged per run so uneven run counts do not look like drops.
    Aborted and ingestion-degraded entries carry no usable totals and are skipped.
    Returns ``None`` when neither window has any entry.
    """
    window_s = window_days * _SECONDS_PER_DAY
    recent_start = now - window_s
    previous_start = now - 2 * window_s

    recent_clicks, previous_clicks = [], []
    recent_impr, previous_impr = [], []
    attempts = errors = 0
    seen = False
    for entry in entries:
        try:
            ts = float(entry.get("ts", 0.0))
        except (TypeError, ValueError):
            continue
        if ts <= previous_start or ts > now:
            continue
        seen = True
        if ts > recent_start:
            submissions = entry.get("submissions") or {}
            attempts += int(submissions.get("attempted", 0) or 0)
            errors += int(submissions.get("failed", 0) or 0)
        totals = entry.get("totals")
        if entry.get("ingestion_degraded") or not isinstance(totals, Mapping):
            continue
        clicks = float(totals.get("clicks", 0) or 0)
        impressions = float(totals.get("impressions", 0) or 0)
        if ts > recent_start:
            recent_clicks.append(clicks)
            recent_impr.append(impressions)
        else:
            previous_clicks.append(clicks)
            previous_impr.append(impressions)

    if not seen:
        return None
    if not recent_clicks or not previous_clicks:
        # One-sided history: traffic comparison is undefined.
        return KillSwitchMetrics(submission_attempts=attempts, submission_errors=errors)
    return KillSwitchMetrics(
        recent_clicks=_avg(recent_clicks),
        previous_clicks=_avg(previous_clicks),
        recent_impressions=_avg(recent_impr),
        previous_impressions=_avg(previous_impr),
        submission_attempts=attempts,
        submission_errors=errors,
    )
