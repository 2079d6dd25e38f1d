"""
Weekly learning loop

Compares two adjacent windows of daily signal snapshots per target,
extracts service-level winning patterns that clear a minimum sample size,
and turns them into CLONE decisions for uncovered locations.  The clone
cap bounds how much the loop can feed back into future runs.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from .config_env import ActionType
from .models import (
    Decision,
    EvaluationReport,
    ExistingState,
    PagePerformance,
    Pattern,
    SignalRecord,
    make_key,
    slugify,
)
from .thresholds import LearningThresholds

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400.0


def _snapshot_records(entry: Mapping[str, Any]) -> List[SignalRecord]:
    records = []
    for row in entry.get("signals") or []:
        try:
            records.append(SignalRecord.from_row(row))
        except (TypeError, ValueError):
            continue
    return records


def evaluate(
    entries: Iterable[Mapping[str, Any]],
    *,
    now: float,
    thresholds: LearningThresholds = LearningThresholds(),
) -> EvaluationReport:
    """Classify every target seen in the current window as winner/loser/stable."""
    window_s = thresholds.window_days * _SECONDS_PER_DAY
    current_start = now - window_s
    previous_start = now - 2 * window_s

    pages: Dict[str, PagePerformance] = {}
    for entry in entries:
        try:
            ts = float(entry.get("ts", 0.0))
        except (TypeError, ValueError):
            continue
        if ts <= previous_start or ts > now:
            continue
        in_current = ts > current_start
        for record in _snapshot_records(entry):
            perf = pages.get(record.key)
            if perf is None:
                perf = pages[record.key] = PagePerformance(record.service, record.location)
            (perf.current if in_current else perf.previous).add(record)

    pages = {key: perf for key, perf in sorted(pages.items()) if perf.current.count}

    report = EvaluationReport(pages=pages)
    total_delta = 0.0
    for perf in pages.values():
        # No previous window means no measurable change.
        perf.ctr_delta = perf.current.ctr - perf.previous.ctr if perf.previous.count else 0.0
        if perf.ctr_delta > thresholds.ctr_delta:
            perf.status = "winner"
            report.winners += 1
        elif perf.ctr_delta < -thresholds.ctr_delta:
            perf.status = "loser"
            report.losers += 1
        else:
            perf.status = "stable"
            report.stable += 1
        total_delta += perf.ctr_delta

    report.avg_ctr_change = total_delta / len(pages) if pages else 0.0
    winners = [p for p in pages.values() if p.status == "winner" and p.current.ctr >= thresholds.high_ctr]
    winners.sort(key=lambda p: (-p.current.ctr, p.key))
    report.top_performers = winners[: thresholds.max_top_performers]
    losers = [p for p in pages.values() if p.status == "loser"]
    losers.sort(key=lambda p: (p.ctr_delta, p.key))
    report.underperformers = losers

    logger.info(
        "Evaluated %d pages: winners=%d losers=%d stable=%d avg_ctr_change=%+.4f",
        report.total_pages,
        report.winners,
        report.losers,
        report.stable,
        report.avg_ctr_change,
    )
    return report


def extract_patterns(
    report: EvaluationReport,
    existing: ExistingState,
    thresholds: LearningThresholds = LearningThresholds(),
) -> List[Pattern]:
    """Group top performers by service; keep groups with enough samples."""
    by_service: Dict[str, List[PagePerformance]] = {}
    for perf in report.top_performers:
        by_service.setdefault(perf.service, []).append(perf)

    patterns: List[Pattern] = []
    for service, group in sorted(by_service.items()):
        if len(group) < thresholds.min_pattern_samples:
            continue
        avg_ctr = sum(p.current.ctr for p in group) / len(group)
        if avg_ctr < thresholds.high_ctr:
            continue
        covered = set(existing.locations_for(service))
        covered.update(slugify(p.location) for p in group)
        targets = [
            loc for loc in thresholds.expansion_locations if slugify(loc) not in covered
        ][: thresholds.max_targets_per_pattern]
        patterns.append(
            Pattern(
                key=f"{service}-service",
                service=service,
                avg_ctr=avg_ctr,
                avg_position=sum(p.current.avg_position for p in group) / len(group),
                total_impressions=sum(p.current.impressions for p in group),
                sample_size=len(group),
                target_locations=tuple(targets),
            )
        )

    patterns.sort(key=lambda p: (-p.avg_ctr, p.key))
    logger.info("Extracted %d winning patterns", len(patterns))
    return patterns


def decide_clones(
    patterns: Sequence[Pattern],
    existing: ExistingState,
    cap: int,
) -> List[Decision]:
    """CLONE decisions for uncovered locations, never more than ``cap``."""
    if cap <= 0:
        return []
    covered = set(existing.keys)
    ordered = sorted(patterns, key=lambda p: (-p.avg_ctr, p.key))
    decisions: List[Decision] = []
    for pattern in ordered:
        for location in pattern.target_locations:
            key = make_key(pattern.service, location)
            if key in covered:
                continue
            covered.add(key)
            decisions.append(
                Decision(
                    action_type=ActionType.CLONE,
                    target_key=key,
                    reason=(
                        f"Replicate {pattern.key}: avg CTR {pattern.avg_ctr:.1%} "
                        f"across {pattern.sample_size} pages"
                    ),
                    priority=pattern.avg_ctr * 1000.0,
                    payload={
                        "pattern": pattern.key,
                        "avg_ctr": round(pattern.avg_ctr, 6),
                        "sample_size": pattern.sample_size,
                    },
                )
            )
            if len(decisions) >= cap:
                logger.info("Clone cap reached (%d)", cap)
                return decisions
    return decisions
