"""
Threshold tuning (analyze-only)

Reads recent search-performance records and suggests CTR, position-range
and impression-minimum adjustments.  Nothing is applied; the report is
written to the audit log for a human to act on.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from .models import SignalRecord
from .storage import iso_utc
from .thresholds import TuningThresholds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recommendation:
    type: str
    threshold: str
    current_value: Any
    recommended_value: Any
    reason: str
    impact: str
    confidence: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "threshold": self.threshold,
            "current_value": self.current_value,
            "recommended_value": self.recommended_value,
            "reason": self.reason,
            "impact": self.impact,
            "confidence": self.confidence,
        }


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def analyze_ctr_thresholds(
    records: Sequence[SignalRecord],
    thresholds: TuningThresholds = TuningThresholds(),
) -> List[Recommendation]:
    if not records:
        return []
    ctrs = sorted(r.ctr for r in records)
    avg_ctr = _mean(ctrs)
    logger.info("CTR analysis: avg=%.2f%% median=%.2f%%", avg_ctr * 100, ctrs[len(ctrs) // 2] * 100)

    recommendations: List[Recommendation] = []
    if avg_ctr < thresholds.low_ctr * 0.8:
        recommendations.append(
            Recommendation(
                type="CTR_THRESHOLD",
                threshold="LOW_CTR_THRESHOLD",
                current_value=thresholds.low_ctr,
                recommended_value=round(avg_ctr * 0.8, 3),
                reason=(
                    f"Average CTR ({avg_ctr:.2%}) is significantly below the current "
                    f"low threshold ({thresholds.low_ctr:.2%})"
                ),
                impact="More pages would be flagged for meta rewrite",
                confidence="MEDIUM",
            )
        )

    top = ctrs[int(len(ctrs) * 0.9):]
    avg_top = _mean(top)
    if avg_top > thresholds.high_ctr * 1.2:
        recommendations.append(
            Recommendation(
                type="CTR_THRESHOLD",
                threshold="HIGH_CTR_THRESHOLD",
                current_value=thresholds.high_ctr,
                recommended_value=round(avg_top * 0.9, 3),
                reason=(
                    f"Top performers average {avg_top:.2%} CTR, well above the current "
                    f"high threshold ({thresholds.high_ctr:.2%})"
                ),
                impact="Freeze protection applied to more high-performing pages",
                confidence="HIGH",
            )
        )
    return recommendations


def position_buckets(records: Sequence[SignalRecord]) -> Dict[str, List[SignalRecord]]:
    buckets: Dict[str, List[SignalRecord]] = {
        "1-3": [],
        "4-5": [],
        "6-10": [],
        "11-20": [],
        ">20": [],
    }
    for record in records:
        if record.position <= 3:
            buckets["1-3"].append(record)
        elif record.position <= 5:
            buckets["4-5"].append(record)
        elif record.position <= 10:
            buckets["6-10"].append(record)
        elif record.position <= 20:
            buckets["11-20"].append(record)
        else:
            buckets[">20"].append(record)
    return buckets


def analyze_position_ranges(
    records: Sequence[SignalRecord],
    thresholds: TuningThresholds = TuningThresholds(),
) -> List[Recommendation]:
    buckets = position_buckets(records)
    logger.info(
        "Position distribution: %s",
        " ".join(f"{name}={len(items)}" for name, items in buckets.items()),
    )
    page_one_tail = buckets["6-10"]
    tail_ctr = _mean([r.ctr for r in page_one_tail])
    if tail_ctr > thresholds.high_ctr and len(page_one_tail) >= 10:
        return [
            Recommendation(
                type="POSITION_RANGE",
                threshold="EXPAND_POSITION_RANGE",
                current_value={"min": 1, "max": 10},
                recommended_value={"min": 1, "max": 15},
                reason=(
                    f"Positions 6-10 show strong CTR ({tail_ctr:.2%}), "
                    "consider expanding content for positions 11-15"
                ),
                impact="More pages eligible for content expansion",
                confidence="MEDIUM",
            )
        ]
    return []


def analyze_impression_thresholds(
    records: Sequence[SignalRecord],
    thresholds: TuningThresholds = TuningThresholds(),
) -> List[Recommendation]:
    low = [r.ctr for r in records if r.impressions < 100]
    medium = [r.ctr for r in records if 100 <= r.impressions < 500]
    low_ctr, medium_ctr = _mean(low), _mean(medium)
    if low_ctr > medium_ctr and len(low) >= 10:
        return [
            Recommendation(
                type="IMPRESSION_THRESHOLD",
                threshold="MIN_IMPRESSIONS_CREATE",
                current_value=thresholds.min_impressions_create,
                recommended_value=50,
                reason=(
                    f"Low-impression pages (<100) show strong CTR ({low_ctr:.2%} vs "
                    f"{medium_ctr:.2%}), consider lowering the threshold"
                ),
                impact="More opportunities eligible for page creation",
                confidence="LOW",
            )
        ]
    return []


def recommend_thresholds(
    records: Sequence[SignalRecord],
    thresholds: TuningThresholds = TuningThresholds(),
) -> List[Recommendation]:
    if len(records) < thresholds.min_sample_size:
        logger.warning(
            "Insufficient data for tuning: %d records (need %d)",
            len(records),
            thresholds.min_sample_size,
        )
        return []
    recommendations = (
        analyze_ctr_thresholds(records, thresholds)
        + analyze_position_ranges(records, thresholds)
        + analyze_impression_thresholds(records, thresholds)
    )
    logger.info("Generated %d tuning recommendations", len(recommendations))
    return recommendations


def build_tuning_report(recommendations: Sequence[Recommendation], *, ts: float) -> Dict[str, Any]:
    by_type: Dict[str, int] = {}
    by_confidence: Dict[str, int] = {}
    for rec in recommendations:
        by_type[rec.type] = by_type.get(rec.type, 0) + 1
        by_confidence[rec.confidence] = by_confidence.get(rec.confidence, 0) + 1
    return {
        "timestamp": iso_utc(ts),
        "summary": {
            "total": len(recommendations),
            "by_type": by_type,
            "by_confidence": by_confidence,
        },
        "recommendations": [rec.to_dict() for rec in recommendations],
    }
