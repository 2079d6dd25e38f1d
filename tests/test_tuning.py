from __future__ import annotations

from seo_autopilot.models import SignalRecord
from seo_autopilot.tuning import (
    analyze_ctr_thresholds,
    analyze_impression_thresholds,
    analyze_position_ranges,
    build_tuning_report,
    position_buckets,
    recommend_thresholds,
)


def _rec(clicks, impressions=1000, position=15.0, location="Austin"):
    return SignalRecord("plumbing", location, impressions, clicks, position)


def test_low_average_ctr_suggests_lower_threshold():
    records = [_rec(0, location=f"C{i}") for i in range(20)]

    recs = analyze_ctr_thresholds(records)

    assert [(r.threshold, r.recommended_value, r.confidence) for r in recs] == [
        ("LOW_CTR_THRESHOLD", 0.0, "MEDIUM")
    ]


def test_strong_top_decile_suggests_higher_threshold():
    records = [_rec(10, location=f"C{i}") for i in range(18)]
    records += [_rec(200, location="Top1"), _rec(200, location="Top2")]

    recs = analyze_ctr_thresholds(records)

    assert [(r.threshold, r.recommended_value, r.confidence) for r in recs] == [
        ("HIGH_CTR_THRESHOLD", 0.18, "HIGH")
    ]


def test_position_range_needs_ten_strong_records():
    strong = [_rec(100, position=8.0, location=f"C{i}") for i in range(10)]

    recs = analyze_position_ranges(strong)
    assert recs[0].recommended_value == {"min": 1, "max": 15}
    assert analyze_position_ranges(strong[:9]) == []

    buckets = position_buckets(strong + [_rec(1, position=2.0), _rec(1, position=25.0)])
    assert {k: len(v) for k, v in buckets.items()} == {"1-3": 1, "4-5": 0, "6-10": 10, "11-20": 0, ">20": 1}


def test_low_impression_pages_outperforming_suggest_lower_minimum():
    records = [_rec(5, impressions=50, location=f"L{i}") for i in range(10)]
    records += [_rec(2, impressions=200, location=f"M{i}") for i in range(10)]

    recs = analyze_impression_thresholds(records)

    assert [(r.threshold, r.current_value, r.recommended_value) for r in recs] == [
        ("MIN_IMPRESSIONS_CREATE", 100, 50)
    ]


def test_small_samples_produce_no_recommendations():
    assert recommend_thresholds([_rec(0, location=f"C{i}") for i in range(19)]) == []


def test_report_summarizes_by_type_and_confidence():
    records = [_rec(5, impressions=50, location=f"L{i}") for i in range(10)]
    records += [_rec(0, impressions=200, location=f"M{i}") for i in range(10)]

    recs = recommend_thresholds(records)
    report = build_tuning_report(recs, ts=1_700_000_000.0)

    assert report["timestamp"] == "2023-11-14T22:13:20Z"
    assert report["summary"]["total"] == len(recs) == 2
    assert report["summary"]["by_type"] == {"CTR_THRESHOLD": 1, "IMPRESSION_THRESHOLD": 1}
    assert report["summary"]["by_confidence"] == {"HIGH": 1, "LOW": 1}
