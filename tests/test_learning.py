from __future__ import annotations

from seo_autopilot.config_env import ActionType
from seo_autopilot.learning import decide_clones, evaluate, extract_patterns
from seo_autopilot.models import ExistingState, Pattern
from seo_autopilot.thresholds import LearningThresholds

DAY = 86400.0
NOW = 1_700_000_000.0


def _row(service, location, clicks, impressions=1000, position=5.0):
    return {
        "service": service,
        "location": location,
        "impressions": impressions,
        "clicks": clicks,
        "position": position,
    }


def _entries():
    previous = {
        "ts": NOW - 10 * DAY,
        "signals": [
            _row("plumbing", "Austin", 20),
            _row("plumbing", "Dallas", 30),
            _row("electrical", "Austin", 50),
            _row("roofing", "Miami", 40),
        ],
    }
    current = {
        "ts": NOW - 1 * DAY,
        "signals": [
            _row("plumbing", "Austin", 80),
            _row("plumbing", "Dallas", 60),
            _row("electrical", "Austin", 10),
            _row("hvac", "Denver", 70),
        ],
    }
    return [previous, current]


def test_evaluate_classifies_targets_in_current_window():
    report = evaluate(_entries(), now=NOW)

    assert report.total_pages == 4
    assert report.winners == 2
    assert report.losers == 1
    assert report.stable == 1
    assert [p.key for p in report.top_performers] == ["plumbing:austin", "plumbing:dallas"]
    assert [p.key for p in report.underperformers] == ["electrical:austin"]
    # Seen only in the current window: no measurable change.
    assert report.pages["hvac:denver"].ctr_delta == 0.0
    assert "roofing:miami" not in report.pages


def test_evaluate_ignores_malformed_rows_and_entries():
    entries = _entries() + [
        {"ts": "not-a-number", "signals": [_row("plumbing", "Austin", 999)]},
        {"ts": NOW - DAY, "signals": [{"service": "plumbing"}]},
    ]

    report = evaluate(entries, now=NOW)

    assert report.total_pages == 4


def test_extract_patterns_targets_uncovered_locations():
    report = evaluate(_entries(), now=NOW)
    existing = ExistingState.from_keys(
        {"plumbing:Austin", "plumbing:Dallas", "plumbing:Los Angeles"}, as_of=NOW
    )

    patterns = extract_patterns(report, existing)

    assert len(patterns) == 1
    pattern = patterns[0]
    assert pattern.key == "plumbing-service"
    assert pattern.sample_size == 2
    assert round(pattern.avg_ctr, 4) == 0.07
    assert pattern.target_locations == (
        "san-francisco",
        "san-diego",
        "sacramento",
        "san-jose",
        "fresno",
    )


def test_single_winner_is_not_a_pattern():
    report = evaluate(_entries(), now=NOW)
    strict = LearningThresholds(min_pattern_samples=3)

    assert extract_patterns(report, ExistingState(as_of=NOW), strict) == []


def test_clone_cap_bounds_weekly_output():
    patterns = [
        Pattern(
            key=f"svc{i}-service",
            service=f"svc{i}",
            avg_ctr=0.05 + i / 10000.0,
            avg_position=4.0,
            total_impressions=1000,
            sample_size=2,
            target_locations=tuple(f"city-{j}" for j in range(10)),
        )
        for i in range(50)
    ]

    decisions = decide_clones(patterns, ExistingState(as_of=NOW), cap=10)

    assert len(decisions) == 10
    assert all(d.action_type == ActionType.CLONE for d in decisions)
    assert {d.service for d in decisions} == {"svc49"}
    assert decide_clones(patterns, ExistingState(as_of=NOW), cap=0) == []


def test_clones_skip_covered_and_duplicate_targets():
    pattern = Pattern(
        key="plumbing-service",
        service="plumbing",
        avg_ctr=0.08,
        avg_position=3.0,
        total_impressions=2000,
        sample_size=2,
        target_locations=("san-diego", "fresno", "fresno"),
    )
    existing = ExistingState.from_keys({"plumbing:San Diego"}, as_of=NOW)

    decisions = decide_clones([pattern], existing, cap=10)

    assert [d.target_key for d in decisions] == ["plumbing:fresno"]
    assert decisions[0].payload["pattern"] == "plumbing-service"
    assert decisions[0].priority == 80.0
