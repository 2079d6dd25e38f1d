from __future__ import annotations

from seo_autopilot.config_env import ActionType
from seo_autopilot.decision_engine import (
    aggregate_by_key,
    decide,
    decide_create,
    decide_expand,
    decide_freeze,
    decide_rewrite,
)
from seo_autopilot.ingestion import records_from_rows
from seo_autopilot.models import ExistingState, SignalRecord
from seo_autopilot.thresholds import CreateThresholds, DecisionThresholds, FreezeThresholds, ctr_benchmark

NOW = 1_700_000_000.0


def _signal(service="plumbing", location="Austin", impressions=150, clicks=5, position=12.0, **kw):
    return SignalRecord(
        service=service,
        location=location,
        impressions=impressions,
        clicks=clicks,
        position=position,
        **kw,
    )


def _of(decisions, action):
    return [d for d in decisions if d.action_type == action]


def test_plumbing_austin_creates_then_is_excluded_once_it_exists():
    signals = [_signal()]

    first = decide(signals, ExistingState(as_of=NOW))
    creates = _of(first, ActionType.CREATE)
    assert [d.target_key for d in creates] == ["plumbing:austin"]
    assert creates[0].priority > 0
    assert creates[0].reason == "High impressions (150) at position 12.0"

    second = decide(signals, ExistingState.from_keys({"plumbing:Austin"}, as_of=NOW))
    assert _of(second, ActionType.CREATE) == []


def test_decide_is_deterministic():
    signals = [
        _signal(location=f"City{i}", impressions=100 + (i % 3) * 50, position=8 + i % 5)
        for i in range(30)
    ]
    existing = ExistingState(as_of=NOW)

    assert decide(signals, existing) == decide(list(signals), existing)


def test_create_batch_cap_and_priority_order():
    signals = [
        _signal(location=f"City{i:02d}", impressions=100 + i * 10, clicks=0) for i in range(20)
    ]

    creates = decide_create(signals, ExistingState(as_of=NOW))

    assert len(creates) == CreateThresholds().max_per_run
    priorities = [d.priority for d in creates]
    assert priorities == sorted(priorities, reverse=True)
    assert creates[0].target_key == "plumbing:city19"


def test_create_respects_gates_and_allow_list():
    existing = ExistingState(as_of=NOW)
    assert decide_create([_signal(impressions=99)], existing) == []
    assert decide_create([_signal(position=7.9)], existing) == []
    assert decide_create([_signal(position=30.5)], existing) == []
    assert decide_create([_signal(service="roofing")], existing) == []

    scoped = CreateThresholds(allowed_locations=("Dallas",))
    assert decide_create([_signal()], existing, scoped) == []
    assert len(decide_create([_signal(location="Dallas")], existing, scoped)) == 1


def test_frozen_target_is_not_modified_by_other_families():
    # Position 5 benchmark is 9%; 20% CTR clears the 25% winning margin.
    winner = _signal(impressions=500, clicks=100, position=5.0, clicks_trend=0.5, bounce_rate=0.2)
    existing = ExistingState.from_keys({"plumbing:Austin"}, as_of=NOW)

    assert len(decide_expand([winner], existing)) == 1

    decisions = decide([winner], existing)
    assert [(d.action_type, d.target_key) for d in decisions] == [(ActionType.FREEZE, "plumbing:austin")]


def test_freeze_requires_margin_over_benchmark():
    existing = ExistingState.from_keys({"plumbing:Austin"}, as_of=NOW)
    benchmark = ctr_benchmark(5.0)
    just_below = int(500 * benchmark * 1.25) - 1

    assert decide_freeze([_signal(impressions=500, clicks=just_below, position=5.0)], existing) == []
    assert len(decide_freeze([_signal(impressions=500, clicks=60, position=5.0)], existing)) == 1


def test_rewrite_wins_over_expand_for_same_target():
    laggard = _signal(impressions=400, clicks=4, position=6.0, clicks_trend=0.3)
    existing = ExistingState.from_keys({"plumbing:Austin"}, as_of=NOW)

    decisions = decide([laggard], existing)

    assert [d.action_type for d in decisions] == [ActionType.REWRITE]
    assert decisions[0].payload["benchmark_ctr"] == ctr_benchmark(6.0)


def test_recently_optimized_target_is_left_alone():
    laggard = _signal(impressions=400, clicks=4, position=6.0)
    recent = ExistingState(
        keys=frozenset({"plumbing:Austin"}),
        last_optimized_at={"plumbing:Austin": NOW - 3 * 86400},
        as_of=NOW,
    )
    old = ExistingState(
        keys=frozenset({"plumbing:Austin"}),
        last_optimized_at={"plumbing:Austin": NOW - 8 * 86400},
        as_of=NOW,
    )

    assert decide_rewrite([laggard], recent) == []
    assert len(decide_rewrite([laggard], old)) == 1


def test_expand_skips_high_bounce_and_flat_trend():
    existing = ExistingState.from_keys({"plumbing:Austin"}, as_of=NOW)
    assert decide_expand([_signal(position=6.0, clicks_trend=0.05)], existing) == []
    assert decide_expand([_signal(position=6.0, clicks_trend=0.2, bounce_rate=0.7)], existing) == []
    assert len(decide_expand([_signal(position=6.0, clicks_trend=0.2)], existing)) == 1


def test_cap_of_zero_disables_family():
    thresholds = DecisionThresholds(create=CreateThresholds(max_per_run=0))
    assert decide([_signal()], ExistingState(as_of=NOW), thresholds) == []


def test_aggregate_merges_rows_for_same_key():
    merged = aggregate_by_key(
        [
            _signal(impressions=100, clicks=2, position=10.0),
            _signal(impressions=300, clicks=6, position=20.0),
            _signal(location="Dallas"),
        ]
    )

    assert [r.key for r in merged] == ["plumbing:austin", "plumbing:dallas"]
    austin = merged[0]
    assert austin.impressions == 400
    assert austin.clicks == 8
    assert austin.position == 17.5
    assert austin.ctr == 0.02


def test_keys_match_across_location_spellings():
    from_query = records_from_rows(
        [{"query": "plumber in san antonio tx", "impressions": 150, "clicks": 5, "position": 12}]
    )
    assert from_query[0].location == "San Antonio"
    assert from_query[0].key == "plumbing:san-antonio"

    existing = ExistingState.from_keys({"plumbing:San Antonio", "plumbing:AUSTIN"}, as_of=NOW)

    assert decide(from_query, existing) == []
    assert decide([_signal(location="austin")], existing) == []
    assert existing.contains("plumbing", "san-antonio")


def test_spellings_of_one_target_merge_into_one_create():
    decisions = decide(
        [_signal(location="San Diego", impressions=100), _signal(location="san-diego", impressions=200)],
        ExistingState(as_of=NOW),
    )
    creates = _of(decisions, ActionType.CREATE)

    assert [d.target_key for d in creates] == ["plumbing:san-diego"]
    assert creates[0].payload["impressions"] == 300
    assert creates[0].location == "San Diego"


def test_winners_past_the_freeze_cap_are_not_expanded():
    winners = [
        _signal(location=f"City{i:02d}", impressions=500, clicks=100, position=5.0, clicks_trend=0.5)
        for i in range(3)
    ]
    existing = ExistingState.from_keys({w.key for w in winners}, as_of=NOW)
    thresholds = DecisionThresholds(freeze=FreezeThresholds(max_per_run=1))

    decisions = decide(winners, existing, thresholds)

    assert [d.action_type for d in decisions] == [ActionType.FREEZE]
