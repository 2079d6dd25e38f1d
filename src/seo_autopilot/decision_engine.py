"""
Decision Engine

Pure, deterministic rule functions mapping signal records and an
existing-state snapshot to prioritized decisions.  No I/O and no learned
model: every family is a filter (hard gates) followed by a score used only
for ordering, then a per-family batch cap.

Sequencing contract for ``decide``:

1. FREEZE runs first; frozen targets are removed from the candidate set.
2. CREATE, REWRITE and EXPAND see only the remaining candidates.
3. A target picked for REWRITE is not also EXPANDED in the same run.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence

from .config_env import ActionType
from .models import Decision, ExistingState, SignalRecord
from .thresholds import (
    CreateThresholds,
    DecisionThresholds,
    ExpandThresholds,
    FreezeThresholds,
    RewriteThresholds,
    ctr_benchmark,
)


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def aggregate_by_key(signals: Iterable[SignalRecord]) -> List[SignalRecord]:
    """Merge records sharing a target key, keeping first-seen order.

    Impressions and clicks are summed; position is impression-weighted.
    """
    groups: Dict[str, List[SignalRecord]] = {}
    for record in signals:
        groups.setdefault(record.key, []).append(record)

    merged: List[SignalRecord] = []
    for key, records in groups.items():
        if len(records) == 1:
            merged.append(records[0])
            continue
        impressions = sum(r.impressions for r in records)
        clicks = sum(r.clicks for r in records)
        if impressions > 0:
            position = sum(r.position * r.impressions for r in records) / impressions
        else:
            position = sum(r.position for r in records) / len(records)
        trends = [r.clicks_trend for r in records if r.clicks_trend is not None]
        bounces = [r.bounce_rate for r in records if r.bounce_rate is not None]
        timestamps = [r.timestamp for r in records if r.timestamp is not None]
        first = records[0]
        merged.append(
            SignalRecord(
                service=first.service,
                location=first.location,
                impressions=impressions,
                clicks=clicks,
                position=position,
                state=next((r.state for r in records if r.state), None),
                query=next((r.query for r in records if r.query), None),
                clicks_trend=_mean(trends),
                bounce_rate=_mean(bounces),
                timestamp=max(timestamps) if timestamps else None,
            )
        )
    return merged


def _cap(decisions: List[Decision], max_per_run: int) -> List[Decision]:
    decisions.sort(key=lambda d: (-d.priority, d.target_key))
    return decisions[: max(0, max_per_run)]


def _base_payload(record: SignalRecord) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "service": record.service,
        "location": record.location,
        "impressions": record.impressions,
        "clicks": record.clicks,
        "ctr": round(record.ctr or 0.0, 6),
        "position": round(record.position, 3),
    }
    if record.state:
        payload["state"] = record.state
    if record.query:
        payload["query"] = record.query
    return payload


def _optimization_gap_ok(key: str, existing: ExistingState, min_days: float) -> bool:
    days = existing.days_since_optimized(key)
    return days is None or days >= min_days


# ---------------------------------------------------------------------------
# Families
# ---------------------------------------------------------------------------

def _freeze_qualified(
    records: Iterable[SignalRecord],
    existing: ExistingState,
    thresholds: FreezeThresholds,
) -> List[Decision]:
    out: List[Decision] = []
    for record in records:
        if record.key not in existing:
            continue
        if record.impressions < thresholds.min_impressions:
            continue
        if record.position <= 0 or record.position > thresholds.max_position:
            continue
        benchmark = ctr_benchmark(record.position)
        ctr = record.ctr or 0.0
        if ctr < benchmark * (1.0 + thresholds.winning_margin):
            continue
        lift = ctr / benchmark - 1.0
        payload = _base_payload(record)
        payload["benchmark_ctr"] = benchmark
        out.append(
            Decision(
                action_type=ActionType.FREEZE,
                target_key=record.key,
                reason=(
                    f"CTR {ctr * 100:.2f}% beats benchmark {benchmark * 100:.2f}% "
                    f"at position {record.position:.1f} by {lift * 100:.0f}%"
                ),
                priority=lift * 100.0 + record.impressions / 100.0,
                payload=payload,
            )
        )
    return out


def decide_freeze(
    records: Iterable[SignalRecord],
    existing: ExistingState,
    thresholds: FreezeThresholds = FreezeThresholds(),
) -> List[Decision]:
    """Protect existing targets that already beat their positional benchmark."""
    return _cap(_freeze_qualified(records, existing, thresholds), thresholds.max_per_run)


def decide_create(
    records: Iterable[SignalRecord],
    existing: ExistingState,
    thresholds: CreateThresholds = CreateThresholds(),
) -> List[Decision]:
    """New pages for in-scope pairs with demand but no dedicated page."""
    allowed_services = set(thresholds.allowed_services)
    allowed_locations = set(thresholds.allowed_locations)
    out: List[Decision] = []
    for record in records:
        if not record.service or not record.location:
            continue
        if record.impressions < thresholds.min_impressions:
            continue
        if not thresholds.min_position <= record.position <= thresholds.max_position:
            continue
        if record.key in existing:
            continue
        if allowed_services and record.service not in allowed_services:
            continue
        if allowed_locations and record.location not in allowed_locations:
            continue
        priority = (
            record.impressions / 10.0
            + (thresholds.max_position + 1 - record.position) * thresholds.position_weight
            + (record.ctr or 0.0) * thresholds.ctr_weight
        )
        out.append(
            Decision(
                action_type=ActionType.CREATE,
                target_key=record.key,
                reason=f"High impressions ({record.impressions}) at position {record.position:.1f}",
                priority=priority,
                payload=_base_payload(record),
            )
        )
    return _cap(out, thresholds.max_per_run)


def decide_rewrite(
    records: Iterable[SignalRecord],
    existing: ExistingState,
    thresholds: RewriteThresholds = RewriteThresholds(),
) -> List[Decision]:
    """Meta rewrites for existing pages whose CTR trails the positional benchmark."""
    out: List[Decision] = []
    for record in records:
        if record.key not in existing:
            continue
        if record.impressions < thresholds.min_impressions:
            continue
        benchmark = ctr_benchmark(record.position)
        ctr = record.ctr or 0.0
        if ctr >= benchmark:
            continue
        if not _optimization_gap_ok(record.key, existing, thresholds.min_days_between_optimizations):
            continue
        payload = _base_payload(record)
        payload["benchmark_ctr"] = benchmark
        out.append(
            Decision(
                action_type=ActionType.REWRITE,
                target_key=record.key,
                reason=(
                    f"CTR {ctr * 100:.2f}% below benchmark {benchmark * 100:.2f}% "
                    f"for position {int(record.position + 0.5)}"
                ),
                # Estimated clicks lost to the CTR gap.
                priority=(benchmark - ctr) * record.impressions,
                payload=payload,
            )
        )
    return _cap(out, thresholds.max_per_run)


def decide_expand(
    records: Iterable[SignalRecord],
    existing: ExistingState,
    thresholds: ExpandThresholds = ExpandThresholds(),
) -> List[Decision]:
    """Content expansion for existing pages close to the top with rising clicks."""
    out: List[Decision] = []
    for record in records:
        if record.key not in existing:
            continue
        if not thresholds.min_position <= record.position <= thresholds.max_position:
            continue
        if record.clicks_trend is None or record.clicks_trend < thresholds.min_clicks_trend:
            continue
        if record.bounce_rate is not None and record.bounce_rate > thresholds.max_bounce_rate:
            continue
        if not _optimization_gap_ok(record.key, existing, thresholds.min_days_between_optimizations):
            continue
        payload = _base_payload(record)
        payload["clicks_trend"] = record.clicks_trend
        out.append(
            Decision(
                action_type=ActionType.EXPAND,
                target_key=record.key,
                reason=(
                    f"Position {record.position:.1f}, clicks trending up "
                    f"{record.clicks_trend * 100:.1f}%"
                ),
                priority=record.clicks_trend * 100.0 + (thresholds.max_position + 1 - record.position),
                payload=payload,
            )
        )
    return _cap(out, thresholds.max_per_run)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def decide(
    signals: Iterable[SignalRecord],
    existing: ExistingState,
    thresholds: DecisionThresholds = DecisionThresholds(),
) -> List[Decision]:
    """All families, freeze first. Output order: FREEZE, CREATE, REWRITE, EXPAND."""
    records = aggregate_by_key(signals)

    # Winners past the freeze cap are still left alone by the other families.
    qualified = _freeze_qualified(records, existing, thresholds.freeze)
    frozen = {d.target_key for d in qualified}
    freeze = _cap(qualified, thresholds.freeze.max_per_run)
    candidates = [r for r in records if r.key not in frozen]

    create = decide_create(candidates, existing, thresholds.create)
    rewrite = decide_rewrite(candidates, existing, thresholds.rewrite)
    rewritten = {d.target_key for d in rewrite}
    expand = decide_expand(
        [r for r in candidates if r.key not in rewritten],
        existing,
        thresholds.expand,
    )

    return freeze + create + rewrite + expand
