from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .config_env import ActionType

_SECONDS_PER_DAY = 86400.0


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "unknown"


def make_key(service: str, location: str) -> str:
    """Canonical target key, e.g. ``("plumbing", "San Antonio")`` -> ``plumbing:san-antonio``.

    Every source (search queries, competitor rankings, page store) spells
    locations differently; keys compare equal only in this form.
    """
    return f"{slugify(service)}:{slugify(location)}"


def split_key(key: str) -> Tuple[str, str]:
    service, _, location = key.partition(":")
    return service, location


def canonical_key(key: str) -> str:
    return make_key(*split_key(key))


def _parse_ts(raw: Any) -> Optional[float]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip()
    try:
        return float(text)
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _opt_float(raw: Any) -> Optional[float]:
    if raw is None or raw == "":
        return None
    return float(raw)


@dataclass(frozen=True)
class SignalRecord:
    """One measured performance fact about a (service, location) pair."""

    service: str
    location: str
    impressions: int
    clicks: int
    position: float
    ctr: Optional[float] = None
    state: Optional[str] = None
    query: Optional[str] = None
    competitor: Optional[str] = None
    competitor_position: Optional[float] = None
    clicks_trend: Optional[float] = None
    bounce_rate: Optional[float] = None
    timestamp: Optional[float] = None

    def __post_init__(self) -> None:
        if self.ctr is None:
            derived = self.clicks / self.impressions if self.impressions > 0 else 0.0
            object.__setattr__(self, "ctr", derived)

    @property
    def key(self) -> str:
        return make_key(self.service, self.location)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SignalRecord":
        """Build from an ingestion row; accepts camelCase and ``city`` aliases."""
        location = row.get("location") or row.get("city")
        service = row.get("service")
        if not service or not location:
            raise ValueError(f"Signal row missing service/location: {dict(row)!r}")
        return cls(
            service=str(service),
            location=str(location),
            impressions=int(row.get("impressions") or 0),
            clicks=int(row.get("clicks") or 0),
            position=float(row.get("position") or 0.0),
            ctr=_opt_float(row.get("ctr")),
            state=row.get("state") or None,
            query=row.get("query") or None,
            competitor=row.get("competitor") or None,
            competitor_position=_opt_float(
                row.get("competitor_position", row.get("competitorPosition"))
            ),
            clicks_trend=_opt_float(row.get("clicks_trend", row.get("clicksTrend"))),
            bounce_rate=_opt_float(row.get("bounce_rate", row.get("bounceRate"))),
            timestamp=_parse_ts(row.get("timestamp", row.get("date"))),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class ExistingState:
    """Snapshot of already-handled targets, taken once at run start."""

    keys: FrozenSet[str] = frozenset()
    last_optimized_at: Mapping[str, float] = field(default_factory=dict)
    as_of: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "keys", frozenset(canonical_key(k) for k in self.keys))
        object.__setattr__(
            self,
            "last_optimized_at",
            {canonical_key(k): float(ts) for k, ts in self.last_optimized_at.items()},
        )

    @classmethod
    def from_keys(cls, keys: Iterable[str], *, as_of: float = 0.0) -> "ExistingState":
        return cls(keys=frozenset(keys), as_of=as_of)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and canonical_key(key) in self.keys

    def __len__(self) -> int:
        return len(self.keys)

    def contains(self, service: str, location: str) -> bool:
        return make_key(service, location) in self.keys

    def days_since_optimized(self, key: str) -> Optional[float]:
        last = self.last_optimized_at.get(canonical_key(key))
        if last is None:
            return None
        return max(0.0, (self.as_of - last) / _SECONDS_PER_DAY)

    def locations_for(self, service: str) -> FrozenSet[str]:
        """Location slugs with an existing page for ``service``."""
        wanted = slugify(service)
        return frozenset(
            location for svc, location in (split_key(k) for k in self.keys) if svc == wanted
        )


@dataclass(frozen=True)
class Decision:
    """Single-use, scored intent to perform one action."""

    action_type: ActionType
    target_key: str
    reason: str
    priority: float
    payload: Mapping[str, Any] = field(default_factory=dict)

    # Keys are slugs; payloads carry the display spelling when the source had one.
    @property
    def service(self) -> str:
        return str(self.payload.get("service") or split_key(self.target_key)[0])

    @property
    def location(self) -> str:
        return str(self.payload.get("location") or split_key(self.target_key)[1])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type.value,
            "target_key": self.target_key,
            "reason": self.reason,
            "priority": round(self.priority, 4),
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class ActionResult:
    success: bool
    detail: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class DecisionOutcome:
    decision: Decision
    status: OutcomeStatus
    reason: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.decision.action_type.value,
            "target_key": self.decision.target_key,
            "status": self.status.value,
            "reason": self.reason,
            "detail": self.detail,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass
class RunOutcome:
    outcomes: List[DecisionOutcome] = field(default_factory=list)

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return self._count(OutcomeStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def planned(self) -> int:
        return self._count(OutcomeStatus.DRY_RUN)

    def failures(self) -> List[DecisionOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    def counts_by_action(self) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = {}
        for outcome in self.outcomes:
            per_action = counts.setdefault(outcome.decision.action_type.value, {})
            per_action[outcome.status.value] = per_action.get(outcome.status.value, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "dry_run": self.planned,
            "by_action": self.counts_by_action(),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class WindowStats:
    impressions: int = 0
    clicks: int = 0
    position_sum: float = 0.0
    count: int = 0

    def add(self, record: SignalRecord) -> None:
        self.impressions += record.impressions
        self.clicks += record.clicks
        self.position_sum += record.position
        self.count += 1

    @property
    def ctr(self) -> float:
        return self.clicks / self.impressions if self.impressions > 0 else 0.0

    @property
    def avg_position(self) -> float:
        return self.position_sum / self.count if self.count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "impressions": self.impressions,
            "clicks": self.clicks,
            "ctr": round(self.ctr, 6),
            "position": round(self.avg_position, 3),
            "count": self.count,
        }


@dataclass
class PagePerformance:
    service: str
    location: str
    current: WindowStats = field(default_factory=WindowStats)
    previous: WindowStats = field(default_factory=WindowStats)
    ctr_delta: float = 0.0
    status: str = "stable"

    @property
    def key(self) -> str:
        return make_key(self.service, self.location)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "location": self.location,
            "current": self.current.to_dict(),
            "previous": self.previous.to_dict(),
            "ctr_delta": round(self.ctr_delta, 6),
            "status": self.status,
        }


@dataclass
class EvaluationReport:
    pages: Dict[str, PagePerformance] = field(default_factory=dict)
    winners: int = 0
    losers: int = 0
    stable: int = 0
    avg_ctr_change: float = 0.0
    top_performers: List[PagePerformance] = field(default_factory=list)
    underperformers: List[PagePerformance] = field(default_factory=list)

    @property
    def total_pages(self) -> int:
        return len(self.pages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_pages": self.total_pages,
            "winners": self.winners,
            "losers": self.losers,
            "stable": self.stable,
            "avg_ctr_change": round(self.avg_ctr_change, 6),
            "top_performers": [p.key for p in self.top_performers],
            "underperformers": [p.key for p in self.underperformers],
        }


@dataclass(frozen=True)
class Pattern:
    """Sample-size-qualified winning combination; recomputed each window."""

    key: str
    service: str
    avg_ctr: float
    avg_position: float
    total_impressions: int
    sample_size: int
    target_locations: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "service": self.service,
            "avg_ctr": round(self.avg_ctr, 6),
            "avg_position": round(self.avg_position, 3),
            "total_impressions": self.total_impressions,
            "sample_size": self.sample_size,
            "target_locations": list(self.target_locations),
        }


@dataclass
class Opportunity:
    type: str
    service: str
    city: str
    state: str
    reason: str = ""
    score: int = 0
    priority: str = "IGNORE"
    competitor: Optional[str] = None
    competitor_position: Optional[float] = None
    competitor_count: Optional[int] = None
    impressions: Optional[int] = None
    current_position: Optional[float] = None
    ctr: Optional[float] = None

    @property
    def key(self) -> str:
        return make_key(self.service, self.city)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Opportunity":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in raw.items() if k in known})
