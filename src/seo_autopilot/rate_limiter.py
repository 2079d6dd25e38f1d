"""
Rate Limiter

Sliding hour/day windows per category.  Consumption timestamps live in an
injectable ``CounterStore``: ``InMemoryCounterStore`` for read-only paths
and tests, ``DurableCounterStore`` (per-day JSONL under ``flock``) wherever
a process restart must not reset the day's quota.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Deque, Dict, Iterator, List, Mapping, Optional, Protocol

from .storage import append_jsonl, day_stamp, file_lock, read_jsonl
from .thresholds import RateLimit

logger = logging.getLogger(__name__)

HOUR_S = 3600.0
DAY_S = 86400.0

_CATEGORY_LABELS = {
    "serp_api": "SERP API",
    "crawl": "Crawl",
    "proposals": "Proposal",
    "create": "Page creation",
    "rewrite": "Meta rewrite",
    "expand": "Content expansion",
    "clone": "Clone",
}


class CounterStore(Protocol):
    def get(self, category: str, since: float) -> List[float]:
        """Timestamps for ``category`` newer than ``since`` (older ones may be pruned)."""

    def increment(self, category: str, ts: float) -> None:
        ...

    def transaction(self):
        """Context manager making check-then-increment atomic."""


class InMemoryCounterStore:
    """Process-lifetime store; entries older than ``since`` are pruned on read."""

    def __init__(self) -> None:
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.RLock()

    def get(self, category: str, since: float) -> List[float]:
        events = self._events.get(category)
        if not events:
            return []
        while events and events[0] <= since:
            events.popleft()
        return list(events)

    def increment(self, category: str, ts: float) -> None:
        self._events.setdefault(category, deque()).append(ts)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            yield


class DurableCounterStore:
    """Per-day JSONL files (``<root>/<YYYY-MM-DD>.jsonl``), re-derivable after restart."""

    def __init__(self, root: Path, *, retention_days: int = 7, lock_timeout_s: float = 10.0) -> None:
        self._root = Path(root)
        self._retention_days = max(2, int(retention_days))
        self._lock_timeout_s = lock_timeout_s

    def _path_for_day(self, day: str) -> Path:
        return self._root / f"{day}.jsonl"

    def get(self, category: str, since: float) -> List[float]:
        start = datetime.fromtimestamp(since, tz=timezone.utc).date()
        out: List[float] = []
        # A window of at most one day spans three calendar files at most.
        for offset in range(3):
            day = (start + timedelta(days=offset)).isoformat()
            for row in read_jsonl(self._path_for_day(day)):
                if row.get("category") != category:
                    continue
                try:
                    ts = float(row["ts"])
                except (KeyError, TypeError, ValueError):
                    continue
                if ts > since:
                    out.append(ts)
        out.sort()
        return out

    def increment(self, category: str, ts: float) -> None:
        append_jsonl(self._path_for_day(day_stamp(ts)), {"category": category, "ts": ts})
        self._prune_old_files(ts)

    def _prune_old_files(self, now: float) -> None:
        cutoff = day_stamp(now - self._retention_days * DAY_S)
        for path in self._root.glob("*.jsonl"):
            if path.stem < cutoff:
                path.unlink(missing_ok=True)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with file_lock(self._root / ".counters.lock", timeout_s=self._lock_timeout_s):
            yield


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    hourly_count: int = 0
    daily_count: int = 0


class RateLimiter:
    """Independent per-category sliding windows."""

    def __init__(
        self,
        limits: Mapping[str, RateLimit],
        store: Optional[CounterStore] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._limits = dict(limits)
        self._store: CounterStore = store if store is not None else InMemoryCounterStore()
        self._clock = clock

    def limit_for(self, category: str) -> Optional[RateLimit]:
        return self._limits.get(category)

    def _counts(self, category: str, now: float) -> tuple[int, int]:
        events = self._store.get(category, now - DAY_S)
        hour_start = now - HOUR_S
        hourly = sum(1 for ts in events if ts > hour_start)
        return hourly, len(events)

    def check(self, category: str) -> RateLimitDecision:
        limit = self._limits.get(category)
        if limit is None:
            return RateLimitDecision(allowed=True)

        hourly, daily = self._counts(category, self._clock())
        label = _CATEGORY_LABELS.get(category, category)
        if limit.per_hour is not None and hourly >= limit.per_hour:
            reason = f"{label} hourly limit exceeded ({limit.per_hour} calls/hour)"
            logger.warning("Rate limit: %s", reason)
            return RateLimitDecision(False, reason, hourly, daily)
        if limit.per_day is not None and daily >= limit.per_day:
            reason = f"{label} daily limit exceeded ({limit.per_day} calls/day)"
            logger.warning("Rate limit: %s", reason)
            return RateLimitDecision(False, reason, hourly, daily)
        return RateLimitDecision(True, None, hourly, daily)

    def record(self, category: str) -> None:
        self._store.increment(category, self._clock())

    def try_acquire(self, category: str) -> RateLimitDecision:
        """Atomic check-and-record."""
        with self._store.transaction():
            decision = self.check(category)
            if decision.allowed:
                self.record(category)
            return decision

    def usage(self, category: str) -> Dict[str, Optional[int]]:
        hourly, daily = self._counts(category, self._clock())
        limit = self._limits.get(category) or RateLimit()
        return {
            "hourly": hourly,
            "daily": daily,
            "max_per_hour": limit.per_hour,
            "max_per_day": limit.per_day,
        }
