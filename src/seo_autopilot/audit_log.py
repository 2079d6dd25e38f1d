"""
Audit Log

One JSONL file per mode per UTC day (``<root>/<mode>/<mode>-YYYY-MM-DD.jsonl``).
Each run appends one self-contained entry: timestamp, mode, counts and
the decisions with their outcomes.  Daily entries also carry a signal
snapshot plus traffic and submission totals, which the kill switch and
the weekly learning pass read back.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .config_env import ActionType, RunMode
from .models import Decision, OutcomeStatus, RunOutcome, SignalRecord
from .storage import append_jsonl, atomic_write_text, day_stamp, iso_utc, read_jsonl

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def _mode_name(mode: Any) -> str:
    return mode.value if isinstance(mode, RunMode) else str(mode)


def _days_between(start_ts: float, end_ts: float) -> List[str]:
    start = datetime.fromtimestamp(start_ts, tz=timezone.utc).date()
    end = datetime.fromtimestamp(end_ts, tz=timezone.utc).date()
    days: List[str] = []
    current = start
    while current <= end:
        days.append(current.strftime("%Y-%m-%d"))
        current += timedelta(days=1)
    return days


class AuditLog:
    def __init__(self, root: Path, *, clock: Callable[[], float] = time.time) -> None:
        self._root = Path(root)
        self._clock = clock

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, mode: Any, day: Optional[str] = None) -> Path:
        name = _mode_name(mode)
        return self._root / name / f"{name}-{day or day_stamp(self._clock())}.jsonl"

    def append(self, mode: Any, entry: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(entry)
        record.setdefault("ts", self._clock())
        record.setdefault("ts_iso", iso_utc(record["ts"]))
        record["mode"] = _mode_name(mode)
        record["schema_version"] = SCHEMA_VERSION
        path = self.path_for(mode, day_stamp(record["ts"]))
        append_jsonl(path, record)
        logger.info("Audit entry written: %s", path)
        return record

    def read_day(self, mode: Any, day: Optional[str] = None) -> List[Dict[str, Any]]:
        return read_jsonl(self.path_for(mode, day))

    def latest(self, mode: Any, day: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Most recent entry for ``mode`` on ``day`` (today by default)."""
        entries = self.read_day(mode, day)
        return entries[-1] if entries else None

    def read_window(
        self,
        mode: Any,
        since: float,
        until: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """Entries with ``since < ts <= until``, oldest first."""
        end = self._clock() if until is None else until
        entries: List[Dict[str, Any]] = []
        for day in _days_between(since, end):
            for entry in self.read_day(mode, day):
                try:
                    ts = float(entry.get("ts", 0.0))
                except (TypeError, ValueError):
                    continue
                if since < ts <= end:
                    entries.append(entry)
        entries.sort(key=lambda e: float(e.get("ts", 0.0)))
        return entries

    def write_summary(self, mode: Any, text: str, day: Optional[str] = None) -> Path:
        name = _mode_name(mode)
        path = self._root / name / f"{name}-{day or day_stamp(self._clock())}-summary.md"
        atomic_write_text(path, text if text.endswith("\n") else text + "\n")
        return path


def signal_totals(signals: Iterable[SignalRecord]) -> Dict[str, int]:
    clicks = impressions = 0
    for record in signals:
        clicks += record.clicks
        impressions += record.impressions
    return {"clicks": clicks, "impressions": impressions}


def submission_counts(outcome: Optional[RunOutcome]) -> Dict[str, int]:
    """Outward actions whose handler actually ran (FREEZE is internal)."""
    attempted = failed = 0
    if outcome is not None:
        for item in outcome.outcomes:
            if item.decision.action_type == ActionType.FREEZE:
                continue
            if item.status in (OutcomeStatus.SUCCEEDED, OutcomeStatus.FAILED):
                attempted += 1
                if item.status == OutcomeStatus.FAILED:
                    failed += 1
    return {"attempted": attempted, "failed": failed}


def build_entry(
    mode: Any,
    *,
    ts: float,
    run_id: str,
    dry_run: bool = False,
    signals: Optional[Sequence[SignalRecord]] = None,
    decisions: Optional[Sequence[Decision]] = None,
    outcome: Optional[RunOutcome] = None,
    ingestion_degraded: bool = False,
    **extra: Any,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "ts": ts,
        "ts_iso": iso_utc(ts),
        "mode": _mode_name(mode),
        "run_id": run_id,
        "dry_run": dry_run,
    }
    if signals is not None:
        # Partial ingestion would read as a traffic drop; degraded runs keep no totals.
        if ingestion_degraded:
            entry["ingestion_degraded"] = True
        else:
            entry["totals"] = signal_totals(signals)
        entry["signals"] = [record.to_dict() for record in signals]
    if decisions is not None:
        entry["count"] = len(decisions)
        entry["decisions"] = [d.to_dict() for d in decisions]
    if outcome is not None:
        entry["outcome"] = outcome.to_dict()
        entry["submissions"] = submission_counts(outcome)
    entry.update(extra)
    return entry
