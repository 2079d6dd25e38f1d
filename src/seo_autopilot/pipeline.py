"""
Autopilot Pipeline

One invocation runs one mode end to end:

    lock -> kill switch -> mode body -> audit entry -> release

A live lock held by another run is a normal outcome (``status="lock_held"``).
Only fatal errors (kill switch, corrupt lock, disabled guarded mode)
propagate; everything else becomes a structured outcome in the report.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .actions import build_handlers
from .audit_log import AuditLog, build_entry
from .config import AutopilotSettings
from .config_env import ActionType, RunMode
from .content_client import ContentGeneratorClient
from .decision_engine import aggregate_by_key, decide
from .errors import GuardedModeDisabledError, InvalidModeError, KillSwitchTripped
from .executor import ActionExecutor, ActionHandler
from .ingestion import (
    CITY_DATA,
    MockCompetitorSource,
    SerpCompetitorSource,
    SignalSource,
    build_signal_sources,
    city_populations,
    fetch_rankings,
    fetch_signals,
    find_market_gaps,
    find_position_opportunities,
    find_service_gaps,
    ingest_signals,
)
from .kill_switch import check_kill_switch, metrics_from_audit
from .learning import decide_clones, evaluate, extract_patterns
from .lock_manager import LockManager
from .models import (
    Decision,
    ExistingState,
    Opportunity,
    OutcomeStatus,
    RunOutcome,
    SignalRecord,
    split_key,
)
from .opportunities import (
    filter_by_score,
    score_opportunities,
    summarize_priorities,
    top_opportunities,
)
from .page_store import IndexingQueue, PageStore
from .rate_limiter import CounterStore, DurableCounterStore, RateLimiter
from .storage import iso_utc
from .tuning import build_tuning_report, recommend_thresholds
from .validator import validate_opportunity

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400.0

# Modes that perform ingestion or actions and are gated by the kill switch.
KILL_SWITCH_MODES = frozenset({RunMode.OBSERVER, RunMode.GUARDED, RunMode.DAILY, RunMode.WEEKLY})


def parse_mode(mode: Any) -> RunMode:
    if isinstance(mode, RunMode):
        return mode
    try:
        return RunMode(str(mode).strip().lower())
    except ValueError:
        raise InvalidModeError(str(mode), RunMode.values()) from None


@dataclass
class RunReport:
    mode: RunMode
    run_id: str
    started_at: float
    finished_at: float = 0.0
    dry_run: bool = False
    status: str = "completed"
    counts: Dict[str, Any] = field(default_factory=dict)
    outcome: Optional[RunOutcome] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_s(self) -> float:
        return max(0.0, self.finished_at - self.started_at)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "mode": self.mode.value,
            "run_id": self.run_id,
            "status": self.status,
            "dry_run": self.dry_run,
            "started_at": iso_utc(self.started_at),
            "duration_s": round(self.duration_s, 3),
            "counts": self.counts,
        }
        if self.outcome is not None:
            payload["outcome"] = self.outcome.to_dict()
        if self.details:
            payload["details"] = self.details
        return payload


class Pipeline:
    def __init__(
        self,
        settings: AutopilotSettings,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        signal_sources: Optional[Sequence[SignalSource]] = None,
        competitor_source: Any = None,
        generator: Optional[ContentGeneratorClient] = None,
        handlers: Optional[Mapping[ActionType, ActionHandler]] = None,
        counter_store: Optional[CounterStore] = None,
        lock_manager: Optional[LockManager] = None,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._sleep = sleep
        data_dir = Path(settings.data_dir)
        self.data_dir = data_dir

        self.lock_manager = lock_manager or LockManager(
            data_dir / "locks", settings.lock_timeouts(), clock=clock
        )
        self.audit = AuditLog(data_dir / "audit", clock=clock)
        self.page_store = PageStore(data_dir / "pages.json", clock=clock)
        self.indexing_queue = IndexingQueue(data_dir / "indexing_queue.jsonl", clock=clock)
        self.proposals_dir = data_dir / "proposals"
        self.rate_limiter = RateLimiter(
            settings.rate_limits(),
            counter_store if counter_store is not None else DurableCounterStore(data_dir / "rate_limits"),
            clock=clock,
        )

        self._signal_sources = (
            list(signal_sources) if signal_sources is not None else build_signal_sources(settings)
        )
        self._competitor_source = competitor_source or self._default_competitor_source()
        self._generator = generator or ContentGeneratorClient.from_settings(settings)
        self._handlers = handlers or build_handlers(
            generator=self._generator,
            store=self.page_store,
            indexing_queue=self.indexing_queue,
            proposals_dir=self.proposals_dir,
            site_name=settings.site_name,
            site_url=settings.site_url,
        )
        self._bodies: Dict[RunMode, Callable[..., RunReport]] = {
            RunMode.OBSERVER: self.run_observer,
            RunMode.GUARDED: self.run_guarded,
            RunMode.TUNING: self.run_tuning,
            RunMode.DAILY: self.run_daily,
            RunMode.WEEKLY: self.run_weekly,
        }

    def _default_competitor_source(self) -> Any:
        services = self._settings.competitor_service_list()
        if self._settings.serp_api_enabled and self._settings.serp_api_key:
            return SerpCompetitorSource(
                self._settings.serp_api_url,
                self._settings.serp_api_key,
                services,
                rate_limiter=self.rate_limiter,
                timeout_s=self._settings.ingestion_timeout_s,
            )
        return MockCompetitorSource(services, rate_limiter=self.rate_limiter)

    def _executor(self, dry_run: bool) -> ActionExecutor:
        return ActionExecutor(
            self._handlers,
            self.rate_limiter,
            dry_run=dry_run,
            cooldown_s=self._settings.action_cooldown_s,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, mode: Any, *, dry_run: bool = False) -> RunReport:
        run_mode = parse_mode(mode)
        if run_mode == RunMode.GUARDED and not self._settings.guarded_mode_enabled:
            raise GuardedModeDisabledError(
                "Guarded mode is disabled; set SEO_GUARDED_MODE_ENABLED=true to write proposals"
            )

        run_id = uuid.uuid4().hex
        started = self._clock()
        with self.lock_manager.hold(run_mode) as acquired:
            if not acquired:
                logger.info("Another %s run is in progress; exiting", run_mode.value)
                return RunReport(
                    run_mode, run_id, started, finished_at=self._clock(), dry_run=dry_run, status="lock_held"
                )
            logger.info("Starting %s run %s%s", run_mode.value, run_id, " (dry-run)" if dry_run else "")
            if run_mode in KILL_SWITCH_MODES:
                self._preflight(run_mode, run_id)
            report = self._bodies[run_mode](run_id=run_id, started_at=started, dry_run=dry_run)
            report.finished_at = self._clock()
            logger.info("Finished %s run %s in %.2fs", run_mode.value, run_id, report.duration_s)
            return report

    def _preflight(self, mode: RunMode, run_id: str) -> None:
        thresholds = self._settings.kill_switch_thresholds()
        now = self._clock()
        window_s = thresholds.window_days * _SECONDS_PER_DAY
        entries = self.audit.read_window(RunMode.DAILY, since=now - 2 * window_s, until=now)
        metrics = metrics_from_audit(entries, now=now, window_days=thresholds.window_days)
        try:
            check_kill_switch(metrics, thresholds)
        except KillSwitchTripped as exc:
            # Aborted entries carry no ``totals``; traffic metrics skip them.
            self.audit.append(
                mode,
                {
                    "ts": now,
                    "run_id": run_id,
                    "status": "aborted",
                    "kill_switch": exc.state.to_dict() if exc.state is not None else None,
                },
            )
            raise

    # ------------------------------------------------------------------
    # Mode bodies
    # ------------------------------------------------------------------

    def run_observer(self, *, run_id: str, started_at: float, dry_run: bool = False) -> RunReport:
        """Read-only: find and score opportunities, log them for guarded mode."""
        now = self._clock()
        existing = self.page_store.existing_state(now)
        rankings = fetch_rankings(self._competitor_source)
        signals = fetch_signals(self._signal_sources)

        offered = set(self._settings.decision_thresholds().create.allowed_services)
        offered.update(split_key(key)[0] for key in existing.keys)

        found: List[Opportunity] = []
        found += find_market_gaps(
            rankings,
            existing,
            site_name=self._settings.site_name,
            max_position=self._settings.max_competitor_position,
        )
        found += find_service_gaps(rankings, offered, site_name=self._settings.site_name)
        found += find_position_opportunities(
            aggregate_by_key(signals), min_impressions=self._settings.create_min_impressions
        )

        scored = score_opportunities(found, city_populations(CITY_DATA))
        valid: List[Opportunity] = []
        for opp in scored:
            result = validate_opportunity(opp.to_dict())
            if result.valid:
                valid.append(opp)
            else:
                logger.warning("Dropping invalid opportunity %s: %s", opp.key, "; ".join(result.errors))

        by_priority = summarize_priorities(valid)
        self.audit.append(
            RunMode.OBSERVER,
            build_entry(
                RunMode.OBSERVER,
                ts=now,
                run_id=run_id,
                dry_run=dry_run,
                count=len(valid),
                by_priority=by_priority,
                opportunities=[o.to_dict() for o in valid],
            ),
        )
        return RunReport(
            RunMode.OBSERVER,
            run_id,
            started_at,
            dry_run=dry_run,
            counts={
                "rankings": len(rankings),
                "signals": len(signals),
                "opportunities": len(valid),
                "by_priority": by_priority,
            },
            details={"top": [o.to_dict() for o in top_opportunities(valid, limit=5)]},
        )

    def _proposal_decision(self, opp: Opportunity, existing: ExistingState) -> Decision:
        action = "CREATE_PAGE"
        if opp.type == "POSITION_OPPORTUNITY" and existing.contains(opp.service, opp.city):
            action = "EXPAND_CONTENT"
        return Decision(
            action_type=ActionType.PROPOSE,
            target_key=opp.key,
            reason=opp.reason or f"{opp.type} for {opp.service} in {opp.city}",
            priority=float(opp.score),
            payload={
                "action": action,
                "service": opp.service,
                "location": opp.city,
                "state": opp.state,
                "score": opp.score,
                "type": opp.type,
            },
        )

    def run_guarded(self, *, run_id: str, started_at: float, dry_run: bool = False) -> RunReport:
        """Turn today's best observer opportunities into pending proposals."""
        now = self._clock()
        latest = self.audit.latest(RunMode.OBSERVER)
        if latest is None:
            logger.warning("No observer run logged today; nothing to propose")
        raw = (latest or {}).get("opportunities") or []
        opportunities = [Opportunity.from_dict(row) for row in raw if isinstance(row, dict)]

        eligible = top_opportunities(
            filter_by_score(opportunities, self._settings.min_opportunity_score),
            limit=self._settings.max_proposals_per_run,
        )
        existing = self.page_store.existing_state(now)
        decisions = [self._proposal_decision(opp, existing) for opp in eligible]
        outcome = self._executor(dry_run).execute(decisions)

        counts = {
            "total": len(opportunities),
            "eligible": len(eligible),
            "fed": outcome.planned if dry_run else outcome.succeeded,
            "skipped": outcome.skipped,
            "failed": outcome.failed,
        }
        self.audit.append(
            RunMode.GUARDED,
            build_entry(
                RunMode.GUARDED,
                ts=now,
                run_id=run_id,
                dry_run=dry_run,
                decisions=decisions,
                outcome=outcome,
                source_observer_run=(latest or {}).get("run_id"),
                counts=counts,
            ),
        )
        return RunReport(RunMode.GUARDED, run_id, started_at, dry_run=dry_run, counts=counts, outcome=outcome)

    def _tuning_records(self, now: float) -> List[SignalRecord]:
        since = now - self._settings.tuning_lookback_days * _SECONDS_PER_DAY
        records: List[SignalRecord] = []
        for entry in self.audit.read_window(RunMode.DAILY, since=since, until=now):
            for row in entry.get("signals") or []:
                try:
                    records.append(SignalRecord.from_row(row))
                except (TypeError, ValueError):
                    continue
        if not records:
            records = aggregate_by_key(fetch_signals(self._signal_sources))
        return records

    def run_tuning(self, *, run_id: str, started_at: float, dry_run: bool = False) -> RunReport:
        """Analyze-only: recommend threshold adjustments, never apply them."""
        now = self._clock()
        records = self._tuning_records(now)
        recommendations = recommend_thresholds(records, self._settings.tuning_thresholds())
        tuning_report = build_tuning_report(recommendations, ts=now)
        self.audit.append(
            RunMode.TUNING,
            build_entry(
                RunMode.TUNING,
                ts=now,
                run_id=run_id,
                dry_run=dry_run,
                count=len(recommendations),
                records=len(records),
                report=tuning_report,
            ),
        )
        return RunReport(
            RunMode.TUNING,
            run_id,
            started_at,
            dry_run=dry_run,
            counts={"records": len(records), **tuning_report["summary"]},
            details={"recommendations": tuning_report["recommendations"]},
        )

    def run_daily(self, *, run_id: str, started_at: float, dry_run: bool = False) -> RunReport:
        """Ingest, decide, execute; the audit snapshot feeds the weekly pass."""
        now = self._clock()
        ingested = ingest_signals(self._signal_sources)
        signals = aggregate_by_key(ingested.records)
        existing = self.page_store.existing_state(now)
        decisions = decide(signals, existing, self._settings.decision_thresholds())
        logger.info(
            "Decided %d actions from %d signals (%d existing pages)",
            len(decisions),
            len(signals),
            len(existing),
        )
        outcome = self._executor(dry_run).execute(decisions)

        self.audit.append(
            RunMode.DAILY,
            build_entry(
                RunMode.DAILY,
                ts=now,
                run_id=run_id,
                dry_run=dry_run,
                signals=signals,
                decisions=decisions,
                outcome=outcome,
                ingestion_degraded=ingested.degraded,
                failed_sources=list(ingested.failed_sources),
                existing_pages=len(existing),
            ),
        )
        counts = {
            "signals": len(signals),
            "decisions": len(decisions),
            "existing_pages": len(existing),
            "failed_sources": len(ingested.failed_sources),
        }
        return RunReport(RunMode.DAILY, run_id, started_at, dry_run=dry_run, counts=counts, outcome=outcome)

    def run_weekly(self, *, run_id: str, started_at: float, dry_run: bool = False) -> RunReport:
        """Evaluate two windows of daily snapshots, clone winning patterns."""
        now = self._clock()
        thresholds = self._settings.learning_thresholds()
        window_s = thresholds.window_days * _SECONDS_PER_DAY
        entries = self.audit.read_window(RunMode.DAILY, since=now - 2 * window_s, until=now)

        evaluation = evaluate(entries, now=now, thresholds=thresholds)
        existing = self.page_store.existing_state(now)
        patterns = extract_patterns(evaluation, existing, thresholds)
        clones = decide_clones(patterns, existing, thresholds.max_clones_per_run)
        outcome = self._executor(dry_run).execute(clones)

        self.audit.append(
            RunMode.WEEKLY,
            build_entry(
                RunMode.WEEKLY,
                ts=now,
                run_id=run_id,
                dry_run=dry_run,
                decisions=clones,
                outcome=outcome,
                evaluation=evaluation.to_dict(),
                patterns=[p.to_dict() for p in patterns],
            ),
        )
        counts = {
            "daily_entries": len(entries),
            "pages": evaluation.total_pages,
            "winners": evaluation.winners,
            "losers": evaluation.losers,
            "stable": evaluation.stable,
            "patterns": len(patterns),
            "clones": len(clones),
        }
        return RunReport(RunMode.WEEKLY, run_id, started_at, dry_run=dry_run, counts=counts, outcome=outcome)


def _format_failure(item: Any) -> str:
    decision = item.decision
    return f"{decision.action_type.value}: {decision.service} in {decision.location} - {item.reason}"


def render_summary(report: RunReport) -> str:
    """Human-readable run summary; failed actions are itemized."""
    title = f"SEO Autopilot {report.mode.value} run"
    if report.dry_run:
        title += " (dry-run)"
    lines = [title, f"Run id: {report.run_id}", f"Status: {report.status}"]
    lines.append(f"Started: {iso_utc(report.started_at)}  Duration: {report.duration_s:.2f}s")

    if report.status == "lock_held":
        lines.append("Another run holds the lock; nothing done.")
        return "\n".join(lines)

    for key, value in report.counts.items():
        if isinstance(value, dict):
            rendered = " ".join(f"{k}={v}" for k, v in value.items()) or "none"
            lines.append(f"{key}: {rendered}")
        else:
            lines.append(f"{key}: {value}")

    outcome = report.outcome
    if outcome is not None:
        lines.append(
            f"Outcomes: succeeded={outcome.succeeded} failed={outcome.failed} "
            f"skipped={outcome.skipped} dry_run={outcome.planned}"
        )
        for action, per_status in sorted(outcome.counts_by_action().items()):
            rendered = " ".join(f"{k}={v}" for k, v in sorted(per_status.items()))
            lines.append(f"  {action}: {rendered}")
        failures = outcome.failures()
        if failures:
            lines.append("Failed actions:")
            lines.extend(f"  - {_format_failure(item)}" for item in failures)
        skipped = [o for o in outcome.outcomes if o.status == OutcomeStatus.SKIPPED]
        if skipped:
            lines.append("Skipped actions:")
            lines.extend(f"  - {_format_failure(item)}" for item in skipped)
        if report.dry_run and outcome.planned:
            lines.append("Planned actions:")
            lines.extend(
                f"  - {o.decision.action_type.value} {o.decision.target_key} "
                f"(priority {o.decision.priority:.2f}): {o.decision.reason}"
                for o in outcome.outcomes
                if o.status == OutcomeStatus.DRY_RUN
            )
    return "\n".join(lines)
