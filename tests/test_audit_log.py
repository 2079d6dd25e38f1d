from __future__ import annotations

from seo_autopilot.audit_log import AuditLog, build_entry, submission_counts
from seo_autopilot.config_env import ActionType, RunMode
from seo_autopilot.models import Decision, DecisionOutcome, OutcomeStatus, RunOutcome, SignalRecord

DAY = 86400.0


def _outcome(action, status):
    decision = Decision(action_type=action, target_key="plumbing:Austin", reason="r", priority=1.0)
    return DecisionOutcome(decision, status)


def test_entries_land_in_one_file_per_mode_per_day(tmp_path, clock):
    log = AuditLog(tmp_path / "audit", clock=clock)

    record = log.append(RunMode.DAILY, {"run_id": "a", "count": 1})

    path = tmp_path / "audit" / "daily" / "daily-2023-11-14.jsonl"
    assert path.exists()
    assert record["mode"] == "daily"
    assert record["schema_version"] == 1
    assert record["ts_iso"] == "2023-11-14T22:13:20Z"
    assert log.latest(RunMode.DAILY)["run_id"] == "a"
    assert log.latest(RunMode.WEEKLY) is None


def test_read_window_spans_days_and_bounds(tmp_path, clock):
    log = AuditLog(tmp_path / "audit", clock=clock)
    for offset in (3, 2, 1, 0):
        log.append(RunMode.DAILY, {"ts": clock.now - offset * DAY, "run_id": str(offset)})

    entries = log.read_window(RunMode.DAILY, since=clock.now - 2 * DAY)

    assert [e["run_id"] for e in entries] == ["1", "0"]


def test_write_summary(tmp_path, clock):
    log = AuditLog(tmp_path / "audit", clock=clock)

    path = log.write_summary(RunMode.WEEKLY, "hello")

    assert path.name == "weekly-2023-11-14-summary.md"
    assert path.read_text() == "hello\n"


def test_submission_counts_only_outward_attempts():
    outcome = RunOutcome(
        [
            _outcome(ActionType.CREATE, OutcomeStatus.SUCCEEDED),
            _outcome(ActionType.REWRITE, OutcomeStatus.FAILED),
            _outcome(ActionType.EXPAND, OutcomeStatus.SKIPPED),
            _outcome(ActionType.CREATE, OutcomeStatus.DRY_RUN),
            _outcome(ActionType.FREEZE, OutcomeStatus.SUCCEEDED),
        ]
    )

    assert submission_counts(outcome) == {"attempted": 2, "failed": 1}
    assert submission_counts(None) == {"attempted": 0, "failed": 0}


def test_build_entry_sections():
    signals = [SignalRecord("plumbing", "Austin", 150, 5, 12.0)]

    entry = build_entry(RunMode.DAILY, ts=0.0, run_id="r", signals=signals, decisions=[], extra_field=3)

    assert entry["totals"] == {"clicks": 5, "impressions": 150}
    assert entry["signals"][0]["service"] == "plumbing"
    assert entry["count"] == 0
    assert "outcome" not in entry
    assert entry["extra_field"] == 3


def test_degraded_ingestion_entry_keeps_signals_but_no_totals():
    signals = [SignalRecord("plumbing", "Austin", 150, 5, 12.0)]

    entry = build_entry(RunMode.DAILY, ts=0.0, run_id="r", signals=signals, ingestion_degraded=True)

    assert entry["ingestion_degraded"] is True
    assert "totals" not in entry
    assert entry["signals"][0]["location"] == "Austin"
    assert "ingestion_degraded" not in build_entry(RunMode.DAILY, ts=0.0, run_id="r", signals=signals)
