from __future__ import annotations

import importlib.util
import sys
from pathlib import Path

from seo_autopilot.audit_log import AuditLog
from seo_autopilot.config_env import RunMode

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "summarize_audit.py"


def _load_module(path: Path, name: str):
    spec = importlib.util.spec_from_file_location(name, path)
    module = importlib.util.module_from_spec(spec)
    assert spec is not None and spec.loader is not None
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


def test_summary_lists_runs_and_failed_actions(tmp_path, clock):
    mod = _load_module(SCRIPT, "summarize_audit_mod")
    log = AuditLog(tmp_path / "audit", clock=clock)
    log.append(
        RunMode.DAILY,
        {
            "ts": clock.now - 3600.0,
            "run_id": "0123456789abcdef",
            "count": 2,
            "outcome": {
                "succeeded": 1,
                "failed": 1,
                "skipped": 0,
                "outcomes": [
                    {"action_type": "CREATE", "target_key": "plumbing:Austin", "status": "succeeded"},
                    {"action_type": "REWRITE", "target_key": "hvac:Denver", "status": "failed",
                     "reason": "No page for hvac:Denver"},
                ],
            },
        },
    )
    log.append(RunMode.DAILY, {"ts": clock.now - 60.0, "run_id": "fedcba", "status": "aborted"})
    log.append(RunMode.DAILY, {"ts": clock.now - 30.0, "run_id": "dry", "dry_run": True, "count": 0})

    text = mod.summarize(log, days=7, now_value=clock.now, modes=["daily", "weekly"])

    assert "## daily" in text
    assert "- runs: 3 (dry-run: 1, aborted: 1)" in text
    assert "| 01234567 | 2 | 1 | 1 | 0 |" in text
    assert "| fedcba | aborted |" in text
    assert "- REWRITE hvac:Denver: No page for hvac:Denver" in text
    assert "## weekly\n- no runs" in text


def test_main_writes_output_file(tmp_path):
    mod = _load_module(SCRIPT, "summarize_audit_main_mod")
    out = tmp_path / "summary.md"

    rc = mod.main(["--data-dir", str(tmp_path / "data"), "--mode", "daily", "--output", str(out)])

    assert rc == 0
    assert out.read_text().startswith("# SEO Autopilot Audit Summary")
