from __future__ import annotations

import json

import pytest

from seo_autopilot.cli import main
from seo_autopilot.config_env import RunMode
from seo_autopilot.lock_manager import LockManager


def test_invalid_mode_is_a_usage_error(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["hourly"])
    assert excinfo.value.code == 2
    assert "invalid choice" in capsys.readouterr().err


def test_help_lists_modes(capsys):
    assert main(["help"]) == 0
    out = capsys.readouterr().out
    for mode in RunMode.values():
        assert mode in out


def test_held_lock_exits_zero(tmp_path, capsys):
    holder = LockManager(tmp_path / "locks", holder_id="other")
    assert holder.acquire(RunMode.DAILY) is True

    rc = main(["daily", "--data-dir", str(tmp_path), "--json"])

    assert rc == 0
    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert payload["ok"] is True
    assert payload["status"] == "lock_held"
    holder.release(RunMode.DAILY)


def test_completed_run_writes_summary(tmp_path, capsys):
    rc = main(["daily", "--data-dir", str(tmp_path)])

    assert rc == 0
    assert "SEO Autopilot daily run" in capsys.readouterr().out
    assert list((tmp_path / "audit" / "daily").glob("daily-*-summary.md"))


def test_dry_run_writes_no_summary(tmp_path):
    assert main(["daily", "--dry-run", "--data-dir", str(tmp_path)]) == 0
    assert not list((tmp_path / "audit" / "daily").glob("daily-*-summary.md"))


def test_guarded_disabled_exits_nonzero(tmp_path, capsys):
    rc = main(["guarded", "--data-dir", str(tmp_path)])

    assert rc == 1
    assert "Guarded mode is disabled" in capsys.readouterr().err


def test_doctor_reports_checks(tmp_path, capsys):
    rc = main(["doctor", "--data-dir", str(tmp_path), "--json"])

    assert rc == 0
    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    checks = {row["check"]: row for row in payload["checks"]}
    assert checks["data_dir_writable"]["ok"] is True
    assert checks["content_generator"]["ok"] is False
    assert checks["guarded_mode"]["detail"] == "disabled"
