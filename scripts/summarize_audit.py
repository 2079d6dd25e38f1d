#!/usr/bin/env python3
"""Render a markdown summary of recent autopilot audit entries, per mode."""
from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from seo_autopilot.audit_log import AuditLog  # noqa: E402
from seo_autopilot.config_env import ENV_FILE, RunMode  # noqa: E402
from seo_autopilot.storage import atomic_write_text, iso_utc  # noqa: E402


def _outcome_counts(entry: Dict[str, Any]) -> Dict[str, int]:
    outcome = entry.get("outcome") or {}
    return {
        "succeeded": int(outcome.get("succeeded", 0) or 0),
        "failed": int(outcome.get("failed", 0) or 0),
        "skipped": int(outcome.get("skipped", 0) or 0),
    }


def _failures(entry: Dict[str, Any]) -> List[str]:
    rows = []
    for item in (entry.get("outcome") or {}).get("outcomes") or []:
        if item.get("status") == "failed":
            rows.append(f"{item.get('action_type')} {item.get('target_key')}: {item.get('reason')}")
    return rows


def summarize(log: AuditLog, *, days: int, now_value: float, modes: Optional[List[str]] = None) -> str:
    since = now_value - days * 86400.0
    lines: List[str] = [
        "# SEO Autopilot Audit Summary",
        f"Generated: {iso_utc(now_value)}",
        f"Window: last {days} day(s)",
        "",
    ]

    for mode in modes or RunMode.values():
        entries = log.read_window(mode, since=since, until=now_value)
        lines.append(f"## {mode}")
        if not entries:
            lines.append("- no runs")
            lines.append("")
            continue

        aborted = sum(1 for e in entries if e.get("status") == "aborted")
        dry_runs = sum(1 for e in entries if e.get("dry_run"))
        lines.append(f"- runs: {len(entries)} (dry-run: {dry_runs}, aborted: {aborted})")
        lines.append("")
        lines.append("| Time | Run | Count | Succeeded | Failed | Skipped |")
        lines.append("|---|---|---:|---:|---:|---:|")
        failures: List[str] = []
        for entry in entries:
            counts = _outcome_counts(entry)
            run_id = str(entry.get("run_id", ""))[:8]
            count = entry.get("count", "")
            if entry.get("status") == "aborted":
                count = "aborted"
            lines.append(
                f"| {entry.get('ts_iso', '')} | {run_id} | {count} | "
                f"{counts['succeeded']} | {counts['failed']} | {counts['skipped']} |"
            )
            failures.extend(_failures(entry))
        if failures:
            lines.append("")
            lines.append("Failed actions:")
            lines.extend(f"- {row}" for row in failures)
        lines.append("")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Summarize recent SEO autopilot audit entries.")
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Autopilot data directory (default: SEO_DATA_DIR or data/seo_autopilot).",
    )
    parser.add_argument("--days", type=int, default=7, help="Lookback window in days.")
    parser.add_argument("--mode", action="append", choices=RunMode.values(), help="Limit to one mode (repeatable).")
    parser.add_argument("--output", default=None, help="Write markdown here instead of stdout.")
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv(ENV_FILE)
    args = build_parser().parse_args(argv)
    data_dir = Path(args.data_dir or os.getenv("SEO_DATA_DIR") or "data/seo_autopilot")
    log = AuditLog(data_dir / "audit")
    text = summarize(log, days=max(1, args.days), now_value=time.time(), modes=args.mode)
    if args.output:
        atomic_write_text(Path(args.output), text + "\n")
        print(f"Wrote {args.output}")
    else:
        print(text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
