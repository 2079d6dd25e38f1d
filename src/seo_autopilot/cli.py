from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List

from pydantic import ValidationError

from seo_autopilot.config import AutopilotSettings
from seo_autopilot.config_env import ENV_FILE, RunMode
from seo_autopilot.errors import FatalRunError
from seo_autopilot.ingestion import build_signal_sources
from seo_autopilot.lock_manager import LockManager
from seo_autopilot.pipeline import Pipeline, render_summary

logger = logging.getLogger(__name__)

COMMANDS = ("help", "doctor")

MODE_HELP = {
    RunMode.OBSERVER: "Read-only: scan competitors and signals, log scored opportunities.",
    RunMode.GUARDED: "Write pending proposals from today's observer run (needs SEO_GUARDED_MODE_ENABLED).",
    RunMode.TUNING: "Analyze recent performance and recommend threshold changes.",
    RunMode.DAILY: "Decide and execute create/rewrite/expand/freeze actions under rate limits.",
    RunMode.WEEKLY: "Evaluate the last two weeks, extract winning patterns, clone them.",
}


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="seo-autopilot",
        description="Safety-guarded SEO decision and execution pipeline",
    )
    parser.add_argument(
        "mode",
        choices=RunMode.values() + list(COMMANDS),
        help="Run mode, or 'help' / 'doctor'.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Decide and print intended actions without executing them.",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Override SEO_DATA_DIR (locks, audit log, pages, proposals).",
    )
    parser.add_argument("--json", action="store_true", help="Emit JSON output")
    return parser


def _configure_logging(level_name: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


def _print_help() -> None:
    print("seo-autopilot <mode> [--dry-run] [--data-dir DIR] [--json]")
    print("")
    print("Modes:")
    for mode, text in MODE_HELP.items():
        print(f"  {mode.value:<10} {text}")
    print("")
    print("Commands:")
    print(f"  {'help':<10} Show this message.")
    print(f"  {'doctor':<10} Check configuration health.")


def _doctor(settings: AutopilotSettings) -> Dict[str, Any]:
    data_dir = Path(settings.data_dir)
    checks: List[Dict[str, Any]] = []

    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        writable = os.access(data_dir, os.W_OK)
    except OSError:
        writable = False
    checks.append({"check": "data_dir_writable", "ok": writable, "detail": str(data_dir)})

    checks.append(
        {
            "check": "content_generator",
            "ok": settings.content_configured,
            "detail": settings.content_api_base if settings.content_configured else "SEO_CONTENT_API_KEY not set",
        }
    )
    sources = build_signal_sources(settings)
    checks.append(
        {
            "check": "signal_sources",
            "ok": bool(sources),
            "detail": ", ".join(s.name for s in sources) or "SEO_SIGNALS_PATH / SEO_SIGNALS_URL not set",
        }
    )
    checks.append(
        {
            "check": "guarded_mode",
            "ok": True,
            "detail": "enabled" if settings.guarded_mode_enabled else "disabled",
        }
    )

    locks = LockManager(data_dir / "locks", settings.lock_timeouts())
    for mode in RunMode:
        try:
            record = locks.read_lock(mode)
        except ValueError as exc:
            checks.append({"check": f"lock:{mode.value}", "ok": False, "detail": str(exc)})
            continue
        if record is None:
            continue
        state = "stale" if locks.is_stale(record) else "held"
        checks.append(
            {
                "check": f"lock:{mode.value}",
                "ok": True,
                "detail": f"{state} by pid={record.pid} holder={record.holder_id}",
            }
        )

    return {
        "ok": writable,
        "env_file": str(ENV_FILE),
        "checks": checks,
    }


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)

    if args.mode == "help":
        _print_help()
        return 0

    try:
        settings = AutopilotSettings()
    except ValidationError as exc:
        print(f"error: invalid configuration: {exc}", file=sys.stderr)
        return 1
    if args.data_dir:
        settings = settings.model_copy(update={"data_dir": Path(args.data_dir)})
    _configure_logging(settings.log_level)

    if args.mode == "doctor":
        payload = _doctor(settings)
        if args.json:
            _print_json(payload)
        else:
            print(f"env_file: {payload['env_file']}")
            for row in payload["checks"]:
                marker = "ok " if row["ok"] else "FAIL"
                print(f"[{marker}] {row['check']}: {row['detail']}")
        return 0 if payload["ok"] else 1

    pipeline = Pipeline(settings)
    try:
        report = pipeline.run(args.mode, dry_run=args.dry_run)
    except FatalRunError as exc:
        logger.error("Run aborted: %s", exc)
        if args.json:
            _print_json({"ok": False, "mode": args.mode, "error": str(exc)})
        else:
            print(f"error: {exc}", file=sys.stderr)
        return 1

    summary = render_summary(report)
    if report.status == "completed" and not args.dry_run:
        pipeline.audit.write_summary(report.mode, summary)
    if args.json:
        _print_json({"ok": True, **report.to_dict()})
    else:
        print(summary)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
