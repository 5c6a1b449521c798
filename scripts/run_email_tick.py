#!/usr/bin/env python
"""Evaluate the department report schedules once, outside the web process.

Usage: python scripts/run_email_tick.py [--at 2026-10-19T12:30:00Z]

``--at`` replays a past instant; it becomes the claim time, so instants later than the
current time are refused.
"""
from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from tracker.logging_utils import setup_json_logging
from tracker.services.email_scheduler import run_auto_email_tick
from tracker.services.email_triggers import normalize_utc


def _parse_instant(value: str) -> datetime:
    return normalize_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def main(
    argv: list[str] | None = None,
    *,
    run_tick: Callable[..., list] = run_auto_email_tick,
    clock: Callable[[], datetime] = _utcnow,
) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--at", type=_parse_instant, default=None, help="UTC instant to evaluate (ISO 8601).")
    args = parser.parse_args(argv)

    if args.at is not None and args.at > clock():
        parser.error("--at must not be later than the current time")

    setup_json_logging()
    results = run_tick(args.at)
    print(json.dumps([item.to_dict() for item in results], ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
