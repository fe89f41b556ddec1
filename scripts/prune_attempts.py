#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

from login_guard.core.config import BRUTE_FORCE_RETENTION_DAYS  # noqa: E402
from login_guard.core.database import SessionLocal, engine  # noqa: E402
from login_guard.core.startup_checks import ensure_ledger_tables_exist  # noqa: E402
from login_guard.deps import build_guard  # noqa: E402
from login_guard.services.guard_errors import GuardError  # noqa: E402


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete login attempts older than the retention period.")
    parser.add_argument(
        "--days",
        type=int,
        default=BRUTE_FORCE_RETENTION_DAYS,
        help=f"Retention in days (default {BRUTE_FORCE_RETENTION_DAYS})",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        ensure_ledger_tables_exist(engine)
    except RuntimeError as exc:
        print(str(exc))
        return 1

    try:
        removed = build_guard(SessionLocal).prune_attempts(timedelta(days=args.days))
    except GuardError as exc:
        print(f"Prune failed: {exc}")
        return 1

    print(f"Pruned {removed} login attempts older than {args.days} days")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
