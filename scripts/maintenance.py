#!/usr/bin/env python3
"""Periodic housekeeping for the account-security tables.

Usage:
    python scripts/maintenance.py                      # run every task
    python scripts/maintenance.py --only failed-logins
    python scripts/maintenance.py --lockout-days 30

Tasks:
    failed-logins: delete attempts older than FAILED_LOGIN_RETENTION_DAYS
    invitations:   mark overdue PENDING/SENT invitations EXPIRED
    lockouts:      delete lockouts that ended more than --lockout-days ago
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

TASKS = ("failed-logins", "invitations", "lockouts")


def run_maintenance(runtime, tasks=TASKS, *, retention_days: int | None = None, lockout_days: int = 90) -> dict:
    results: dict[str, int] = {}
    if "failed-logins" in tasks:
        results["failed-logins"] = runtime.failed_logins.cleanup(retention_days)
    if "invitations" in tasks:
        results["invitations"] = runtime.invitations.cleanup_expired()
    if "lockouts" in tasks:
        results["lockouts"] = runtime.lockouts.cleanup_expired(lockout_days)
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Gatekeep housekeeping",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--only", choices=TASKS, action="append", help="Run only this task (repeatable)")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override FAILED_LOGIN_RETENTION_DAYS for this run",
    )
    parser.add_argument(
        "--lockout-days",
        type=int,
        default=90,
        help="Keep ended lockouts for this many days (default: 90)",
    )
    args = parser.parse_args()

    from gatekeep.config import Settings
    from gatekeep.service.runtime import Runtime

    runtime = Runtime(Settings.from_env())
    try:
        results = run_maintenance(
            runtime,
            tuple(args.only or TASKS),
            retention_days=args.retention_days,
            lockout_days=args.lockout_days,
        )
    finally:
        runtime.close()

    for task, count in results.items():
        print(f"{task}: {count}")


if __name__ == "__main__":
    main()
