#!/usr/bin/env python3
"""Backfill telemetry events for an account and time window.

Examples:
  python backend/scripts/sync_window.py acme-gaming
  python backend/scripts/sync_window.py acme-gaming 2025-01-01T00:00:00Z 2025-01-08T00:00:00Z
  TELEMETRY_ACCOUNT_ID=acme-gaming python backend/scripts/sync_window.py --pretty
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from core.logging import configure_logging


async def _run_window(account_id: str, start_time: str | None, end_time: str | None) -> dict:
    from workers.scheduler import SyncScheduler

    scheduler = SyncScheduler(account_id=account_id)
    result = await scheduler.run_window(account_id, start_time, end_time)
    return result.as_dict()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Backfill telemetry events for a time window")
    parser.add_argument("account_id", nargs="?", help="Telemetry account (default: TELEMETRY_ACCOUNT_ID)")
    parser.add_argument("start_time", nargs="?", help="ISO-8601 window start (default: end - 24h)")
    parser.add_argument("end_time", nargs="?", help="ISO-8601 window end (default: now)")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    account_id = args.account_id or settings.telemetry_account_id
    if not account_id:
        print("Missing account id. Pass it as the first argument or set TELEMETRY_ACCOUNT_ID.", file=sys.stderr)
        return 1

    try:
        summary = asyncio.run(_run_window(account_id, args.start_time, args.end_time))
    except Exception as exc:  # noqa: BLE001
        summary = {"status": "failed", "account_id": account_id, "error": str(exc)}

    if args.pretty:
        print(json.dumps(summary, indent=2, sort_keys=True, default=str))
    else:
        print(json.dumps(summary, default=str))

    return 0 if summary["status"] != "failed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
