#!/usr/bin/env python3
"""
Continue Dispatch — run one continuation sweep from cron or a job runner.

Usage:
    python scripts/continue_dispatch.py                 # one sweep, wait for passes
    python scripts/continue_dispatch.py --timeout 50    # cancel passes still running after 50s
    python scripts/continue_dispatch.py --json          # print the sweep summary as JSON

Every run is independent: progress lives in the job store, so a run that is
killed mid-send simply leaves the rest for the next one.
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_once(timeout: float = None):
    from config.settings import load_settings
    settings = load_settings()

    from database.session import close_db, init_db
    from dispatch.service import create_service

    sql = settings.database.store_backend == "sql"
    if sql:
        await init_db()

    service = await create_service(settings)
    try:
        result = await service.continue_jobs()
        await service.drain(timeout)
        return result
    finally:
        await service.shutdown(timeout=0)
        if sql:
            await close_db()


def main():
    parser = argparse.ArgumentParser(description="Run one dispatch continuation sweep")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Seconds to wait for dispatch passes before cancelling them")
    parser.add_argument("--json", action="store_true", help="Print the sweep summary as JSON")
    args = parser.parse_args()

    result = asyncio.run(run_once(timeout=args.timeout))
    if args.json:
        print(result.model_dump_json(indent=2))
    else:
        print(f"Scanned {result.scanned} running job(s)")
        for entry in result.entries:
            detail = f" ({entry.detail})" if entry.detail else ""
            print(f"  {entry.job_id}: {entry.action.value}{detail}")


if __name__ == "__main__":
    main()
