#!/usr/bin/env python3
"""CLI script to run one sync outside the HTTP server.

Usage:
    uv run python scripts/run_sync.py rezen transaction
    uv run python scripts/run_sync.py zoho agent --batch-size 5 --batch-delay 1.0
    uv run python scripts/run_sync.py rezen listing --no-details --max-pages 2 --deadline 240

Connects directly to the database using DATABASE_URL from environment or .env file.
Prints the run result as JSON; exits 1 when the run is FAILED.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys

# Ensure project root is on sys.path so we can import src.synchub
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(args: argparse.Namespace) -> int:
    """Build the services, run the sync and print the result."""
    from src.synchub.api.middleware.logging import configure_structlog
    from src.synchub.config import get_settings
    from src.synchub.core.database import close_db, init_db
    from src.synchub.services import build_services
    from src.synchub.sync.schemas import EntityKind, SyncRunParams, SyncSource, SyncStatus

    configure_structlog()
    await init_db()
    services = build_services(get_settings())

    # Ctrl-C stops at the next batch boundary instead of mid-batch
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)

    params = SyncRunParams(
        source=SyncSource(args.source),
        filters=json.loads(args.filters) if args.filters else {},
        fetch_details=not args.no_details,
        batch_size=args.batch_size,
        batch_delay_seconds=args.batch_delay,
        deadline_seconds=args.deadline,
        max_pages=args.max_pages,
    )
    try:
        result = await services.orchestrator.run_sync(
            EntityKind(args.entity_kind), params, stop_event=stop_event
        )
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        await services.aclose()
        await close_db()

    print(result.model_dump_json(indent=2))
    return 0 if result.status == SyncStatus.SUCCESS else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one sync from an external system")
    parser.add_argument("source", choices=["rezen", "zoho", "quickbooks"], help="External system")
    parser.add_argument(
        "entity_kind",
        choices=["agent", "listing", "transaction", "commission_payment"],
        help="Entity kind to sync",
    )
    parser.add_argument("--filters", help="JSON object of source-specific filters")
    parser.add_argument("--no-details", action="store_true", help="Skip per-record detail fetches")
    parser.add_argument("--batch-size", type=int, help="Records per batch")
    parser.add_argument("--batch-delay", type=float, help="Seconds between batches")
    parser.add_argument("--deadline", type=float, help="Stop at the next batch boundary after N seconds")
    parser.add_argument("--max-pages", type=int, help="Maximum list pages to fetch")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
