#!/usr/bin/env python
"""Scheduled sync for registered connections.

Runs the manual-refresh path (poll, then reconcile) for every connection,
or for one user's. Meant to be run from cron, so an OAuth challenge is only
reported: starting the hand-off is left to the user's own sync.

Usage:
    python -m scripts.sync_connections
    python -m scripts.sync_connections --user-id 42
    python -m scripts.sync_connections --refresh --max-attempts 5
"""

import argparse
import logging
import sys

from database import get_session_local
from logging_config import setup_logging
from services.connection_registry import ConnectionRegistry
from services.errors import OpenFinanceError
from services.open_finance_service import OpenFinanceService, SyncOutcome

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync registered bank connections")
    parser.add_argument("--user-id", help="Only sync this user's connections")
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Ask the bank for fresh data before syncing",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Status polls per connection (default: POLL_MAX_ATTEMPTS)",
    )
    return parser.parse_args(argv)


def run(db, service: OpenFinanceService, user_id: str | None = None, refresh: bool = False) -> int:
    """Sync every matching connection.

    Returns:
        The number of connections that failed with an error.
    """
    failures = 0
    connections = ConnectionRegistry.list_connections(db, user_id)
    logger.info("Syncing %d connections", len(connections))

    for conn in connections:
        local_id = conn.id
        try:
            if refresh:
                summary = service.refresh(db, local_id, start_oauth=False)
            else:
                summary = service.sync(db, local_id, start_oauth=False)
        except OpenFinanceError as e:
            failures += 1
            db.rollback()
            logger.warning("Connection %s failed: %s", local_id, e)
            continue

        if summary.outcome in (SyncOutcome.SYNCED, SyncOutcome.PARTIAL):
            logger.info(
                "Connection %s: %s, %d saved, %d skipped",
                local_id, summary.outcome.value,
                summary.transactions_saved, summary.transactions_skipped,
            )
        else:
            logger.info(
                "Connection %s: %s (%s)",
                local_id, summary.outcome.value, summary.message or summary.status.value,
            )
    return failures


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    args = parse_args(argv)

    service = OpenFinanceService(max_attempts=args.max_attempts)
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        failures = run(db, service, user_id=args.user_id, refresh=args.refresh)
    finally:
        db.close()
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
