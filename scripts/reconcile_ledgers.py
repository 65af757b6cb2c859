#!/usr/bin/env python3
"""Maintenance script to reconcile ledgers against active tasks.

Usage:
    python scripts/reconcile_ledgers.py              # every ledger
    python scripts/reconcile_ledgers.py <user_id>    # one user
"""

import asyncio
import logging
import sys

from commitbet.core import db_client
from commitbet.core.logging import configure_logfire
from commitbet.domain.ledger import ReconciliationReport
from commitbet.modules.tasks import maintenance


logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)


def _report(report: ReconciliationReport) -> None:
    logger.info(
        "user %s: locked %s -> %s, balance adjusted by %s",
        report.ledger.user_id,
        report.stored_locked_amount,
        report.expected_locked_amount,
        report.balance_adjustment,
    )


async def run(user_id: str | None = None) -> list[ReconciliationReport]:
    """Reconcile one user's ledger, or all of them, and log what was repaired."""
    await db_client.init_db()
    try:
        if user_id is None:
            reports = await maintenance.reconcile_all_ledgers()
        else:
            report = await maintenance.reconcile_ledger(user_id=user_id)
            reports = [report] if report.repaired else []
    finally:
        await db_client.close_connection()

    if not reports:
        logger.info("No drift found")
    for report in reports:
        _report(report)
    return reports


def main() -> None:
    configure_logfire()
    args = sys.argv[1:]
    if len(args) > 1 or (args and args[0] in ("-h", "--help")):
        logger.info(__doc__)
        sys.exit(1)
    asyncio.run(run(args[0] if args else None))


if __name__ == "__main__":
    main()
