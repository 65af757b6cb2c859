"""Ledger reconciliation: restore locked_amount from the tasks that are actually active."""

import logging
from decimal import Decimal

from commitbet.core import db_client
from commitbet.core.db_client import sanitize_param
from commitbet.core.logging import log_with_user_context, span
from commitbet.domain.ledger import ReconciliationReport
from commitbet.domain.task import TaskKind, TaskStatus
from commitbet.services import ledger_service


logger = logging.getLogger(__name__)


async def reconcile_ledger(*, user_id: str) -> ReconciliationReport:
    """Recompute a user's locked amount from their IN_PROGRESS and SUBMITTED tasks.

    Drift is moved into or out of the balance (never below zero) and logged as a
    reconciliation entry. A consistent ledger is left untouched, so repeated runs
    are no-ops.

    Raises:
        NotFoundError: If the user has no ledger
    """
    with span("maintenance.reconcile_ledger"):
        async with db_client.transaction():
            ledger = await ledger_service.get_ledger(user_id=user_id)
            active = await db_client.list_all_records(
                collection="tasks",
                filter_query=(
                    f'kind = "{TaskKind.INSTANCE}" && user_id = "{sanitize_param(user_id)}"'
                    f' && (status = "{TaskStatus.IN_PROGRESS}" || status = "{TaskStatus.SUBMITTED}")'
                ),
            )
            expected = sum((Decimal(r["bet_amount"]) for r in active), Decimal("0"))
            stored = ledger.locked_amount
            drift = stored - expected

            if drift == 0:
                logger.debug("Ledger for user %s is consistent", user_id)
                return ReconciliationReport(
                    ledger=ledger,
                    stored_locked_amount=stored,
                    expected_locked_amount=expected,
                    drift=drift,
                    balance_adjustment=Decimal("0"),
                    active_task_count=len(active),
                )

            new_balance = max(ledger.balance + drift, Decimal("0"))
            adjustment = new_balance - ledger.balance
            log_with_user_context(
                logger,
                "warning",
                "Ledger drift detected",
                user_id=user_id,
                stored_locked_amount=str(stored),
                expected_locked_amount=str(expected),
                drift=str(drift),
                balance_adjustment=str(adjustment),
                active_task_count=len(active),
            )
            repaired = await ledger_service.restate(
                user_id=user_id,
                locked_amount=expected,
                balance=new_balance,
                description=f"Reconciliation: locked {stored} -> {expected}",
            )

        return ReconciliationReport(
            ledger=repaired,
            stored_locked_amount=stored,
            expected_locked_amount=expected,
            drift=drift,
            balance_adjustment=adjustment,
            active_task_count=len(active),
        )


async def reconcile_all_ledgers() -> list[ReconciliationReport]:
    """Reconcile every ledger, logging and skipping any that fail.

    Returns:
        Reports for ledgers that had drift
    """
    with span("maintenance.reconcile_all_ledgers"):
        ledgers = await db_client.list_all_records(collection="ledgers")
        repaired: list[ReconciliationReport] = []
        for record in ledgers:
            try:
                report = await reconcile_ledger(user_id=record["user_id"])
            except Exception:
                logger.exception("Reconciliation failed for user %s", record["user_id"])
                continue
            if report.repaired:
                repaired.append(report)

        logger.info("Reconciled %d ledger(s), %d repaired", len(ledgers), len(repaired))
        return repaired
