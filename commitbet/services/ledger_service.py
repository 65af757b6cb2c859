"""Ledger service: per-user balances, locked stake and the append-only transaction log.

Every mutation updates the ledger row and appends its log entry in one store
transaction. Callers that settle a task open the outer transaction themselves so
the status flip commits together with the money movement.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from commitbet.core import clock, db_client
from commitbet.core.config import Constants, settings
from commitbet.core.errors import InvalidRequestError, LedgerInconsistencyError, NotFoundError
from commitbet.core.logging import log_with_user_context, span
from commitbet.domain.ledger import Ledger, LedgerTransaction, TransactionPage, TransactionType


logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def to_amount(value: Decimal | int | str) -> Decimal:
    """Coerce user input into a finite Decimal amount."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        msg = f"Invalid amount: {value!r}"
        raise InvalidRequestError(msg) from e
    if not amount.is_finite():
        msg = f"Invalid amount: {value!r}"
        raise InvalidRequestError(msg)
    return amount


async def _get_ledger_record(user_id: str) -> dict[str, Any]:
    record = await db_client.get_first_record(
        collection="ledgers",
        filter_query=f'user_id = "{db_client.sanitize_param(user_id)}"',
    )
    if record is None:
        msg = f"Ledger not found for user {user_id}"
        raise NotFoundError(msg)
    return record


async def _append_transaction(
    *,
    user_id: str,
    transaction_type: TransactionType,
    amount: Decimal,
    task_id: str | None,
    description: str,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "user_id": user_id,
        "type": transaction_type,
        "amount": amount,
        "description": description,
        "timestamp": clock.utc_now(),
    }
    if task_id is not None:
        data["task_id"] = task_id
    return await db_client.create_record(collection="ledger_transactions", data=data)


async def _move(
    *,
    user_id: str,
    transaction_type: TransactionType,
    amount: Decimal,
    logged_amount: Decimal,
    task_id: str | None = None,
    description: str = "",
    balance_delta: Decimal = _ZERO,
    locked_delta: Decimal = _ZERO,
    deposited_delta: Decimal = _ZERO,
    donated_delta: Decimal = _ZERO,
) -> Ledger:
    """Apply deltas to the ledger and append one log entry, atomically.

    Raises:
        LedgerInconsistencyError: If balance or locked_amount would drop below zero
    """
    async with db_client.transaction():
        record = await _get_ledger_record(user_id)
        balance = Decimal(record["balance"]) + balance_delta
        locked = Decimal(record["locked_amount"]) + locked_delta

        if balance < 0 or locked < 0:
            log_with_user_context(
                logger,
                "warning",
                "Ledger movement rejected",
                user_id=user_id,
                transaction_type=str(transaction_type),
                amount=str(amount),
                balance=record["balance"],
                locked_amount=record["locked_amount"],
            )
            msg = (
                f"{transaction_type} of {amount} would leave ledger for user {user_id} at "
                f"balance {balance}, locked {locked}"
            )
            raise LedgerInconsistencyError(msg)

        updated = await db_client.update_record(
            collection="ledgers",
            record_id=record["id"],
            data={
                "balance": balance,
                "locked_amount": locked,
                "total_deposited": Decimal(record["total_deposited"]) + deposited_delta,
                "total_donated": Decimal(record["total_donated"]) + donated_delta,
            },
        )
        await _append_transaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=logged_amount,
            task_id=task_id,
            description=description,
        )

    log_with_user_context(
        logger,
        "info",
        "Ledger updated",
        user_id=user_id,
        transaction_type=str(transaction_type),
        amount=str(amount),
        task_id=task_id,
    )
    return Ledger.model_validate(updated)


async def open_ledger(*, user_id: str) -> Ledger:
    """Open a user's ledger with the configured initial balance.

    The initial credit counts as a deposit and is logged as one.
    """
    with span("ledger_service.open_ledger"):
        initial = settings.initial_balance
        async with db_client.transaction():
            record = await db_client.create_record(
                collection="ledgers",
                data={
                    "user_id": user_id,
                    "balance": initial,
                    "locked_amount": _ZERO,
                    "total_deposited": initial,
                    "total_donated": _ZERO,
                },
            )
            await _append_transaction(
                user_id=user_id,
                transaction_type=TransactionType.DEPOSIT,
                amount=initial,
                task_id=None,
                description="Initial balance",
            )

        logger.info("Opened ledger for user %s with %s", user_id, initial)
        return Ledger.model_validate(record)


async def get_ledger(*, user_id: str) -> Ledger:
    """Get a user's ledger.

    Raises:
        NotFoundError: If the user has no ledger
    """
    with span("ledger_service.get_ledger"):
        return Ledger.model_validate(await _get_ledger_record(user_id))


async def deposit(*, user_id: str, amount: Decimal | int | str) -> Ledger:
    """Add funds to a user's balance.

    Args:
        user_id: Owner of the ledger
        amount: Positive amount, at most Settings.max_deposit_per_call

    Returns:
        Updated ledger

    Raises:
        InvalidRequestError: If the amount is not positive or exceeds the per-call limit
        NotFoundError: If the user has no ledger
    """
    with span("ledger_service.deposit"):
        value = to_amount(amount)
        if value <= 0:
            msg = "Deposit amount must be greater than 0"
            raise InvalidRequestError(msg)
        if value > settings.max_deposit_per_call:
            msg = f"Deposit amount cannot exceed {settings.max_deposit_per_call}"
            raise InvalidRequestError(msg)

        return await _move(
            user_id=user_id,
            transaction_type=TransactionType.DEPOSIT,
            amount=value,
            logged_amount=value,
            description="Deposit",
            balance_delta=value,
            deposited_delta=value,
        )


async def lock(*, user_id: str, amount: Decimal, task_id: str, description: str = "") -> Ledger:
    """Move a stake from balance into locked_amount.

    The caller checks available funds first; this only refuses to go negative.
    """
    with span("ledger_service.lock"):
        return await _move(
            user_id=user_id,
            transaction_type=TransactionType.TASK_LOCK,
            amount=amount,
            logged_amount=-amount,
            task_id=task_id,
            description=description or "Stake locked",
            balance_delta=-amount,
            locked_delta=amount,
        )


async def unlock_to_balance(
    *,
    user_id: str,
    amount: Decimal,
    task_id: str,
    transaction_type: TransactionType = TransactionType.TASK_UNLOCK,
    description: str = "",
) -> Ledger:
    """Move a stake from locked_amount back to balance (cancel or approval)."""
    with span("ledger_service.unlock_to_balance"):
        if transaction_type not in (TransactionType.TASK_UNLOCK, TransactionType.TASK_REFUND):
            msg = f"Unlock cannot be recorded as {transaction_type}"
            raise ValueError(msg)
        return await _move(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            logged_amount=amount,
            task_id=task_id,
            description=description or "Stake returned",
            balance_delta=amount,
            locked_delta=-amount,
        )


async def forfeit(
    *,
    user_id: str,
    amount: Decimal,
    task_id: str,
    transaction_type: TransactionType = TransactionType.TASK_FORFEIT,
    description: str = "",
) -> Ledger:
    """Move a stake out of locked_amount into total_donated; balance is untouched."""
    with span("ledger_service.forfeit"):
        if transaction_type not in (TransactionType.TASK_FORFEIT, TransactionType.TASK_TIMEOUT):
            msg = f"Forfeit cannot be recorded as {transaction_type}"
            raise ValueError(msg)
        return await _move(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            logged_amount=-amount,
            task_id=task_id,
            description=description or "Stake forfeited",
            locked_delta=-amount,
            donated_delta=amount,
        )


async def restate(
    *,
    user_id: str,
    locked_amount: Decimal,
    balance: Decimal,
    description: str,
) -> Ledger:
    """Overwrite locked_amount and balance, logging the balance change as a reconciliation."""
    with span("ledger_service.restate"):
        async with db_client.transaction():
            record = await _get_ledger_record(user_id)
            balance_delta = balance - Decimal(record["balance"])
            locked_delta = locked_amount - Decimal(record["locked_amount"])
            return await _move(
                user_id=user_id,
                transaction_type=TransactionType.RECONCILIATION,
                amount=locked_delta,
                logged_amount=balance_delta,
                description=description,
                balance_delta=balance_delta,
                locked_delta=locked_delta,
            )


async def list_transactions(
    *,
    user_id: str,
    limit: int = Constants.TRANSACTIONS_PAGE_SIZE,
    offset: int = 0,
) -> TransactionPage:
    """List a user's transactions, newest first, with the total count."""
    with span("ledger_service.list_transactions"):
        if limit < 1 or offset < 0:
            msg = "limit must be positive and offset non-negative"
            raise InvalidRequestError(msg)

        filter_query = f'user_id = "{db_client.sanitize_param(user_id)}"'
        records = await db_client.list_records(
            collection="ledger_transactions",
            filter_query=filter_query,
            sort="-timestamp,-id",
            per_page=limit,
            offset=offset,
        )
        total = await db_client.count_records(collection="ledger_transactions", filter_query=filter_query)

        return TransactionPage(
            items=[LedgerTransaction.model_validate(r) for r in records],
            total=total,
            limit=limit,
            offset=offset,
        )
