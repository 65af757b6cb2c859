"""Ledger domain models and enums."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field


class TransactionType(StrEnum):
    """Kind of movement recorded in the append-only transaction log."""

    DEPOSIT = "deposit"
    TASK_LOCK = "task_lock"
    TASK_UNLOCK = "task_unlock"  # Cancel
    TASK_REFUND = "task_refund"  # Approved
    TASK_FORFEIT = "task_forfeit"  # Rejected
    TASK_TIMEOUT = "task_timeout"  # Expired
    RECONCILIATION = "reconciliation"


class Ledger(BaseModel):
    """Per-user monetary account."""

    id: str = Field(..., description="Unique ledger ID from database")
    user_id: str = Field(..., description="Owning user ID")
    balance: Decimal = Field(..., ge=0, description="Spendable funds")
    locked_amount: Decimal = Field(..., ge=0, description="Funds committed to active tasks")
    total_deposited: Decimal = Field(..., description="Lifetime deposits")
    total_donated: Decimal = Field(..., description="Lifetime forfeited stake")
    created: datetime = Field(..., description="Creation timestamp (UTC)")
    updated: datetime = Field(..., description="Last update timestamp (UTC)")

    @property
    def available_balance(self) -> Decimal:
        """Funds that can back a new stake.

        Locking already moves funds out of balance, so nothing further is subtracted.
        """
        return self.balance


class LedgerTransaction(BaseModel):
    """Immutable entry in a ledger's transaction log."""

    id: str = Field(..., description="Unique transaction ID from database")
    user_id: str = Field(..., description="Owning user ID")
    type: TransactionType = Field(..., description="Kind of movement")
    amount: Decimal = Field(..., description="Signed amount; negative leaves the balance")
    task_id: str | None = Field(default=None, description="Related task, if any")
    description: str = Field(default="", description="Human-readable note")
    timestamp: datetime = Field(..., description="When the movement happened (UTC)")


class TransactionPage(BaseModel):
    """One page of transactions, newest first."""

    items: list[LedgerTransaction] = Field(default_factory=list)
    total: int = Field(..., description="Number of transactions across all pages")
    limit: int
    offset: int


class ReconciliationReport(BaseModel):
    """Outcome of recomputing a ledger's locked amount from active tasks."""

    ledger: Ledger
    stored_locked_amount: Decimal = Field(..., description="locked_amount before reconciliation")
    expected_locked_amount: Decimal = Field(..., description="Sum of stakes over active tasks")
    drift: Decimal = Field(..., description="stored minus expected; zero when consistent")
    balance_adjustment: Decimal = Field(..., description="Amount added to balance (after clamping at zero)")
    active_task_count: int = Field(..., description="Number of IN_PROGRESS and SUBMITTED tasks")

    @property
    def repaired(self) -> bool:
        return self.drift != 0
