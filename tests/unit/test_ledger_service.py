"""Tests for ledger balances, movements and the transaction log."""

from decimal import Decimal

import pytest

from commitbet.core.errors import InvalidRequestError, LedgerInconsistencyError, NotFoundError
from commitbet.domain.ledger import TransactionType
from commitbet.services import ledger_service


@pytest.mark.unit
class TestOpenLedger:
    async def test_new_user_gets_initial_balance(self, alice):
        ledger = await ledger_service.get_ledger(user_id=alice.id)

        assert ledger.balance == Decimal("1000")
        assert ledger.locked_amount == Decimal("0")
        assert ledger.total_deposited == Decimal("1000")
        assert ledger.total_donated == Decimal("0")
        assert ledger.available_balance == Decimal("1000")

    async def test_initial_credit_is_logged(self, alice):
        page = await ledger_service.list_transactions(user_id=alice.id)

        assert page.total == 1
        assert page.items[0].type == TransactionType.DEPOSIT
        assert page.items[0].amount == Decimal("1000")

    async def test_unknown_user(self, db):
        with pytest.raises(NotFoundError):
            await ledger_service.get_ledger(user_id="404")


@pytest.mark.unit
class TestDeposit:
    async def test_deposit_increases_balance_and_total(self, alice):
        ledger = await ledger_service.deposit(user_id=alice.id, amount="250.50")

        assert ledger.balance == Decimal("1250.50")
        assert ledger.total_deposited == Decimal("1250.50")

    @pytest.mark.parametrize("amount", ["0", "-5", "10000.01", "abc"])
    async def test_rejects_invalid_amounts(self, alice, amount):
        with pytest.raises(InvalidRequestError):
            await ledger_service.deposit(user_id=alice.id, amount=amount)

        assert (await ledger_service.get_ledger(user_id=alice.id)).balance == Decimal("1000")

    async def test_maximum_single_deposit(self, alice):
        ledger = await ledger_service.deposit(user_id=alice.id, amount=10000)

        assert ledger.balance == Decimal("11000")


@pytest.mark.unit
class TestStakeMovements:
    async def test_lock_moves_balance_to_locked(self, alice):
        ledger = await ledger_service.lock(user_id=alice.id, amount=Decimal("200"), task_id="1")

        assert ledger.balance == Decimal("800")
        assert ledger.locked_amount == Decimal("200")

    async def test_unlock_returns_stake(self, alice):
        await ledger_service.lock(user_id=alice.id, amount=Decimal("200"), task_id="1")

        ledger = await ledger_service.unlock_to_balance(
            user_id=alice.id,
            amount=Decimal("200"),
            task_id="1",
            transaction_type=TransactionType.TASK_REFUND,
        )

        assert ledger.balance == Decimal("1000")
        assert ledger.locked_amount == Decimal("0")
        assert ledger.total_donated == Decimal("0")

    async def test_forfeit_moves_stake_to_donated(self, alice):
        await ledger_service.lock(user_id=alice.id, amount=Decimal("200"), task_id="1")

        ledger = await ledger_service.forfeit(
            user_id=alice.id,
            amount=Decimal("200"),
            task_id="1",
            transaction_type=TransactionType.TASK_TIMEOUT,
        )

        assert ledger.balance == Decimal("800")
        assert ledger.locked_amount == Decimal("0")
        assert ledger.total_donated == Decimal("200")

    async def test_going_negative_raises_and_leaves_no_trace(self, alice):
        with pytest.raises(LedgerInconsistencyError):
            await ledger_service.forfeit(user_id=alice.id, amount=Decimal("50"), task_id="1")

        ledger = await ledger_service.get_ledger(user_id=alice.id)
        page = await ledger_service.list_transactions(user_id=alice.id)
        assert ledger.locked_amount == Decimal("0")
        assert ledger.total_donated == Decimal("0")
        assert page.total == 1

    async def test_unlock_rejects_forfeit_type(self, alice):
        with pytest.raises(ValueError, match="Unlock cannot be recorded"):
            await ledger_service.unlock_to_balance(
                user_id=alice.id,
                amount=Decimal("1"),
                task_id="1",
                transaction_type=TransactionType.TASK_FORFEIT,
            )


@pytest.mark.unit
class TestListTransactions:
    async def test_newest_first_with_total(self, alice, frozen_clock):
        frozen_clock.advance(minutes=1)
        await ledger_service.deposit(user_id=alice.id, amount=10)
        frozen_clock.advance(minutes=1)
        await ledger_service.lock(user_id=alice.id, amount=Decimal("5"), task_id="9")

        page = await ledger_service.list_transactions(user_id=alice.id, limit=2)

        assert page.total == 3
        assert [t.type for t in page.items] == [TransactionType.TASK_LOCK, TransactionType.DEPOSIT]
        assert page.items[0].amount == Decimal("-5")
        assert page.items[0].task_id == "9"

    async def test_offset(self, alice):
        await ledger_service.deposit(user_id=alice.id, amount=10)

        page = await ledger_service.list_transactions(user_id=alice.id, limit=20, offset=1)

        assert len(page.items) == 1
        assert page.items[0].description == "Initial balance"

    async def test_invalid_paging(self, alice):
        with pytest.raises(InvalidRequestError):
            await ledger_service.list_transactions(user_id=alice.id, limit=0)
