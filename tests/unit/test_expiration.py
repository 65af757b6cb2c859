"""Tests for the overdue-task sweep."""

from datetime import timedelta
from decimal import Decimal

import pytest

from commitbet.core import clock
from commitbet.core.errors import StateConflictError
from commitbet.domain.ledger import TransactionType
from commitbet.domain.task import TaskStatus
from commitbet.modules.tasks import expiration, service, state_machine
from commitbet.services import evidence_service, ledger_service


async def _create(owner, judge, *, bet="200", hours=1):
    result = await service.create_task(
        user_id=owner.id,
        title="Meditate",
        bet_amount=bet,
        judge_user_id=judge.id,
        deadline=clock.utc_now() + timedelta(hours=hours),
    )
    return result.task


@pytest.mark.unit
class TestExpireOverdueTasks:
    async def test_listing_fails_overdue_task_and_forfeits(self, alice, bob, frozen_clock):
        task = await _create(alice, bob)
        frozen_clock.advance(hours=2)

        tasks = await service.list_tasks(user_id=alice.id)

        ledger = await ledger_service.get_ledger(user_id=alice.id)
        page = await ledger_service.list_transactions(user_id=alice.id)
        assert [t.id for t in tasks] == [task.id]
        assert tasks[0].status == TaskStatus.FAILED
        assert ledger.balance == Decimal("800")
        assert ledger.locked_amount == Decimal("0")
        assert ledger.total_donated == Decimal("200")
        assert page.items[0].type == TransactionType.TASK_TIMEOUT

    async def test_sweep_is_idempotent(self, alice, bob, frozen_clock):
        await _create(alice, bob)
        frozen_clock.advance(hours=2)

        first = await expiration.expire_overdue_tasks(user_id=alice.id)
        second = await expiration.expire_overdue_tasks(user_id=alice.id)

        assert len(first) == 1
        assert second == []
        assert (await ledger_service.get_ledger(user_id=alice.id)).total_donated == Decimal("200")

    async def test_future_and_submitted_tasks_are_left_alone(self, alice, bob, frozen_clock):
        future = await _create(alice, bob, bet="50", hours=48)
        submitted = await _create(alice, bob, bet="50", hours=1)
        evidence = await evidence_service.record_evidence(
            task_id=submitted.id, user_id=alice.id, description="Done", image_refs=["x.jpg"]
        )
        await service.submit_evidence(user_id=alice.id, task_id=submitted.id, evidence_id=evidence.id)
        frozen_clock.advance(hours=2)

        expired = await expiration.expire_overdue_tasks(user_id=alice.id)

        assert expired == []
        assert (await service.get_task(user_id=alice.id, task_id=future.id)).status == TaskStatus.IN_PROGRESS
        assert (await service.get_task(user_id=alice.id, task_id=submitted.id)).status == TaskStatus.SUBMITTED
        assert (await ledger_service.get_ledger(user_id=alice.id)).locked_amount == Decimal("100")

    async def test_stale_copy_cannot_expire_twice(self, alice, bob, frozen_clock):
        task = await _create(alice, bob)
        frozen_clock.advance(hours=2)
        await state_machine.expire(task=task)

        with pytest.raises(StateConflictError):
            await state_machine.expire(task=task)

        assert (await ledger_service.get_ledger(user_id=alice.id)).total_donated == Decimal("200")

    async def test_task_before_deadline_cannot_expire(self, alice, bob):
        task = await _create(alice, bob)

        with pytest.raises(StateConflictError, match="not overdue"):
            await state_machine.expire(task=task)
