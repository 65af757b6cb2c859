"""Tests for recurring template expansion."""

import asyncio
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from commitbet.core import clock, db_client
from commitbet.core.errors import InvalidRequestError, StateConflictError
from commitbet.core.recurrence import Frequency, Recurrence
from commitbet.domain.task import TaskKind, TaskStatus, TemplateTask
from commitbet.modules.tasks import expiration, recurrence_generator, service
from commitbet.services import ledger_service, user_service


def _template(rule: Recurrence, template_id: str = "1") -> TemplateTask:
    now = clock.utc_now()
    return TemplateTask(
        id=template_id,
        created=now,
        updated=now,
        user_id="1",
        title="Stretch",
        bet_amount=Decimal("10"),
        judge_user_id="2",
        recurrence=rule,
    )


async def _create_template(owner, judge, rule: Recurrence | dict, bet="100"):
    return await service.create_task(
        user_id=owner.id,
        title="Stretch",
        bet_amount=bet,
        judge_user_id=judge.id,
        recurrence=rule,
    )


async def _assert_locked_matches_stakes(user_id: str) -> None:
    active = await db_client.list_all_records(
        collection="tasks",
        filter_query=(
            f'kind = "{TaskKind.INSTANCE}" && user_id = "{user_id}"'
            f' && (status = "{TaskStatus.IN_PROGRESS}" || status = "{TaskStatus.SUBMITTED}")'
        ),
    )
    ledger = await ledger_service.get_ledger(user_id=user_id)
    assert ledger.locked_amount == sum((Decimal(str(r["bet_amount"])) for r in active), Decimal("0"))


@pytest.mark.unit
class TestPlanOccurrences:
    def test_daily_plans_every_date(self):
        template = _template(Recurrence(frequency=Frequency.DAILY, start_time="09:00"))
        dates = [date(2026, 3, 2) + timedelta(days=i) for i in range(3)]

        plans = recurrence_generator.plan_occurrences(
            templates=[template], existing_deadlines={}, dates=dates, tz_name="UTC"
        )

        assert [p.day for p in plans] == dates
        assert plans[0].deadline == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def test_weekly_only_matching_weekdays(self):
        template = _template(Recurrence(frequency=Frequency.WEEKLY, days_of_week=[1, 3], start_time="09:00"))
        dates = [date(2026, 3, 1) + timedelta(days=i) for i in range(7)]

        plans = recurrence_generator.plan_occurrences(
            templates=[template], existing_deadlines={}, dates=dates, tz_name="UTC"
        )

        assert [p.day for p in plans] == [date(2026, 3, 2), date(2026, 3, 4)]

    def test_occurrence_cap_counts_existing_and_planned(self):
        template = _template(Recurrence(frequency=Frequency.DAILY, start_time="09:00", occurrences=3))
        existing = {"1": {datetime(2026, 3, 1, 9, 0, tzinfo=UTC)}}
        dates = [date(2026, 3, 1) + timedelta(days=i) for i in range(5)]

        plans = recurrence_generator.plan_occurrences(
            templates=[template], existing_deadlines=existing, dates=dates, tz_name="UTC"
        )

        assert [p.day for p in plans] == [date(2026, 3, 2), date(2026, 3, 3)]

    def test_end_date_stops_plans(self):
        template = _template(Recurrence(frequency=Frequency.DAILY, start_time="09:00", end_date=date(2026, 3, 3)))
        dates = [date(2026, 3, 2) + timedelta(days=i) for i in range(4)]

        plans = recurrence_generator.plan_occurrences(
            templates=[template], existing_deadlines={}, dates=dates, tz_name="UTC"
        )

        assert [p.day for p in plans] == [date(2026, 3, 2), date(2026, 3, 3)]


@pytest.mark.unit
class TestGenerateForToday:
    async def test_new_template_generates_and_funds_today(self, alice, bob):
        result = await _create_template(alice, bob, {"frequency": "daily", "start_time": "18:00"})

        ledger = await ledger_service.get_ledger(user_id=alice.id)
        assert result.task.kind == "template"
        assert result.task.status == TaskStatus.PENDING
        assert result.generated_count == 1
        assert result.generated[0].deadline == datetime(2026, 3, 2, 18, 0, tzinfo=UTC)
        assert result.generated[0].parent_task_id == result.task.id
        assert ledger.locked_amount == Decimal("100")
        assert ledger.balance == Decimal("900")

    async def test_repeated_generation_is_idempotent(self, alice, bob):
        await _create_template(alice, bob, {"frequency": "daily", "start_time": "18:00"})

        again = await recurrence_generator.generate_for_today(user_id=alice.id)
        tasks = await service.list_tasks(user_id=alice.id)

        assert again == []
        assert len(tasks) == 1
        assert (await ledger_service.get_ledger(user_id=alice.id)).locked_amount == Decimal("100")

    async def test_concurrent_generation_inserts_once(self, alice, bob):
        template = await service.create_task(
            user_id=alice.id,
            title="Stretch",
            bet_amount=100,
            judge_user_id=bob.id,
            recurrence={"frequency": "daily", "start_time": "08:00"},
        )
        assert template.generated_count == 1

        results = await asyncio.gather(
            *[recurrence_generator.generate_for_range(
                user_id=alice.id, start_date=date(2026, 3, 3), end_date=date(2026, 3, 3)
            ) for _ in range(4)]
        )

        assert sum(len(r) for r in results) == 1
        tasks = await service.list_tasks_for_range(
            user_id=alice.id, start_date=date(2026, 3, 3), end_date=date(2026, 3, 3)
        )
        assert len(tasks) == 1

    async def test_weekly_deadline_in_user_zone(self, alice, bob):
        await user_service.update_timezone(user_id=alice.id, timezone="America/New_York")

        result = await _create_template(alice, bob, {"frequency": "weekly", "days_of_week": [1], "start_time": "09:00"})

        assert result.generated_count == 1
        assert result.generated[0].deadline == datetime(2026, 3, 2, 14, 0, tzinfo=UTC)

    async def test_daily_in_toronto_across_two_days(self, alice, bob, frozen_clock):
        await user_service.update_timezone(user_id=alice.id, timezone="America/Toronto")
        await _create_template(alice, bob, {"frequency": "daily", "start_time": "09:00"})

        await service.list_tasks(user_id=alice.id)
        await service.list_tasks(user_id=alice.id)
        frozen_clock.advance(days=1)
        await service.list_tasks(user_id=alice.id)
        tasks = await service.list_tasks(user_id=alice.id)

        assert sorted(t.deadline for t in tasks) == [
            datetime(2026, 3, 2, 14, 0, tzinfo=UTC),
            datetime(2026, 3, 3, 14, 0, tzinfo=UTC),
        ]
        assert all(t.parent_recurrence is not None for t in tasks)
        assert all(t.parent_schedule == "daily at 9:00 AM" for t in tasks)

    async def test_instance_withdrawn_when_funds_are_short(self, alice, bob):
        await service.create_task(
            user_id=alice.id,
            title="Big bet",
            bet_amount=950,
            judge_user_id=bob.id,
            deadline=clock.utc_now() + timedelta(days=2),
        )

        result = await _create_template(alice, bob, {"frequency": "daily", "start_time": "18:00"})

        ledger = await ledger_service.get_ledger(user_id=alice.id)
        assert result.generated == []
        assert ledger.locked_amount == Decimal("950")
        assert [t.title for t in await service.list_tasks(user_id=alice.id)] == ["Big bet"]

    async def test_deleting_template_keeps_instances(self, alice, bob):
        result = await _create_template(alice, bob, {"frequency": "daily", "start_time": "18:00"})

        await service.delete_template(user_id=alice.id, template_id=result.task.id)

        tasks = await service.list_tasks(user_id=alice.id)
        assert [t.id for t in tasks] == [result.generated[0].id]
        assert tasks[0].parent_recurrence is None
        assert await service.list_templates(user_id=alice.id) == []

    async def test_invalid_recurrence(self, alice, bob):
        with pytest.raises(InvalidRequestError, match="Invalid recurrence"):
            await _create_template(alice, bob, {"frequency": "weekly", "start_time": "09:00"})


@pytest.mark.unit
class TestGenerateForRange:
    async def test_past_dates_are_skipped(self, alice, bob):
        await _create_template(alice, bob, {"frequency": "daily", "start_time": "18:00"})

        created = await recurrence_generator.generate_for_range(
            user_id=alice.id, start_date=date(2026, 2, 20), end_date=date(2026, 3, 4)
        )

        assert sorted(t.deadline.date() for t in created) == [date(2026, 3, 3), date(2026, 3, 4)]

    async def test_range_is_capped(self, alice, bob):
        await _create_template(alice, bob, {"frequency": "daily", "start_time": "18:00"}, bet="1")

        created = await recurrence_generator.generate_for_range(
            user_id=alice.id, start_date=date(2026, 3, 2), end_date=date(2026, 12, 31)
        )

        # Today's instance already exists; 61 more days fit in the cap
        assert len(created) == 61

    async def test_end_before_start(self, alice):
        with pytest.raises(InvalidRequestError):
            await recurrence_generator.generate_for_range(
                user_id=alice.id, start_date=date(2026, 3, 5), end_date=date(2026, 3, 4)
            )

    async def test_month_listing_generates_month(self, alice, bob):
        await _create_template(alice, bob, {"frequency": "weekly", "days_of_week": [5], "start_time": "18:00"}, bet="5")

        tasks = await service.list_tasks(user_id=alice.id, month="2026-03")

        assert sorted(t.deadline.day for t in tasks) == [6, 13, 20, 27]
        assert (await ledger_service.get_ledger(user_id=alice.id)).locked_amount == Decimal("20")


@pytest.mark.unit
class TestListingAfterStartTime:
    async def test_today_occurrence_is_generated_and_expired(self, alice, bob, frozen_clock):
        result = await _create_template(alice, bob, {"frequency": "daily", "start_time": "09:00"})
        assert result.generated_count == 1

        tasks = await service.list_tasks(user_id=alice.id)
        assert [t.status for t in tasks] == [TaskStatus.FAILED]

        frozen_clock.advance(days=1)
        tasks = await service.list_tasks(user_id=alice.id)

        assert [t.status for t in tasks] == [TaskStatus.FAILED, TaskStatus.FAILED]
        ledger = await ledger_service.get_ledger(user_id=alice.id)
        assert ledger.locked_amount == Decimal("0")
        assert ledger.total_donated == Decimal("200")
        await _assert_locked_matches_stakes(alice.id)

    async def test_toronto_listed_mid_morning_each_day(self, alice, bob, frozen_clock):
        await user_service.update_timezone(user_id=alice.id, timezone="America/Toronto")
        frozen_clock.set(datetime(2026, 3, 2, 15, 0, tzinfo=UTC))  # 10:00 in Toronto
        await _create_template(alice, bob, {"frequency": "daily", "start_time": "09:00"})

        await service.list_tasks(user_id=alice.id)
        frozen_clock.advance(days=1)
        tasks = await service.list_tasks(user_id=alice.id)

        assert sorted(t.deadline for t in tasks) == [
            datetime(2026, 3, 2, 14, 0, tzinfo=UTC),
            datetime(2026, 3, 3, 14, 0, tzinfo=UTC),
        ]
        assert all(t.status == TaskStatus.FAILED for t in tasks)
        assert all(t.parent_schedule == "daily at 9:00 AM" for t in tasks)
        await _assert_locked_matches_stakes(alice.id)


@pytest.mark.unit
class TestUnfundedInstances:
    async def _pending_tuesday_instance(self, alice, bob, frozen_clock):
        await _create_template(alice, bob, {"frequency": "weekly", "days_of_week": [2], "start_time": "18:00"})
        frozen_clock.set(datetime(2026, 3, 3, 12, 0, tzinfo=UTC))
        [instance] = await recurrence_generator.generate_for_today(user_id=alice.id)
        return instance

    async def test_generated_instance_waits_for_its_stake(self, alice, bob, frozen_clock):
        instance = await self._pending_tuesday_instance(alice, bob, frozen_clock)

        ledger = await ledger_service.get_ledger(user_id=alice.id)
        assert instance.status == TaskStatus.PENDING
        assert instance.started_at is None
        assert ledger.balance == Decimal("1000")
        assert ledger.locked_amount == Decimal("0")

    async def test_cancel_refused_before_funding(self, alice, bob, frozen_clock):
        instance = await self._pending_tuesday_instance(alice, bob, frozen_clock)

        with pytest.raises(StateConflictError) as exc_info:
            await service.cancel_task(user_id=alice.id, task_id=instance.id)

        assert exc_info.value.current_state == TaskStatus.PENDING
        ledger = await ledger_service.get_ledger(user_id=alice.id)
        assert ledger.balance == Decimal("1000")
        assert ledger.locked_amount == Decimal("0")
        await _assert_locked_matches_stakes(alice.id)

    async def test_sweep_leaves_unfunded_rows_alone(self, alice, bob, frozen_clock):
        instance = await self._pending_tuesday_instance(alice, bob, frozen_clock)
        frozen_clock.advance(hours=7)

        expired = await expiration.expire_overdue_tasks(user_id=alice.id)

        record = await db_client.get_record(collection="tasks", record_id=instance.id)
        ledger = await ledger_service.get_ledger(user_id=alice.id)
        assert expired == []
        assert record["status"] == TaskStatus.PENDING
        assert ledger.total_donated == Decimal("0")
        await _assert_locked_matches_stakes(alice.id)

    async def test_next_listing_funds_it(self, alice, bob, frozen_clock):
        instance = await self._pending_tuesday_instance(alice, bob, frozen_clock)

        tasks = await service.list_tasks(user_id=alice.id)

        assert [(t.id, t.status) for t in tasks] == [(instance.id, TaskStatus.IN_PROGRESS)]
        assert tasks[0].started_at == clock.utc_now()
        assert (await ledger_service.get_ledger(user_id=alice.id)).locked_amount == Decimal("100")
        await _assert_locked_matches_stakes(alice.id)


@pytest.mark.unit
class TestInterruptedLockPass:
    async def test_unfinished_pass_is_picked_up_later(self, alice, bob, monkeypatch):
        weekly = {"frequency": "weekly", "days_of_week": [2], "start_time": "18:00"}
        await _create_template(alice, bob, weekly, bet="30")
        await _create_template(alice, bob, weekly, bet="40")
        created = await recurrence_generator.generate_for_range(
            user_id=alice.id, start_date=date(2026, 3, 3), end_date=date(2026, 3, 3)
        )
        assert len(created) == 2

        real_lock = ledger_service.lock
        calls = []

        async def lock_then_fail(**kwargs):
            calls.append(kwargs["task_id"])
            if len(calls) == 2:
                raise RuntimeError("connection dropped")
            return await real_lock(**kwargs)

        monkeypatch.setattr(ledger_service, "lock", lock_then_fail)
        with pytest.raises(RuntimeError, match="connection dropped"):
            await service.lock_generated(user_id=alice.id)

        statuses = sorted(
            [(await db_client.get_record(collection="tasks", record_id=t.id))["status"] for t in created]
        )
        assert statuses == sorted([TaskStatus.IN_PROGRESS, TaskStatus.PENDING])
        await _assert_locked_matches_stakes(alice.id)

        monkeypatch.setattr(ledger_service, "lock", real_lock)
        funded = await service.lock_generated(user_id=alice.id)

        assert [t.id for t in funded] == [calls[1]]
        assert (await ledger_service.get_ledger(user_id=alice.id)).locked_amount == Decimal("70")
        await _assert_locked_matches_stakes(alice.id)
