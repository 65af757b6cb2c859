"""Expansion of recurring templates into dated instances.

Planning is pure; insertion goes through db_client.insert_if_absent so repeated or
concurrent runs for the same date materialize each occurrence once. New instances are
stored PENDING and the generator never touches the ledger: service.lock_generated()
locks their stakes and moves them to IN_PROGRESS.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from commitbet.core import clock, db_client, recurrence
from commitbet.core.config import Constants
from commitbet.core.db_client import sanitize_param
from commitbet.core.errors import InvalidRequestError
from commitbet.core.logging import span
from commitbet.domain.task import InstanceTask, JudgeStatus, TaskKind, TaskStatus, TemplateTask, instance_from_record
from commitbet.services import user_service


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstancePlan:
    """One occurrence of a template that should exist as an instance."""

    template: TemplateTask
    day: date
    deadline: datetime


def plan_occurrences(
    *,
    templates: list[TemplateTask],
    existing_deadlines: dict[str, set[datetime]],
    dates: list[date],
    tz_name: str | None,
) -> list[InstancePlan]:
    """Decide which occurrences to materialize for the given local dates.

    Args:
        templates: The user's templates
        existing_deadlines: Template ID to deadlines of instances already stored
        dates: Candidate local dates, in any order
        tz_name: User's IANA zone

    Returns:
        Plans for occurrences not yet stored, in date order per template
    """
    plans: list[InstancePlan] = []

    for template in templates:
        rule = template.recurrence
        stored = existing_deadlines.get(template.id, set())
        count = len(stored)

        for day in sorted(set(dates)):
            if not recurrence.within_end_date(rule, day):
                break
            if rule.occurrences is not None and count >= rule.occurrences:
                break
            if not recurrence.matches(rule, day):
                continue

            deadline = recurrence.occurrence_deadline(rule, day, tz_name)
            if deadline in stored:
                continue

            plans.append(InstancePlan(template=template, day=day, deadline=deadline))
            count += 1

    return plans


async def _load_templates(user_id: str) -> list[TemplateTask]:
    records = await db_client.list_all_records(
        collection="tasks",
        filter_query=f'kind = "{TaskKind.TEMPLATE}" && user_id = "{sanitize_param(user_id)}"',
    )
    return [TemplateTask.model_validate(r) for r in records]


async def _load_existing_deadlines(templates: list[TemplateTask]) -> dict[str, set[datetime]]:
    existing: dict[str, set[datetime]] = {}
    for template in templates:
        records = await db_client.list_all_records(
            collection="tasks",
            filter_query=f'kind = "{TaskKind.INSTANCE}" && parent_task_id = "{sanitize_param(template.id)}"',
        )
        existing[template.id] = {clock.from_db_timestamp(r["deadline"]) for r in records}
    return existing


async def _materialize(plan: InstancePlan) -> tuple[InstanceTask, bool]:
    template = plan.template
    record, inserted = await db_client.insert_if_absent(
        collection="tasks",
        data={
            "kind": TaskKind.INSTANCE,
            "user_id": template.user_id,
            "title": template.title,
            "description": template.description,
            "category": template.category,
            "bet_amount": template.bet_amount,
            "judge_user_id": template.judge_user_id,
            "status": TaskStatus.PENDING,
            "judge_status": JudgeStatus.PENDING,
            "parent_task_id": template.id,
            "deadline": plan.deadline,
        },
        conflict_fields=["user_id", "parent_task_id", "deadline"],
    )
    return instance_from_record(record), inserted


async def generate_for_dates(*, user_id: str, dates: list[date]) -> list[InstanceTask]:
    """Ensure one instance exists per matching (template, date) and return the new ones."""
    with span("recurrence_generator.generate_for_dates"):
        if not dates:
            return []

        user = await user_service.get_user(user_id=user_id)
        templates = await _load_templates(user_id)
        if not templates:
            return []

        plans = plan_occurrences(
            templates=templates,
            existing_deadlines=await _load_existing_deadlines(templates),
            dates=dates,
            tz_name=user.timezone,
        )

        created: list[InstanceTask] = []
        for plan in plans:
            instance, inserted = await _materialize(plan)
            if inserted:
                created.append(instance)
            else:
                logger.debug(
                    "Occurrence already materialized",
                    extra={"template_id": plan.template.id, "deadline": plan.deadline.isoformat()},
                )

        if created:
            logger.info("Generated %d instance(s) for user %s", len(created), user_id)
        return created


async def generate_for_today(*, user_id: str) -> list[InstanceTask]:
    """Generate today's occurrences in the user's time zone.

    An occurrence whose start time already passed today is still stored; once
    funded, the expiration sweep fails it like any other overdue task.
    """
    with span("recurrence_generator.generate_for_today"):
        user = await user_service.get_user(user_id=user_id)
        return await generate_for_dates(user_id=user_id, dates=[clock.local_today(user.timezone)])


async def generate_for_range(*, user_id: str, start_date: date, end_date: date) -> list[InstanceTask]:
    """Generate occurrences for a local date range (inclusive) for calendar views.

    Dates before today are skipped and the range is capped at
    Constants.MAX_GENERATION_RANGE_DAYS days.

    Raises:
        InvalidRequestError: If end_date is before start_date
    """
    with span("recurrence_generator.generate_for_range"):
        if end_date < start_date:
            msg = f"end_date {end_date} is before start_date {start_date}"
            raise InvalidRequestError(msg)

        user = await user_service.get_user(user_id=user_id)
        start = max(start_date, clock.local_today(user.timezone))
        last_allowed = start + timedelta(days=Constants.MAX_GENERATION_RANGE_DAYS - 1)
        if end_date > last_allowed:
            logger.debug("Capping generation range", extra={"user_id": user_id, "end_date": end_date.isoformat()})
        end = min(end_date, last_allowed)
        if start > end:
            return []

        dates = [start + timedelta(days=offset) for offset in range((end - start).days + 1)]
        return await generate_for_dates(user_id=user_id, dates=dates)
