"""Task service: creation, listing, submission, cancellation and archiving."""

import calendar
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from commitbet.core import clock, db_client
from commitbet.core.config import Constants
from commitbet.core.db_client import sanitize_param
from commitbet.core.errors import (
    InsufficientFundsError,
    InvalidDeadlineError,
    InvalidJudgeError,
    InvalidRequestError,
    NotFoundError,
    StateConflictError,
    TaskExpiredError,
)
from commitbet.core.logging import log_with_user_context, span
from commitbet.core.recurrence import Recurrence, describe
from commitbet.domain.task import (
    ArchivedFilter,
    InstanceTask,
    JudgeStatus,
    TaskCategory,
    TaskCreation,
    TaskKind,
    TaskStats,
    TaskStatus,
    TemplateTask,
    instance_from_record,
    task_from_record,
)
from commitbet.modules.tasks import expiration, recurrence_generator, state_machine
from commitbet.modules.tasks.state_machine import TaskAction
from commitbet.services import evidence_service, ledger_service, user_service


logger = logging.getLogger(__name__)


def _validate_text(*, title: str, description: str) -> tuple[str, str]:
    title = (title or "").strip()
    if not title:
        msg = "Title is required"
        raise InvalidRequestError(msg)
    if len(title) > Constants.TITLE_MAX_LENGTH:
        msg = f"Title too long (max {Constants.TITLE_MAX_LENGTH} characters)"
        raise InvalidRequestError(msg)
    description = (description or "").strip()
    if len(description) > Constants.DESCRIPTION_MAX_LENGTH:
        msg = f"Description too long (max {Constants.DESCRIPTION_MAX_LENGTH} characters)"
        raise InvalidRequestError(msg)
    return title, description


def _validate_category(category: TaskCategory | str) -> TaskCategory:
    try:
        return TaskCategory(category)
    except ValueError as e:
        allowed = ", ".join(c.value for c in TaskCategory)
        msg = f"Invalid category {category!r}; expected one of {allowed}"
        raise InvalidRequestError(msg) from e


def _validate_bet(bet_amount: Decimal | int | str) -> Decimal:
    amount = ledger_service.to_amount(bet_amount)
    if not Constants.BET_AMOUNT_MIN <= amount <= Constants.BET_AMOUNT_MAX:
        msg = f"Bet amount must be between {Constants.BET_AMOUNT_MIN} and {Constants.BET_AMOUNT_MAX}"
        raise InvalidRequestError(msg)
    return amount


async def _validate_judge(*, user_id: str, judge_user_id: str) -> None:
    if not judge_user_id:
        msg = "A judge is required"
        raise InvalidJudgeError(msg)
    if judge_user_id == user_id:
        msg = "You cannot judge your own task"
        raise InvalidJudgeError(msg)
    try:
        await user_service.get_user(user_id=judge_user_id)
    except NotFoundError as e:
        msg = f"Judge {judge_user_id} does not exist"
        raise InvalidJudgeError(msg) from e
    if not await user_service.is_friend(user_id=user_id, candidate_id=judge_user_id):
        msg = "Judge must be one of your friends"
        raise InvalidJudgeError(msg)


def _validate_recurrence(value: Recurrence | dict[str, Any]) -> Recurrence:
    try:
        return value if isinstance(value, Recurrence) else Recurrence.model_validate(value)
    except ValidationError as e:
        msg = f"Invalid recurrence: {e}"
        raise InvalidRequestError(msg) from e


async def _get_owned_record(*, user_id: str, task_id: str) -> dict[str, Any]:
    msg = f"Task not found: {task_id}"
    if not str(task_id).isdigit():
        raise NotFoundError(msg)
    try:
        record = await db_client.get_record(collection="tasks", record_id=task_id)
    except db_client.RecordNotFoundError as e:
        raise NotFoundError(msg) from e
    if record["user_id"] != user_id:
        raise NotFoundError(msg)
    return record


async def _get_owned_instance(*, user_id: str, task_id: str) -> InstanceTask:
    record = await _get_owned_record(user_id=user_id, task_id=task_id)
    if record["kind"] != TaskKind.INSTANCE:
        msg = f"Task {task_id} is a recurring template"
        raise StateConflictError(msg, current_state=record["status"])
    return instance_from_record(record)


async def _create_instance(
    *,
    user_id: str,
    data: dict[str, Any],
    bet_amount: Decimal,
) -> InstanceTask:
    """Insert an ad hoc instance and lock its stake in one transaction."""
    async with db_client.transaction():
        ledger = await ledger_service.get_ledger(user_id=user_id)
        if ledger.available_balance < bet_amount:
            raise InsufficientFundsError(available=ledger.available_balance, required=bet_amount)

        record = await db_client.create_record(
            collection="tasks",
            data={
                **data,
                "kind": TaskKind.INSTANCE,
                "status": TaskStatus.IN_PROGRESS,
                "judge_status": JudgeStatus.PENDING,
                "started_at": clock.utc_now(),
            },
        )
        await ledger_service.lock(
            user_id=user_id,
            amount=bet_amount,
            task_id=record["id"],
            description=f"Stake locked: {data['title']}",
        )
    return instance_from_record(record)


async def lock_generated(*, user_id: str) -> list[InstanceTask]:
    """Fund the user's generated instances that are still waiting for their stake.

    Every PENDING instance is picked up, including rows left behind by an earlier
    pass that did not finish. In one transaction per instance the stake is locked
    and the row moves to IN_PROGRESS; when the balance cannot cover it the row is
    withdrawn instead.

    Returns:
        The instances funded by this call
    """
    with span("task_service.lock_generated"):
        records = await db_client.list_all_records(
            collection="tasks",
            filter_query=(
                f'kind = "{TaskKind.INSTANCE}" && user_id = "{sanitize_param(user_id)}"'
                f' && status = "{TaskStatus.PENDING}"'
            ),
            sort="deadline",
        )

        funded: list[InstanceTask] = []
        for pending in records:
            instance = instance_from_record(pending)
            async with db_client.transaction():
                ledger = await ledger_service.get_ledger(user_id=user_id)
                if ledger.available_balance < instance.bet_amount:
                    try:
                        withdrawn = await db_client.delete_record(
                            collection="tasks",
                            record_id=instance.id,
                            expected={"status": TaskStatus.PENDING},
                        )
                    except db_client.RecordNotFoundError:
                        withdrawn = False
                    if withdrawn:
                        log_with_user_context(
                            logger,
                            "warning",
                            "Withdrew generated instance: insufficient funds",
                            user_id=user_id,
                            task_id=instance.id,
                            parent_task_id=instance.parent_task_id,
                            available=str(ledger.available_balance),
                            required=str(instance.bet_amount),
                        )
                    continue

                try:
                    record = await db_client.compare_and_set(
                        collection="tasks",
                        record_id=instance.id,
                        expected={"status": TaskStatus.PENDING},
                        data={"status": TaskStatus.IN_PROGRESS, "started_at": clock.utc_now()},
                    )
                except db_client.RecordNotFoundError:
                    record = None
                if record is None:
                    logger.debug("Generated instance %s was funded or withdrawn elsewhere", instance.id)
                    continue

                await ledger_service.lock(
                    user_id=user_id,
                    amount=instance.bet_amount,
                    task_id=instance.id,
                    description=f"Stake locked: {instance.title}",
                )
            funded.append(instance_from_record(record))
        return funded


async def create_task(
    *,
    user_id: str,
    title: str,
    bet_amount: Decimal | int | str,
    judge_user_id: str,
    category: TaskCategory | str = TaskCategory.OTHER,
    description: str = "",
    deadline: datetime | None = None,
    recurrence: Recurrence | dict[str, Any] | None = None,
) -> TaskCreation:
    """Create an ad hoc task (with a deadline) or a recurring template.

    An ad hoc task starts IN_PROGRESS with its stake locked. A template stores the
    schedule, then today's occurrence is generated and funded immediately.

    Args:
        user_id: Creator
        title: Task title
        bet_amount: Stake, between Constants.BET_AMOUNT_MIN and BET_AMOUNT_MAX
        judge_user_id: A confirmed friend of the creator
        category: Task category
        description: Optional details
        deadline: Aware instant, strictly in the future (ad hoc tasks)
        recurrence: Schedule (templates); mutually exclusive with deadline

    Returns:
        TaskCreation with the task and any instances generated for a template

    Raises:
        InvalidRequestError: If a field is missing or out of range
        InvalidDeadlineError: If the deadline is missing, naive or not in the future
        InvalidJudgeError: If the judge is the creator, unknown, or not a friend
        InsufficientFundsError: If the available balance does not cover the stake
    """
    with span("task_service.create_task"):
        await user_service.get_user(user_id=user_id)
        title, description = _validate_text(title=title, description=description)
        task_category = _validate_category(category)
        amount = _validate_bet(bet_amount)

        if deadline is not None and recurrence is not None:
            msg = "A task has either a deadline or a recurrence, not both"
            raise InvalidRequestError(msg)

        rule = _validate_recurrence(recurrence) if recurrence is not None else None
        if rule is None:
            if deadline is None:
                msg = "Deadline is required"
                raise InvalidDeadlineError(msg)
            try:
                deadline = clock.ensure_utc(deadline)
            except ValueError as e:
                raise InvalidDeadlineError(str(e)) from e
            if deadline <= clock.utc_now():
                msg = "Deadline must be in the future"
                raise InvalidDeadlineError(msg)

        await _validate_judge(user_id=user_id, judge_user_id=judge_user_id)

        data: dict[str, Any] = {
            "user_id": user_id,
            "title": title,
            "description": description,
            "category": task_category,
            "bet_amount": amount,
            "judge_user_id": judge_user_id,
        }

        if rule is None:
            instance = await _create_instance(user_id=user_id, data={**data, "deadline": deadline}, bet_amount=amount)
            log_with_user_context(
                logger, "info", "Created task", user_id=user_id, task_id=instance.id, bet_amount=str(amount)
            )
            return TaskCreation(task=instance)

        record = await db_client.create_record(
            collection="tasks",
            data={
                **data,
                "kind": TaskKind.TEMPLATE,
                "status": TaskStatus.PENDING,
                "recurrence": rule.model_dump(mode="json"),
            },
        )
        template = TemplateTask.model_validate(record)
        await recurrence_generator.generate_for_today(user_id=user_id)
        funded = [i for i in await lock_generated(user_id=user_id) if i.parent_task_id == template.id]

        log_with_user_context(
            logger,
            "info",
            "Created recurring template",
            user_id=user_id,
            task_id=template.id,
            generated=len(funded),
        )
        return TaskCreation(task=template, generated=funded)


def _month_bounds(month: str) -> tuple[date, date]:
    try:
        year_text, month_text = month.split("-")
        year, month_number = int(year_text), int(month_text)
        first = date(year, month_number, 1)
    except ValueError as e:
        msg = f"month must be YYYY-MM, got {month!r}"
        raise InvalidRequestError(msg) from e
    last = date(year, month_number, calendar.monthrange(year, month_number)[1])
    return first, last


async def _attach_parent_recurrence(instances: list[InstanceTask]) -> list[InstanceTask]:
    parents: dict[str, TemplateTask | None] = {}
    for instance in instances:
        parent_id = instance.parent_task_id
        if parent_id is None or parent_id in parents:
            continue
        try:
            record = await db_client.get_record(collection="tasks", record_id=parent_id)
        except db_client.RecordNotFoundError:
            parents[parent_id] = None
            continue
        parents[parent_id] = TemplateTask.model_validate(record) if record["kind"] == TaskKind.TEMPLATE else None

    attached = []
    for instance in instances:
        parent = parents.get(instance.parent_task_id) if instance.parent_task_id else None
        attached.append(
            instance.model_copy(
                update={
                    "parent_recurrence": parent.recurrence if parent else None,
                    "parent_schedule": describe(parent.recurrence) if parent else None,
                }
            )
        )
    return attached


async def list_tasks(
    *,
    user_id: str,
    status: TaskStatus | str | None = None,
    category: TaskCategory | str | None = None,
    archived: ArchivedFilter | str = ArchivedFilter.HIDE,
    month: str | None = None,
) -> list[InstanceTask]:
    """List a user's instances, newest first.

    Generates and funds due occurrences (today, or the whole month when month is
    given as YYYY-MM), then expires overdue tasks, before reading.

    Raises:
        InvalidRequestError: If a filter value is not recognised
    """
    with span("task_service.list_tasks"):
        try:
            archived_filter = ArchivedFilter(archived)
            status_filter = TaskStatus(status) if status else None
        except ValueError as e:
            raise InvalidRequestError(str(e)) from e
        category_filter = _validate_category(category) if category else None

        if month:
            first, last = _month_bounds(month)
            await recurrence_generator.generate_for_range(user_id=user_id, start_date=first, end_date=last)
        else:
            await recurrence_generator.generate_for_today(user_id=user_id)
        await lock_generated(user_id=user_id)
        await expiration.expire_overdue_tasks(user_id=user_id)

        conditions = [f'kind = "{TaskKind.INSTANCE}"', f'user_id = "{sanitize_param(user_id)}"']
        if status_filter:
            conditions.append(f'status = "{status_filter}"')
        if category_filter:
            conditions.append(f'category = "{category_filter}"')
        if archived_filter == ArchivedFilter.HIDE:
            conditions.append('archived = "false"')
        elif archived_filter == ArchivedFilter.ONLY:
            conditions.append('archived = "true"')

        records = await db_client.list_all_records(
            collection="tasks",
            filter_query=" && ".join(conditions),
            sort="-created,-id",
        )
        return await _attach_parent_recurrence([instance_from_record(r) for r in records])


async def list_tasks_for_range(*, user_id: str, start_date: date, end_date: date) -> list[InstanceTask]:
    """List instances whose deadline falls on a local date within [start_date, end_date].

    Due occurrences in the range are generated and funded first.
    """
    with span("task_service.list_tasks_for_range"):
        await recurrence_generator.generate_for_range(
            user_id=user_id,
            start_date=start_date,
            end_date=end_date,
        )
        await lock_generated(user_id=user_id)

        user = await user_service.get_user(user_id=user_id)
        range_start, _ = clock.local_day_bounds(start_date, user.timezone)
        _, range_end = clock.local_day_bounds(end_date, user.timezone)

        records = await db_client.list_all_records(
            collection="tasks",
            filter_query=(
                f'kind = "{TaskKind.INSTANCE}" && user_id = "{sanitize_param(user_id)}"'
                f' && deadline >= "{clock.to_db_timestamp(range_start)}"'
                f' && deadline < "{clock.to_db_timestamp(range_end)}"'
            ),
            sort="deadline",
        )
        return await _attach_parent_recurrence([instance_from_record(r) for r in records])


async def get_task(*, user_id: str, task_id: str) -> InstanceTask | TemplateTask:
    """Get one of the caller's tasks.

    Raises:
        NotFoundError: If the task does not exist or belongs to someone else
    """
    with span("task_service.get_task"):
        record = await _get_owned_record(user_id=user_id, task_id=task_id)
        task = task_from_record(record)
        if isinstance(task, InstanceTask):
            return (await _attach_parent_recurrence([task]))[0]
        return task


async def submit_evidence(*, user_id: str, task_id: str, evidence_id: str) -> InstanceTask:
    """Attach evidence and move the task to SUBMITTED.

    A submission at or after the deadline expires the task (stake forfeited) and
    is then refused.

    Raises:
        NotFoundError: If the task or evidence does not exist or is not the caller's
        InvalidRequestError: If the evidence belongs to a different task
        StateConflictError: If the task is not IN_PROGRESS
        TaskExpiredError: If the deadline has passed
    """
    with span("task_service.submit_evidence"):
        task = await _get_owned_instance(user_id=user_id, task_id=task_id)
        evidence = await evidence_service.get_evidence(evidence_id=evidence_id)
        if evidence.user_id != user_id:
            raise NotFoundError(f"Evidence not found: {evidence_id}")
        if evidence.task_id != task.id:
            msg = f"Evidence {evidence_id} was recorded for a different task"
            raise InvalidRequestError(msg)

        if task.status != TaskStatus.IN_PROGRESS:
            msg = f"Cannot submit: task {task.id} is in {task.status} state"
            raise StateConflictError(msg, current_state=task.status)

        now = clock.utc_now()
        if now >= task.deadline:
            try:
                await state_machine.expire(task=task)
            except StateConflictError as e:
                if e.current_state != TaskStatus.FAILED:
                    raise
            log_with_user_context(logger, "info", "Submission after deadline", user_id=user_id, task_id=task.id)
            msg = f"Task {task.id} expired at {task.deadline.isoformat()}"
            raise TaskExpiredError(msg, current_state=TaskStatus.FAILED)

        updated = await state_machine.apply_transition(
            task=task,
            action=TaskAction.SUBMIT,
            changes={"evidence_id": evidence.id, "submitted_at": now},
        )
        log_with_user_context(logger, "info", "Submitted evidence", user_id=user_id, task_id=task.id)
        return updated


async def cancel_task(*, user_id: str, task_id: str) -> None:
    """Delete an in-progress task and return its stake to the balance.

    Raises:
        NotFoundError: If the task does not exist or belongs to someone else
        StateConflictError: If the task is not IN_PROGRESS
    """
    with span("task_service.cancel_task"):
        task = await _get_owned_instance(user_id=user_id, task_id=task_id)
        await state_machine.apply_transition(task=task, action=TaskAction.CANCEL)
        log_with_user_context(logger, "info", "Cancelled task", user_id=user_id, task_id=task_id)


async def archive_task(*, user_id: str, task_id: str) -> InstanceTask:
    """Hide a settled task from default listings."""
    with span("task_service.archive_task"):
        task = await _get_owned_instance(user_id=user_id, task_id=task_id)
        return await state_machine.apply_transition(task=task, action=TaskAction.ARCHIVE, changes={"archived": True})


async def unarchive_task(*, user_id: str, task_id: str) -> InstanceTask:
    """Show an archived task in default listings again."""
    with span("task_service.unarchive_task"):
        task = await _get_owned_instance(user_id=user_id, task_id=task_id)
        return await state_machine.apply_transition(task=task, action=TaskAction.UNARCHIVE, changes={"archived": False})


async def list_templates(*, user_id: str) -> list[TemplateTask]:
    """List the caller's recurring templates, newest first."""
    with span("task_service.list_templates"):
        records = await db_client.list_all_records(
            collection="tasks",
            filter_query=f'kind = "{TaskKind.TEMPLATE}" && user_id = "{sanitize_param(user_id)}"',
            sort="-created,-id",
        )
        return [TemplateTask.model_validate(r) for r in records]


async def delete_template(*, user_id: str, template_id: str) -> None:
    """Delete a template; instances already generated are kept.

    Raises:
        NotFoundError: If the template does not exist or belongs to someone else
    """
    with span("task_service.delete_template"):
        record = await _get_owned_record(user_id=user_id, task_id=template_id)
        if record["kind"] != TaskKind.TEMPLATE:
            raise NotFoundError(f"Template not found: {template_id}")
        await db_client.delete_record(collection="tasks", record_id=template_id)
        logger.info("Deleted template %s for user %s", template_id, user_id)


async def get_stats(*, user_id: str) -> TaskStats:
    """Summarize a user's instances and stake."""
    with span("task_service.get_stats"):
        base = f'kind = "{TaskKind.INSTANCE}" && user_id = "{sanitize_param(user_id)}"'
        total = await db_client.count_records(collection="tasks", filter_query=base)
        completed = await db_client.count_records(
            collection="tasks",
            filter_query=f'{base} && status = "{TaskStatus.COMPLETED}"',
        )
        failed = await db_client.count_records(
            collection="tasks",
            filter_query=f'{base} && status = "{TaskStatus.FAILED}"',
        )
        ledger = await ledger_service.get_ledger(user_id=user_id)

        return TaskStats(
            total=total,
            completed=completed,
            failed=failed,
            completion_rate=round(completed / total * 100) if total else 0,
            locked_amount=ledger.locked_amount,
            total_donated=ledger.total_donated,
        )
