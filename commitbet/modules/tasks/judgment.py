"""Judgment of submitted tasks by their assigned friend."""

import logging

from commitbet.core import clock, db_client
from commitbet.core.config import Constants
from commitbet.core.db_client import sanitize_param
from commitbet.core.errors import InvalidRequestError, NotAuthorizedError, NotFoundError, StateConflictError
from commitbet.core.logging import log_with_user_context, span
from commitbet.domain.task import InstanceTask, JudgeStatus, TaskKind, TaskStatus, Verdict, instance_from_record
from commitbet.modules.tasks import state_machine
from commitbet.modules.tasks.state_machine import TaskAction


logger = logging.getLogger(__name__)


async def judge_task(
    *,
    judge_user_id: str,
    task_id: str,
    verdict: Verdict | str,
    comment: str,
) -> InstanceTask:
    """Record the judge's verdict and settle the stake.

    approved moves the task to COMPLETED and returns the stake to the owner's
    balance; rejected moves it to FAILED and forfeits the stake.

    Args:
        judge_user_id: Caller, who must be the task's assigned judge
        task_id: Submitted task to judge
        verdict: approved or rejected
        comment: Required explanation, at most Constants.JUDGE_COMMENT_MAX_LENGTH characters

    Returns:
        The settled task

    Raises:
        InvalidRequestError: If the verdict or comment is invalid
        NotFoundError: If the task does not exist
        NotAuthorizedError: If the caller is not the assigned judge
        AlreadyJudgedError: If a verdict was already recorded
        StateConflictError: If the task is not SUBMITTED
    """
    with span("judgment.judge_task"):
        try:
            decision = Verdict(verdict)
        except ValueError as e:
            msg = f"Verdict must be approved or rejected, got {verdict!r}"
            raise InvalidRequestError(msg) from e

        text = (comment or "").strip()
        if not text:
            msg = "A comment is required when judging"
            raise InvalidRequestError(msg)
        if len(text) > Constants.JUDGE_COMMENT_MAX_LENGTH:
            msg = f"Comment too long (max {Constants.JUDGE_COMMENT_MAX_LENGTH} characters)"
            raise InvalidRequestError(msg)

        if not str(task_id).isdigit():
            raise NotFoundError(f"Task not found: {task_id}")
        try:
            record = await db_client.get_record(collection="tasks", record_id=task_id)
        except db_client.RecordNotFoundError as e:
            raise NotFoundError(f"Task not found: {task_id}") from e

        if record["judge_user_id"] != judge_user_id:
            msg = f"User {judge_user_id} is not the judge of task {task_id}"
            raise NotAuthorizedError(msg)
        if record["kind"] != TaskKind.INSTANCE:
            msg = f"Task {task_id} is a recurring template"
            raise StateConflictError(msg, current_state=record["status"])

        task = instance_from_record(record)
        action = TaskAction.APPROVE if decision == Verdict.APPROVED else TaskAction.REJECT
        judged = await state_machine.apply_transition(
            task=task,
            action=action,
            changes={
                "judge_status": JudgeStatus(decision.value),
                "judge_comment": text,
                "judged_at": clock.utc_now(),
            },
        )

        log_with_user_context(
            logger,
            "info",
            "Task judged",
            user_id=task.user_id,
            task_id=task.id,
            judge_user_id=judge_user_id,
            verdict=str(decision),
        )
        return judged


async def list_tasks_to_judge(*, judge_user_id: str) -> list[InstanceTask]:
    """List non-archived tasks this user judges that are in progress or awaiting a verdict.

    Most recently submitted first; tasks without a submission follow, newest first.
    """
    with span("judgment.list_tasks_to_judge"):
        base = (
            f'kind = "{TaskKind.INSTANCE}" && judge_user_id = "{sanitize_param(judge_user_id)}" && archived = "false"'
        )
        submitted = await db_client.list_all_records(
            collection="tasks",
            filter_query=f'{base} && status = "{TaskStatus.SUBMITTED}" && judge_status = "{JudgeStatus.PENDING}"',
            sort="-submitted_at,-id",
        )
        in_progress = await db_client.list_all_records(
            collection="tasks",
            filter_query=f'{base} && status = "{TaskStatus.IN_PROGRESS}"',
            sort="-created,-id",
        )
        return [instance_from_record(r) for r in [*submitted, *in_progress]]
