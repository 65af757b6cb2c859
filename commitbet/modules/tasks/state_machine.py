"""Task lifecycle transitions and their ledger settlement.

Each transition is defined once in TRANSITIONS. apply_transition() checks the
pre-state, flips the status with a compare-and-set, and applies the ledger effect,
all inside one store transaction.
"""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from commitbet.core import clock, db_client
from commitbet.core.errors import AlreadyJudgedError, StateConflictError
from commitbet.core.logging import span
from commitbet.domain.ledger import TransactionType
from commitbet.domain.task import InstanceTask, JudgeStatus, TaskStatus, instance_from_record
from commitbet.services import ledger_service


logger = logging.getLogger(__name__)


class TaskAction(StrEnum):
    """Events that move an instance through its lifecycle."""

    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    EXPIRE = "expire"
    CANCEL = "cancel"
    ARCHIVE = "archive"
    UNARCHIVE = "unarchive"


class LedgerEffect(StrEnum):
    """Money movement that accompanies a transition."""

    NONE = "none"
    UNLOCK_TO_BALANCE = "unlock_to_balance"
    FORFEIT = "forfeit"


@dataclass(frozen=True)
class Transition:
    """Allowed pre-states, resulting state and ledger effect of one action."""

    from_states: frozenset[TaskStatus]
    to_state: TaskStatus | None  # None keeps the current status
    ledger_effect: LedgerEffect = LedgerEffect.NONE
    transaction_type: TransactionType | None = None
    deletes: bool = False
    requires: dict[str, Any] = field(default_factory=dict)


TRANSITIONS: dict[TaskAction, Transition] = {
    TaskAction.SUBMIT: Transition(
        from_states=frozenset({TaskStatus.IN_PROGRESS}),
        to_state=TaskStatus.SUBMITTED,
    ),
    TaskAction.APPROVE: Transition(
        from_states=frozenset({TaskStatus.SUBMITTED}),
        to_state=TaskStatus.COMPLETED,
        ledger_effect=LedgerEffect.UNLOCK_TO_BALANCE,
        transaction_type=TransactionType.TASK_REFUND,
        requires={"judge_status": JudgeStatus.PENDING},
    ),
    TaskAction.REJECT: Transition(
        from_states=frozenset({TaskStatus.SUBMITTED}),
        to_state=TaskStatus.FAILED,
        ledger_effect=LedgerEffect.FORFEIT,
        transaction_type=TransactionType.TASK_FORFEIT,
        requires={"judge_status": JudgeStatus.PENDING},
    ),
    TaskAction.EXPIRE: Transition(
        from_states=frozenset({TaskStatus.IN_PROGRESS}),
        to_state=TaskStatus.FAILED,
        ledger_effect=LedgerEffect.FORFEIT,
        transaction_type=TransactionType.TASK_TIMEOUT,
    ),
    TaskAction.CANCEL: Transition(
        from_states=frozenset({TaskStatus.IN_PROGRESS}),
        to_state=None,
        ledger_effect=LedgerEffect.UNLOCK_TO_BALANCE,
        transaction_type=TransactionType.TASK_UNLOCK,
        deletes=True,
    ),
    TaskAction.ARCHIVE: Transition(
        from_states=frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
        to_state=None,
        requires={"archived": False},
    ),
    TaskAction.UNARCHIVE: Transition(
        from_states=frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
        to_state=None,
        requires={"archived": True},
    ),
}

_JUDGE_ACTIONS = frozenset({TaskAction.APPROVE, TaskAction.REJECT})

_LEDGER_DESCRIPTIONS: dict[TransactionType, str] = {
    TransactionType.TASK_REFUND: "Task completed, stake returned: {title}",
    TransactionType.TASK_FORFEIT: "Task rejected, stake forfeited: {title}",
    TransactionType.TASK_TIMEOUT: "Task expired, stake forfeited: {title}",
    TransactionType.TASK_UNLOCK: "Task cancelled, stake unlocked: {title}",
}


def can_apply(*, task: InstanceTask, action: TaskAction) -> bool:
    """Check whether action is allowed from the task's current state."""
    transition = TRANSITIONS[action]
    if task.status not in transition.from_states:
        return False
    return all(getattr(task, key) == value for key, value in transition.requires.items())


def _conflict(*, task_id: str, action: TaskAction, status: str, judge_status: str | None) -> StateConflictError:
    if action in _JUDGE_ACTIONS and (
        status in (TaskStatus.COMPLETED, TaskStatus.FAILED) or judge_status not in (None, JudgeStatus.PENDING)
    ):
        return AlreadyJudgedError(f"Cannot {action}: task {task_id} has already been judged", current_state=status)
    return StateConflictError(f"Cannot {action}: task {task_id} is in {status} state", current_state=status)


async def _current_conflict(*, task_id: str, action: TaskAction) -> StateConflictError:
    """Build the conflict error from the row as it is now."""
    try:
        record = await db_client.get_record(collection="tasks", record_id=task_id)
    except db_client.RecordNotFoundError:
        return StateConflictError(f"Cannot {action}: task {task_id} no longer exists", current_state="DELETED")
    return _conflict(task_id=task_id, action=action, status=record["status"], judge_status=record.get("judge_status"))


async def _settle(*, task: InstanceTask, transition: Transition) -> None:
    if transition.ledger_effect == LedgerEffect.NONE or transition.transaction_type is None:
        return

    description = _LEDGER_DESCRIPTIONS[transition.transaction_type].format(title=task.title)
    if transition.ledger_effect == LedgerEffect.UNLOCK_TO_BALANCE:
        await ledger_service.unlock_to_balance(
            user_id=task.user_id,
            amount=task.bet_amount,
            task_id=task.id,
            transaction_type=transition.transaction_type,
            description=description,
        )
    else:
        await ledger_service.forfeit(
            user_id=task.user_id,
            amount=task.bet_amount,
            task_id=task.id,
            transaction_type=transition.transaction_type,
            description=description,
        )


async def apply_transition(
    *,
    task: InstanceTask,
    action: TaskAction,
    changes: dict[str, Any] | None = None,
) -> InstanceTask | None:
    """Apply an action to an instance and settle the ledger atomically.

    Args:
        task: Instance as last read by the caller
        action: Lifecycle event to apply
        changes: Extra columns to write together with the status flip

    Returns:
        The updated instance, or None when the action deletes the task

    Raises:
        StateConflictError: If the task is not in an allowed pre-state when the update runs
        AlreadyJudgedError: If a verdict was already recorded
        LedgerInconsistencyError: If the settlement would drive the ledger negative
    """
    transition = TRANSITIONS[action]

    with span(f"task_state_machine.{action}"):
        if not can_apply(task=task, action=action):
            raise _conflict(task_id=task.id, action=action, status=task.status, judge_status=task.judge_status)

        expected: dict[str, Any] = {"status": task.status, **transition.requires}
        updated: InstanceTask | None = None

        async with db_client.transaction():
            if transition.deletes:
                try:
                    deleted = await db_client.delete_record(collection="tasks", record_id=task.id, expected=expected)
                except db_client.RecordNotFoundError:
                    deleted = False
                if not deleted:
                    raise await _current_conflict(task_id=task.id, action=action)
            else:
                data: dict[str, Any] = dict(changes or {})
                if transition.to_state is not None:
                    data["status"] = transition.to_state
                try:
                    record = await db_client.compare_and_set(
                        collection="tasks",
                        record_id=task.id,
                        expected=expected,
                        data=data,
                    )
                except db_client.RecordNotFoundError:
                    record = None
                if record is None:
                    raise await _current_conflict(task_id=task.id, action=action)
                updated = instance_from_record(record)

            await _settle(task=task, transition=transition)

        logger.info(
            "Applied %s to task %s (%s -> %s)",
            action,
            task.id,
            task.status,
            "deleted" if transition.deletes else (transition.to_state or task.status),
        )
        return updated


async def expire(*, task: InstanceTask) -> InstanceTask:
    """Force an overdue in-progress instance to FAILED, forfeiting its stake.

    Raises:
        StateConflictError: If the task is not IN_PROGRESS or its deadline has not passed
    """
    if task.deadline > clock.utc_now():
        msg = f"Cannot expire: task {task.id} is not overdue"
        raise StateConflictError(msg, current_state=task.status)

    updated = await apply_transition(task=task, action=TaskAction.EXPIRE)
    if updated is None:
        msg = f"Expire unexpectedly deleted task {task.id}"
        raise RuntimeError(msg)
    return updated
