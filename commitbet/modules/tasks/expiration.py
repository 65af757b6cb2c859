"""Expiration sweep: fail overdue in-progress tasks and forfeit their stake."""

import logging

from commitbet.core import clock, db_client
from commitbet.core.db_client import sanitize_param
from commitbet.core.errors import StateConflictError
from commitbet.core.logging import span
from commitbet.domain.task import InstanceTask, TaskKind, TaskStatus, instance_from_record
from commitbet.modules.tasks import state_machine


logger = logging.getLogger(__name__)


async def expire_overdue_tasks(*, user_id: str) -> list[InstanceTask]:
    """Expire the user's IN_PROGRESS instances whose deadline has passed.

    Runs before task listings. Errors never propagate: a task someone else settled
    first is skipped, anything else is logged and the sweep moves on.

    Returns:
        The tasks this sweep moved to FAILED
    """
    with span("expiration.expire_overdue_tasks"):
        now = clock.utc_now()
        try:
            records = await db_client.list_all_records(
                collection="tasks",
                filter_query=(
                    f'kind = "{TaskKind.INSTANCE}" && user_id = "{sanitize_param(user_id)}"'
                    f' && status = "{TaskStatus.IN_PROGRESS}" && deadline < "{clock.to_db_timestamp(now)}"'
                ),
                sort="deadline",
            )
        except Exception:
            logger.exception("Expiration sweep could not load tasks for user %s", user_id)
            return []

        expired: list[InstanceTask] = []
        for record in records:
            task_id = record.get("id")
            try:
                expired.append(await state_machine.expire(task=instance_from_record(record)))
            except StateConflictError as e:
                logger.debug("Skipped expiring task %s: %s", task_id, e)
            except Exception:
                logger.exception("Failed to expire task %s", task_id)

        if expired:
            logger.info("Expired %d overdue task(s) for user %s", len(expired), user_id)
        return expired
