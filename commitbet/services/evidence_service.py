"""Evidence service: proof of completion attached to tasks on submission."""

import logging

from commitbet.core import db_client
from commitbet.core.config import Constants
from commitbet.core.errors import InvalidRequestError, NotAuthorizedError, NotFoundError
from commitbet.core.logging import span
from commitbet.domain.evidence import Evidence


logger = logging.getLogger(__name__)


async def record_evidence(
    *,
    task_id: str,
    user_id: str,
    description: str,
    image_refs: list[str],
) -> Evidence:
    """Record evidence for a task owned by user_id.

    Args:
        task_id: Task the evidence supports
        user_id: Task owner recording the evidence
        description: What was done (required)
        image_refs: At least one reference to an uploaded image

    Returns:
        Created evidence

    Raises:
        InvalidRequestError: If the description or image list is empty or too long
        NotFoundError: If the task does not exist
        NotAuthorizedError: If the task belongs to someone else
    """
    with span("evidence_service.record_evidence"):
        text = description.strip()
        if not text:
            msg = "Evidence description is required"
            raise InvalidRequestError(msg)
        if len(text) > Constants.EVIDENCE_DESCRIPTION_MAX_LENGTH:
            msg = f"Evidence description too long (max {Constants.EVIDENCE_DESCRIPTION_MAX_LENGTH} characters)"
            raise InvalidRequestError(msg)
        refs = [ref.strip() for ref in image_refs if ref and ref.strip()]
        if not refs:
            msg = "At least one image is required as evidence"
            raise InvalidRequestError(msg)

        if not str(task_id).isdigit():
            raise NotFoundError(f"Task not found: {task_id}")
        try:
            task = await db_client.get_record(collection="tasks", record_id=task_id)
        except db_client.RecordNotFoundError as e:
            raise NotFoundError(f"Task not found: {task_id}") from e
        if task["user_id"] != user_id:
            msg = f"User {user_id} cannot attach evidence to task {task_id}"
            raise NotAuthorizedError(msg)

        record = await db_client.create_record(
            collection="evidences",
            data={"task_id": task_id, "user_id": user_id, "description": text, "image_refs": refs},
        )
        logger.info("Recorded evidence %s for task %s (%d images)", record["id"], task_id, len(refs))
        return Evidence.model_validate(record)


async def get_evidence(*, evidence_id: str) -> Evidence:
    """Get evidence by ID.

    Raises:
        NotFoundError: If the evidence does not exist
    """
    with span("evidence_service.get_evidence"):
        if not str(evidence_id).isdigit():
            raise NotFoundError(f"Evidence not found: {evidence_id}")
        try:
            record = await db_client.get_record(collection="evidences", record_id=evidence_id)
        except db_client.RecordNotFoundError as e:
            raise NotFoundError(f"Evidence not found: {evidence_id}") from e
        return Evidence.model_validate(record)
