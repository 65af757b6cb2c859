"""Task domain models and enums (templates and dated instances in one table)."""

import json
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from commitbet.core.recurrence import Recurrence


class TaskStatus(StrEnum):
    """Task lifecycle state."""

    PENDING = "PENDING"  # Templates, and generated instances awaiting their stake
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ACTIVE_STATUSES = (TaskStatus.IN_PROGRESS, TaskStatus.SUBMITTED)
TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


class JudgeStatus(StrEnum):
    """Judge's decision on a submitted task."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Verdict(StrEnum):
    """Verdict a judge may hand down."""

    APPROVED = "approved"
    REJECTED = "rejected"


class TaskCategory(StrEnum):
    """Fixed task categories."""

    FITNESS = "fitness"
    STUDY = "study"
    QUIT_HABIT = "quit_habit"
    PROJECT = "project"
    OTHER = "other"


class TaskKind(StrEnum):
    """Discriminator between recurrence templates and dated instances."""

    TEMPLATE = "template"
    INSTANCE = "instance"


class ArchivedFilter(StrEnum):
    """Which tasks a listing returns with respect to the archived flag."""

    HIDE = "false"
    ONLY = "true"
    ALL = "all"


class _TaskBase(BaseModel):
    id: str = Field(..., description="Unique task ID from database")
    created: datetime = Field(..., description="Creation timestamp (UTC)")
    updated: datetime = Field(..., description="Last update timestamp (UTC)")
    user_id: str = Field(..., description="Creator/owner user ID")
    title: str = Field(..., description="Task title")
    description: str = Field(default="", description="Detailed task description")
    category: TaskCategory = Field(default=TaskCategory.OTHER, description="Task category")
    bet_amount: Decimal = Field(..., description="Stake locked while the task is active")
    judge_user_id: str = Field(..., description="Friend who judges submitted evidence")


class TemplateTask(_TaskBase):
    """Recurring template; never locks funds and never leaves PENDING."""

    kind: Literal["template"] = "template"
    is_recurring: bool = Field(default=True, description="Always true for templates")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="Templates stay PENDING")
    recurrence: Recurrence = Field(..., description="Schedule that produces instances")

    @field_validator("recurrence", mode="before")
    @classmethod
    def decode_recurrence(cls, v: Any) -> Any:
        """Accept the JSON text stored in the recurrence column."""
        return json.loads(v) if isinstance(v, str) else v


class InstanceTask(_TaskBase):
    """One concrete dated commitment, ad hoc or generated from a template."""

    kind: Literal["instance"] = "instance"
    deadline: datetime = Field(..., description="Absolute UTC instant by which evidence is due")
    status: TaskStatus = Field(default=TaskStatus.IN_PROGRESS, description="Current lifecycle state")
    parent_task_id: str | None = Field(default=None, description="Template this instance was generated from")
    judge_status: JudgeStatus = Field(default=JudgeStatus.PENDING, description="Judge's decision")
    judge_comment: str | None = Field(default=None, description="Judge's comment on the verdict")
    evidence_id: str | None = Field(default=None, description="Evidence attached on submission")
    started_at: datetime | None = Field(default=None, description="When the stake was locked")
    submitted_at: datetime | None = Field(default=None, description="When evidence was submitted")
    judged_at: datetime | None = Field(default=None, description="When the verdict was recorded")
    archived: bool = Field(default=False, description="Hidden from default listings")
    parent_recurrence: Recurrence | None = Field(
        default=None,
        description="Parent template's schedule, attached by listings",
    )
    parent_schedule: str | None = Field(
        default=None,
        description="Human-readable form of parent_recurrence, e.g. \"daily at 9:00 AM\"",
    )


Task = Annotated[TemplateTask | InstanceTask, Field(discriminator="kind")]

_task_adapter: TypeAdapter[TemplateTask | InstanceTask] = TypeAdapter(Task)


def task_from_record(record: dict[str, Any]) -> TemplateTask | InstanceTask:
    """Build the right Task variant from a tasks table row."""
    return _task_adapter.validate_python(record)


def instance_from_record(record: dict[str, Any]) -> InstanceTask:
    """Build an InstanceTask from a tasks table row."""
    return InstanceTask.model_validate(record)


class TaskCreation(BaseModel):
    """Result of creating a task."""

    task: Task = Field(..., description="The created instance or template")
    generated: list[InstanceTask] = Field(
        default_factory=list,
        description="Instances generated and funded immediately for a new template",
    )

    @property
    def generated_count(self) -> int:
        return len(self.generated)


class TaskStats(BaseModel):
    """Per-user task statistics."""

    total: int = Field(..., description="Number of instances")
    completed: int = Field(..., description="Instances approved by their judge")
    failed: int = Field(..., description="Instances rejected or expired")
    completion_rate: int = Field(..., description="Completed over all instances, as a rounded percent")
    locked_amount: Decimal = Field(..., description="Stake currently locked")
    total_donated: Decimal = Field(..., description="Lifetime forfeited stake")
