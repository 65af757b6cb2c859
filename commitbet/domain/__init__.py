"""Domain models and DTOs."""

from commitbet.domain.evidence import Evidence
from commitbet.domain.ledger import (
    Ledger,
    LedgerTransaction,
    ReconciliationReport,
    TransactionPage,
    TransactionType,
)
from commitbet.domain.task import (
    ArchivedFilter,
    InstanceTask,
    JudgeStatus,
    Task,
    TaskCategory,
    TaskCreation,
    TaskKind,
    TaskStats,
    TaskStatus,
    TemplateTask,
    Verdict,
)
from commitbet.domain.user import User, UserCreate


__all__ = [
    "ArchivedFilter",
    "Evidence",
    "InstanceTask",
    "JudgeStatus",
    "Ledger",
    "LedgerTransaction",
    "ReconciliationReport",
    "Task",
    "TaskCategory",
    "TaskCreation",
    "TaskKind",
    "TaskStats",
    "TaskStatus",
    "TemplateTask",
    "TransactionPage",
    "TransactionType",
    "User",
    "UserCreate",
    "Verdict",
]
