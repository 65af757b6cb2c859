"""SQLite schema management (code-first approach)."""

import logging

from commitbet.core import db_client


logger = logging.getLogger(__name__)


TABLE_SCHEMAS: dict[str, str] = {
    "users": """CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created TEXT NOT NULL,
        updated TEXT NOT NULL,
        name TEXT NOT NULL,
        timezone TEXT
    )""",
    "friendships": """CREATE TABLE IF NOT EXISTS friendships (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created TEXT NOT NULL,
        updated TEXT NOT NULL,
        user_id INTEGER NOT NULL REFERENCES users(id),
        friend_id INTEGER NOT NULL REFERENCES users(id),
        CHECK (user_id != friend_id),
        UNIQUE(user_id, friend_id)
    )""",
    "ledgers": """CREATE TABLE IF NOT EXISTS ledgers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created TEXT NOT NULL,
        updated TEXT NOT NULL,
        user_id INTEGER NOT NULL UNIQUE REFERENCES users(id),
        balance TEXT NOT NULL,
        locked_amount TEXT NOT NULL,
        total_deposited TEXT NOT NULL,
        total_donated TEXT NOT NULL
    )""",
    "ledger_transactions": """CREATE TABLE IF NOT EXISTS ledger_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created TEXT NOT NULL,
        updated TEXT NOT NULL,
        user_id INTEGER NOT NULL REFERENCES users(id),
        type TEXT NOT NULL CHECK (type IN (
            'deposit', 'task_lock', 'task_unlock', 'task_refund',
            'task_forfeit', 'task_timeout', 'reconciliation'
        )),
        amount TEXT NOT NULL,
        task_id INTEGER,
        description TEXT NOT NULL DEFAULT '',
        timestamp TEXT NOT NULL
    )""",
    "tasks": """CREATE TABLE IF NOT EXISTS tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created TEXT NOT NULL,
        updated TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('template', 'instance')),
        user_id INTEGER NOT NULL REFERENCES users(id),
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        category TEXT NOT NULL DEFAULT 'other'
            CHECK (category IN ('fitness', 'study', 'quit_habit', 'project', 'other')),
        bet_amount TEXT NOT NULL,
        judge_user_id INTEGER NOT NULL REFERENCES users(id),
        status TEXT NOT NULL
            CHECK (status IN ('PENDING', 'IN_PROGRESS', 'SUBMITTED', 'COMPLETED', 'FAILED')),
        recurrence TEXT,
        deadline TEXT,
        parent_task_id INTEGER,
        judge_status TEXT CHECK (judge_status IN ('pending', 'approved', 'rejected')),
        judge_comment TEXT,
        evidence_id INTEGER,
        started_at TEXT,
        submitted_at TEXT,
        judged_at TEXT,
        archived INTEGER NOT NULL DEFAULT 0,
        CHECK (kind = 'template' OR deadline IS NOT NULL),
        CHECK (kind = 'instance' OR recurrence IS NOT NULL)
    )""",
    "evidences": """CREATE TABLE IF NOT EXISTS evidences (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created TEXT NOT NULL,
        updated TEXT NOT NULL,
        task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id),
        description TEXT NOT NULL,
        image_refs TEXT NOT NULL
    )""",
}

INDEXES: list[str] = [
    # One instance per scheduled occurrence of a template
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_occurrence
        ON tasks (user_id, parent_task_id, deadline)
        WHERE kind = 'instance' AND parent_task_id IS NOT NULL""",
    "CREATE INDEX IF NOT EXISTS idx_tasks_user_status ON tasks (user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_judge_status ON tasks (judge_user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_deadline ON tasks (deadline)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_transactions_user ON ledger_transactions (user_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_evidences_task_id ON evidences (task_id)",
]

# The transaction log has no update or delete path
TRIGGERS: list[str] = [
    """CREATE TRIGGER IF NOT EXISTS trg_ledger_transactions_no_update
        BEFORE UPDATE ON ledger_transactions
        BEGIN SELECT RAISE(ABORT, 'ledger_transactions is append-only'); END""",
    """CREATE TRIGGER IF NOT EXISTS trg_ledger_transactions_no_delete
        BEFORE DELETE ON ledger_transactions
        BEGIN SELECT RAISE(ABORT, 'ledger_transactions is append-only'); END""",
]


async def init_db(*, db_path: str | None = None) -> None:
    """Create all tables, indexes and triggers (idempotent).

    Args:
        db_path: Optional database path. Defaults to settings.sqlite_db_path.
    """
    logger.info("Initializing SQLite schema", extra={"db_path": str(db_client.get_db_path(db_path))})

    conn = await db_client.get_connection(db_path=db_path)
    for table_name, ddl in TABLE_SCHEMAS.items():
        await conn.execute(ddl)
        logger.debug("Ensured table %s", table_name)
    for statement in [*INDEXES, *TRIGGERS]:
        await conn.execute(statement)

    logger.info("SQLite schema ready", extra={"tables": list(TABLE_SCHEMAS)})
