"""SQLite database client wrapper with CRUD and atomic update primitives."""

import asyncio
import json
import logging
import re
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

import aiosqlite

from commitbet.core import clock
from commitbet.core.config import settings
from commitbet.core.errors import ServiceUnavailableError


logger = logging.getLogger(__name__)


class DatabaseError(RuntimeError):
    """Raised when a database operation fails."""


class RecordNotFoundError(DatabaseError, KeyError):
    """Raised when a record lookup by ID finds nothing."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class DatabaseUnavailableError(ServiceUnavailableError, DatabaseError):
    """Raised when the database is locked, busy, or cannot be opened."""


_UNAVAILABLE_MARKERS = ("database is locked", "database is busy", "unable to open database", "disk i/o error")


def _store_error(msg: str, error: Exception) -> DatabaseError:
    """Pick the DatabaseError subclass for a failed driver call."""
    if isinstance(error, aiosqlite.OperationalError) and any(m in str(error).lower() for m in _UNAVAILABLE_MARKERS):
        return DatabaseUnavailableError(msg)
    return DatabaseError(msg)


def _validate_collection_name(collection: str) -> None:
    """Validate that a collection name contains only alphanumeric characters and underscores."""
    if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", collection):
        msg = f"Invalid collection name: {collection}. Only alphanumeric characters and underscores are allowed."
        raise ValueError(msg)


def sanitize_param(value: str | int | float | bool | None) -> str:
    """Escape a value for safe embedding in filter queries via json.dumps."""
    return json.dumps(str(value))[1:-1]


def _convert_record_ids(record: dict[str, Any]) -> dict[str, Any]:
    """Convert integer ID and foreign key fields to strings for Pydantic compatibility."""
    converted = record.copy()
    for key, value in converted.items():
        if isinstance(value, int) and (key == "id" or key.endswith("_id")):
            converted[key] = str(value)
    return converted


def _to_db_value(value: Any) -> Any:
    """Encode a Python value into something SQLite stores losslessly."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return clock.to_db_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict | list):
        return json.dumps(value)
    return value


def get_db_path(db_path: str | None = None) -> Path:
    """Get the resolved SQLite database file path."""
    path_str = db_path or settings.sqlite_db_path
    return Path(path_str).resolve()


def _parse_value(value: str, *, is_like: bool = False) -> str | int | float | bool | None:
    """Parse a string value to the appropriate Python type for SQLite."""
    if is_like:
        escaped = value.replace("%", r"\%").replace("_", r"\_")
        return f"%{escaped}%"

    if value.isdigit():
        return int(value)

    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False

    return value


def _get_sql_operator(op: str) -> str:
    """Map filter operator to SQL operator."""
    op_map = {
        "=": "=",
        "!=": "!=",
        ">": ">",
        "<": "<",
        ">=": ">=",
        "<=": "<=",
        "~": "LIKE",
    }
    sql_op = op_map.get(op)
    if not sql_op:
        msg = f"Unsupported operator: {op}"
        raise ValueError(msg)
    return sql_op


def _parse_single_comparison(comparison: str) -> tuple[str, list[str | int | float | bool | None]]:
    """Parse a single comparison expression into a SQL condition and its parameters.

    Supports quoted values (field = "x") and the bare keyword null
    (field = null, field != null).
    """
    null_match = re.match(r"^(\w+)\s*(=|!=)\s*null$", comparison)
    if null_match:
        field, op = null_match.group(1), null_match.group(2)
        return (f"{field} IS NULL" if op == "=" else f"{field} IS NOT NULL"), []

    match = re.match(
        r"""^(\w+)\s*(>=|<=|!=|=|>|<|~)\s*(['"])([^'"]*)\3$""",
        comparison,
    )
    if not match:
        msg = f"Invalid filter syntax: {comparison}"
        raise ValueError(msg)

    field = match.group(1)
    sql_op = _get_sql_operator(match.group(2))
    is_like = sql_op == "LIKE"
    value = _parse_value(match.group(4), is_like=is_like)

    if is_like:
        return f"{field} LIKE ? ESCAPE '\\'", [value]
    return f"{field} {sql_op} ?", [value]


def _parse_or_group(or_group: str) -> tuple[str, list[str | int | float | bool | None]]:
    """Parse a parenthesized OR group into a SQL condition and parameters."""
    inner = or_group[1:-1]
    or_conditions = []
    or_params: list[str | int | float | bool | None] = []

    for part in inner.split("||"):
        cond, values = _parse_single_comparison(part.strip())
        or_conditions.append(cond)
        or_params.extend(values)

    return f"({' OR '.join(or_conditions)})", or_params


def _split_and_conditions(filter_query: str) -> list[str]:
    """Split filter query by && while preserving parenthesized groups."""
    parts = []
    current = ""
    paren_depth = 0

    for char in filter_query:
        if char == "(":
            paren_depth += 1
        elif char == ")":
            paren_depth -= 1

        current += char

        if paren_depth == 0 and current.endswith("&&"):
            parts.append(current[:-2].strip())
            current = ""

    if current.strip():
        parts.append(current.strip())

    return parts


def parse_filter(filter_query: str) -> tuple[str, list[str | int | float | bool | None]]:
    """Parse filter syntax into a SQL WHERE clause and parameter list."""
    if not filter_query:
        return "", []

    conditions = []
    params: list[str | int | float | bool | None] = []

    for raw_part in _split_and_conditions(filter_query):
        part = raw_part.strip()

        if part.startswith("(") and part.endswith(")"):
            cond, cond_params = _parse_or_group(part)
        else:
            cond, cond_params = _parse_single_comparison(part)
        conditions.append(cond)
        params.extend(cond_params)

    return " AND ".join(conditions), params


def _parse_sort(sort: str) -> str:
    """Translate "-field,+other" or "field DESC" into a safe ORDER BY clause."""
    clauses = []
    for raw in sort.split(","):
        item = raw.strip()
        prefixed = re.match(r"^([+-])([A-Za-z_][A-Za-z0-9_]*)$", item)
        if prefixed:
            direction = "DESC" if prefixed.group(1) == "-" else "ASC"
            clauses.append(f"{prefixed.group(2)} {direction}")
            continue
        plain = re.match(r"^([A-Za-z_][A-Za-z0-9_]*)(?:\s+(ASC|DESC))?$", item, re.IGNORECASE)
        if not plain:
            logger.warning("Invalid sort parameter, using default", extra={"sort": sort})
            return "id ASC"
        clauses.append(f"{plain.group(1)} {(plain.group(2) or 'ASC').upper()}")
    # Stable tiebreaker so pagination never skips rows
    clauses.append("id ASC")
    return ", ".join(clauses)


_db_connections: dict[tuple[int, int, str], aiosqlite.Connection] = {}
_connection_locks: dict[tuple[int, int, str], asyncio.Lock] = {}
_db_lock = asyncio.Lock()

# Connection owned by the transaction running in the current task, if any
_active_transaction: ContextVar[aiosqlite.Connection | None] = ContextVar("_active_transaction", default=None)


def _cache_key(db_path: str | None = None) -> tuple[int, int, str]:
    loop = asyncio.get_event_loop()
    return threading.get_ident(), id(loop), str(get_db_path(db_path))


async def get_connection(*, db_path: str | None = None) -> aiosqlite.Connection:
    """Get or create a cached connection for the current thread, loop, and db path."""
    loop = asyncio.get_event_loop()
    cache_key = _cache_key(db_path)

    if cache_key in _db_connections:
        cached_conn = _db_connections[cache_key]
        if not loop.is_closed():
            return cached_conn
        async with _db_lock:
            _db_connections.pop(cache_key, None)
            _connection_locks.pop(cache_key, None)

    async with _db_lock:
        # Double-check after acquiring lock
        if cache_key in _db_connections:
            return _db_connections[cache_key]

        path = Path(cache_key[2])
        path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode: single statements commit on their own, transactions are explicit
        conn = await aiosqlite.connect(str(path), isolation_level=None)
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute("PRAGMA busy_timeout = 5000")

        _db_connections[cache_key] = conn
        _connection_locks[cache_key] = asyncio.Lock()

        logger.info(
            "Created new SQLite connection",
            extra={"db_path": cache_key[2], "thread_id": cache_key[0], "loop_id": cache_key[1]},
        )
        return conn


async def close_connection(*, db_path: str | None = None) -> None:
    """Close the cached SQLite connection for the current thread, loop, and db path."""
    cache_key = _cache_key(db_path)

    if cache_key not in _db_connections:
        return

    try:
        async with _db_lock:
            if cache_key in _db_connections:
                conn = _db_connections.pop(cache_key)
                _connection_locks.pop(cache_key, None)
                await conn.close()
                logger.info("Closed SQLite connection", extra={"db_path": cache_key[2]})
    except Exception as e:
        logger.warning("Error closing SQLite connection", extra={"error": str(e), "db_path": cache_key[2]})


@asynccontextmanager
async def _connection_scope() -> AsyncIterator[aiosqlite.Connection]:
    """Yield the connection, serialized against transactions from other tasks.

    Inside transaction() the owning connection is reused without re-locking.
    """
    active = _active_transaction.get()
    if active is not None:
        yield active
        return

    conn = await get_connection()
    async with _connection_locks[_cache_key()]:
        yield conn


@asynccontextmanager
async def transaction() -> AsyncIterator[aiosqlite.Connection]:
    """Run the enclosed operations as one atomic unit.

    Opens BEGIN IMMEDIATE so writers from other processes serialize at the
    database; nested use joins the outer transaction. Any exception rolls back.
    """
    active = _active_transaction.get()
    if active is not None:
        yield active
        return

    conn = await get_connection()
    async with _connection_locks[_cache_key()]:
        try:
            await conn.execute("BEGIN IMMEDIATE")
        except aiosqlite.Error as e:
            logger.error("begin_transaction_failed", extra={"error": str(e)})
            msg = f"Failed to begin transaction: {e}"
            raise _store_error(msg, e) from e
        token = _active_transaction.set(conn)
        try:
            yield conn
        except BaseException:
            await conn.execute("ROLLBACK")
            raise
        else:
            await conn.execute("COMMIT")
        finally:
            _active_transaction.reset(token)


async def init_db(*, db_path: str | None = None) -> None:
    """Initialize the database schema by delegating to schema.init_db()."""
    from commitbet.core import schema

    await schema.init_db(db_path=db_path)


def _row_to_record(cursor: aiosqlite.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    columns = [description[0] for description in cursor.description]
    return _convert_record_ids(dict(zip(columns, row, strict=True)))


async def _fetch_one(conn: aiosqlite.Connection, collection: str, record_id: str) -> dict[str, Any] | None:
    query = f"SELECT * FROM {collection} WHERE id = ?"  # noqa: S608 - collection is validated
    cursor = await conn.execute(query, (int(record_id),))
    row = await cursor.fetchone()
    return None if row is None else _row_to_record(cursor, row)


async def create_record(*, collection: str, data: dict[str, Any]) -> dict[str, Any]:
    """Insert a new record and return it with its assigned id."""
    try:
        _validate_collection_name(collection)
        now = clock.utc_now()
        payload = {"created": now, "updated": now, **data}

        columns_str = ", ".join(payload)
        placeholders_str = ", ".join("?" for _ in payload)
        values = [_to_db_value(v) for v in payload.values()]

        async with _connection_scope() as conn:
            query = f"INSERT INTO {collection} ({columns_str}) VALUES ({placeholders_str})"  # noqa: S608
            cursor = await conn.execute(query, values)
            record = await _fetch_one(conn, collection, str(cursor.lastrowid))

        logger.info("Created record", extra={"collection": collection, "record_id": cursor.lastrowid})
        return record or {}
    except DatabaseError:
        raise
    except Exception as e:
        if isinstance(e, aiosqlite.OperationalError) and "no such table" in str(e):
            msg = f"Table '{collection}' does not exist. Call init_db() first."
            logger.error("Table not found", extra={"collection": collection})
            raise _store_error(msg, e) from e
        logger.error("create_record_failed", extra={"collection": collection, "error": str(e)})
        msg = f"Failed to create record in {collection}: {e}"
        raise _store_error(msg, e) from e


async def insert_if_absent(
    *,
    collection: str,
    data: dict[str, Any],
    conflict_fields: list[str],
) -> tuple[dict[str, Any], bool]:
    """Insert a record unless a unique constraint on conflict_fields already holds it.

    Relies on a unique index covering conflict_fields, so concurrent callers
    resolve to exactly one insert; the rest get the existing row back.

    Returns:
        (record, inserted) where inserted is True only for the caller that wrote the row
    """
    try:
        _validate_collection_name(collection)
        now = clock.utc_now()
        payload = {"created": now, "updated": now, **data}

        columns_str = ", ".join(payload)
        placeholders_str = ", ".join("?" for _ in payload)
        values = [_to_db_value(v) for v in payload.values()]

        async with _connection_scope() as conn:
            query = f"INSERT OR IGNORE INTO {collection} ({columns_str}) VALUES ({placeholders_str})"  # noqa: S608
            cursor = await conn.execute(query, values)

            if cursor.rowcount == 1:
                record = await _fetch_one(conn, collection, str(cursor.lastrowid))
                logger.info("Inserted record", extra={"collection": collection, "record_id": cursor.lastrowid})
                return record or {}, True

            where = " AND ".join(f"{field} = ?" for field in conflict_fields)
            lookup = f"SELECT * FROM {collection} WHERE {where} LIMIT 1"  # noqa: S608
            cursor = await conn.execute(lookup, [_to_db_value(data[field]) for field in conflict_fields])
            row = await cursor.fetchone()

        if row is None:
            msg = f"Insert into {collection} was ignored but no conflicting row matches {conflict_fields}"
            raise DatabaseError(msg)

        logger.debug("Record already present", extra={"collection": collection})
        return _row_to_record(cursor, row), False
    except DatabaseError:
        raise
    except Exception as e:
        logger.error("insert_if_absent_failed", extra={"collection": collection, "error": str(e)})
        msg = f"Failed to insert record in {collection}: {e}"
        raise _store_error(msg, e) from e


async def get_record(*, collection: str, record_id: str) -> dict[str, Any]:
    """Fetch a single record by ID, raising RecordNotFoundError if not found."""
    try:
        _validate_collection_name(collection)
        async with _connection_scope() as conn:
            record = await _fetch_one(conn, collection, record_id)
    except (ValueError, aiosqlite.Error) as e:
        logger.error("get_record_failed", extra={"collection": collection, "record_id": record_id, "error": str(e)})
        msg = f"Failed to get record from {collection}: {e}"
        raise _store_error(msg, e) from e

    if record is None:
        msg = f"Record not found in {collection}: {record_id}"
        raise RecordNotFoundError(msg)

    logger.debug("Retrieved record", extra={"collection": collection, "record_id": record_id})
    return record


async def update_record(*, collection: str, record_id: str, data: dict[str, Any]) -> dict[str, Any]:
    """Update a record by ID and return the updated record."""
    if not data:
        msg = "Empty update payload"
        raise ValueError(msg)

    updated = await compare_and_set(collection=collection, record_id=record_id, expected={}, data=data)
    if updated is None:
        msg = f"Record not found in {collection}: {record_id}"
        raise RecordNotFoundError(msg)
    return updated


async def compare_and_set(
    *,
    collection: str,
    record_id: str,
    expected: dict[str, Any],
    data: dict[str, Any],
) -> dict[str, Any] | None:
    """Apply data only if every field in expected still holds its given value.

    The check and the write are one UPDATE statement, so two callers racing on
    the same pre-state cannot both succeed.

    Returns:
        The updated record, or None when the record exists but no longer matches

    Raises:
        RecordNotFoundError: If no record has this ID
    """
    if not data:
        msg = "Empty update payload"
        raise ValueError(msg)

    try:
        _validate_collection_name(collection)
        payload = {**data, "updated": clock.utc_now()}
        set_clause = ", ".join(f"{key} = ?" for key in payload)
        values = [_to_db_value(v) for v in payload.values()]

        conditions = ["id = ?"]
        values.append(int(record_id))
        for key, value in expected.items():
            if value is None:
                conditions.append(f"{key} IS NULL")
            else:
                conditions.append(f"{key} = ?")
                values.append(_to_db_value(value))

        async with _connection_scope() as conn:
            query = f"UPDATE {collection} SET {set_clause} WHERE {' AND '.join(conditions)}"  # noqa: S608
            cursor = await conn.execute(query, values)
            record = await _fetch_one(conn, collection, record_id)
    except (ValueError, aiosqlite.Error) as e:
        logger.error("update_record_failed", extra={"collection": collection, "record_id": record_id, "error": str(e)})
        msg = f"Failed to update record in {collection}: {e}"
        raise _store_error(msg, e) from e

    if record is None:
        msg = f"Record not found in {collection}: {record_id}"
        raise RecordNotFoundError(msg)

    if cursor.rowcount == 0:
        logger.info("Compare-and-set lost", extra={"collection": collection, "record_id": record_id})
        return None

    logger.info("Updated record", extra={"collection": collection, "record_id": record_id})
    return record


async def delete_record(*, collection: str, record_id: str, expected: dict[str, Any] | None = None) -> bool:
    """Delete a record by ID, optionally only while fields in expected still match.

    Returns:
        True if the row was deleted, False if it exists but no longer matches expected

    Raises:
        RecordNotFoundError: If no record has this ID
    """
    try:
        _validate_collection_name(collection)
        conditions = ["id = ?"]
        values: list[Any] = [int(record_id)]
        for key, value in (expected or {}).items():
            if value is None:
                conditions.append(f"{key} IS NULL")
            else:
                conditions.append(f"{key} = ?")
                values.append(_to_db_value(value))

        async with _connection_scope() as conn:
            query = f"DELETE FROM {collection} WHERE {' AND '.join(conditions)}"  # noqa: S608
            cursor = await conn.execute(query, values)
            deleted = cursor.rowcount > 0
            exists = deleted or await _fetch_one(conn, collection, record_id) is not None
    except (ValueError, aiosqlite.Error) as e:
        logger.error("delete_record_failed", extra={"collection": collection, "record_id": record_id, "error": str(e)})
        msg = f"Failed to delete record from {collection}: {e}"
        raise _store_error(msg, e) from e

    if not exists:
        msg = f"Record not found in {collection}: {record_id}"
        raise RecordNotFoundError(msg)

    if deleted:
        logger.info("Deleted record", extra={"collection": collection, "record_id": record_id})
    return deleted


async def list_records(
    *,
    collection: str,
    page: int = 1,
    per_page: int = 50,
    filter_query: str = "",
    sort: str = "",
    offset: int | None = None,
) -> list[dict[str, Any]]:
    """List records with optional filtering, sorting, and pagination.

    An explicit offset takes precedence over page.
    """
    try:
        _validate_collection_name(collection)

        where_clause = ""
        params: list[Any] = []
        if filter_query:
            where_clause, params = parse_filter(filter_query)
            where_clause = f"WHERE {where_clause}"

        order_by = _parse_sort(sort) if sort else "id ASC"
        if offset is None:
            offset = (page - 1) * per_page

        query = f"SELECT * FROM {collection} {where_clause} ORDER BY {order_by} LIMIT ? OFFSET ?"  # noqa: S608
        params.extend([per_page, offset])

        async with _connection_scope() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            records = [_row_to_record(cursor, row) for row in rows]

        logger.debug("Listed records", extra={"collection": collection, "count": len(records)})
        return records
    except DatabaseError:
        raise
    except Exception as e:
        logger.error("list_records_failed", extra={"collection": collection, "error": str(e)})
        msg = f"Failed to list records from {collection}: {e}"
        raise _store_error(msg, e) from e


async def list_all_records(*, collection: str, filter_query: str = "", sort: str = "") -> list[dict[str, Any]]:
    """List every matching record by walking pages until one comes back short."""
    from commitbet.core.config import Constants

    records: list[dict[str, Any]] = []
    page = 1
    while True:
        batch = await list_records(
            collection=collection,
            filter_query=filter_query,
            sort=sort,
            page=page,
            per_page=Constants.SCAN_PAGE_SIZE,
        )
        records.extend(batch)
        if len(batch) < Constants.SCAN_PAGE_SIZE:
            return records
        page += 1


async def count_records(*, collection: str, filter_query: str = "") -> int:
    """Count records matching the filter."""
    try:
        _validate_collection_name(collection)
        where_clause, params = parse_filter(filter_query)
        query = f"SELECT COUNT(*) FROM {collection}"  # noqa: S608 - collection is validated
        if where_clause:
            query = f"{query} WHERE {where_clause}"

        async with _connection_scope() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
        return int(row[0]) if row else 0
    except DatabaseError:
        raise
    except Exception as e:
        logger.error("count_records_failed", extra={"collection": collection, "error": str(e)})
        msg = f"Failed to count records in {collection}: {e}"
        raise _store_error(msg, e) from e


async def get_first_record(*, collection: str, filter_query: str, sort: str = "") -> dict[str, Any] | None:
    """Return the first record matching the filter, or None."""
    records = await list_records(collection=collection, filter_query=filter_query, sort=sort, per_page=1)
    return records[0] if records else None
