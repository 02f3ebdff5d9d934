"""SQLite persistence for tasks, occurrence exceptions and system limits."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import aiosqlite

from ..core.timezone_utils import format_instant
from ..exceptions import ConflictError, StoreError
from ..models import Task, TaskException, TaskStatus

logger = logging.getLogger(__name__)

TASK_LIMITS_KEY = "task_limits"

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER on older builds is 999
_IN_CLAUSE_CHUNK = 500

_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

_SCHEMA = (
    f"""
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        icon_name TEXT NOT NULL DEFAULT 'Activity',
        dtstart TEXT NOT NULL,
        duration_minutes INTEGER NOT NULL CHECK (duration_minutes > 0),
        rule TEXT,
        timezone TEXT NOT NULL DEFAULT 'UTC',
        status TEXT NOT NULL DEFAULT 'active',
        version INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
        updated_at TEXT NOT NULL DEFAULT ({_NOW_SQL})
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tasks_user_dtstart
    ON tasks(user_id, status, dtstart)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS task_instance_exceptions (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        original_occurrence_time TEXT NOT NULL,
        override_title TEXT,
        new_start_time TEXT,
        new_duration_minutes INTEGER CHECK (new_duration_minutes IS NULL OR new_duration_minutes > 0),
        is_cancelled INTEGER NOT NULL DEFAULT 0,
        is_complete INTEGER NOT NULL DEFAULT 0,
        completion_time TEXT,
        created_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
        updated_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
        UNIQUE (task_id, original_occurrence_time),
        FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS system_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT ({_NOW_SQL})
    )
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS update_tasks_timestamp
    AFTER UPDATE ON tasks
    BEGIN
        UPDATE tasks SET updated_at = {_NOW_SQL} WHERE id = NEW.id;
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS update_exceptions_timestamp
    AFTER UPDATE ON task_instance_exceptions
    BEGIN
        UPDATE task_instance_exceptions SET updated_at = {_NOW_SQL} WHERE id = NEW.id;
    END
    """,
)

_TASK_COLUMNS = (
    "id",
    "user_id",
    "title",
    "icon_name",
    "dtstart",
    "duration_minutes",
    "rule",
    "timezone",
    "status",
    "version",
)

OVERRIDE_COLUMNS = frozenset(
    {
        "override_title",
        "new_start_time",
        "new_duration_minutes",
        "is_cancelled",
        "is_complete",
        "completion_time",
    }
)


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_instant(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, TaskStatus):
        return value.value
    return value


def _task_params(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "user_id": task.user_id,
        "title": task.title,
        "icon_name": task.icon_name,
        "dtstart": format_instant(task.dtstart),
        "duration_minutes": task.duration_minutes,
        "rule": task.rule_text,
        "timezone": task.timezone,
        "status": task.status.value,
        "version": task.version,
    }


def _row_to_task(row: aiosqlite.Row) -> Task:
    return Task(**dict(row))


def _row_to_exception(row: aiosqlite.Row) -> TaskException:
    data = dict(row)
    data["is_cancelled"] = bool(data["is_cancelled"])
    data["is_complete"] = bool(data["is_complete"])
    return TaskException(**data)


def _chunks(items: Sequence[str], size: int = _IN_CLAUSE_CHUNK) -> Iterable[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class StoreTransaction:
    """Operations that run inside one ``BEGIN IMMEDIATE`` transaction.

    Obtained from ``DatabaseManager.transaction()``; every write either commits
    together with the rest of the transaction or not at all.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def get_task(self, task_id: str) -> Optional[Task]:
        cursor = await self._db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
        row = await cursor.fetchone()
        return _row_to_task(row) if row else None

    async def insert_task(self, task: Task) -> Task:
        params = _task_params(task)
        columns = ", ".join(params)
        placeholders = ", ".join(f":{name}" for name in params)
        await self._db.execute(f"INSERT INTO tasks ({columns}) VALUES ({placeholders})", params)
        stored = await self.get_task(task.id)
        if stored is None:
            raise StoreError(f"Task {task.id} vanished after insert")
        return stored

    async def update_task(self, task: Task, expected_version: int) -> Task:
        """Compare-and-swap update of every mutable task column.

        Raises:
            ConflictError: If the row's version is no longer ``expected_version``
        """
        params = _task_params(task)
        params["expected_version"] = expected_version
        assignments = ", ".join(
            f"{name} = :{name}" for name in _TASK_COLUMNS if name not in ("id", "user_id", "version")
        )
        cursor = await self._db.execute(
            f"""
            UPDATE tasks SET {assignments}, version = version + 1
            WHERE id = :id AND version = :expected_version
            """,
            params,
        )
        if cursor.rowcount == 0:
            raise ConflictError()
        stored = await self.get_task(task.id)
        if stored is None:
            raise ConflictError()
        return stored

    async def delete_task(self, task_id: str, expected_version: int) -> None:
        """Compare-and-swap delete; exceptions cascade.

        Raises:
            ConflictError: If the row's version is no longer ``expected_version``
        """
        cursor = await self._db.execute(
            "DELETE FROM tasks WHERE id = ? AND version = ?", (task_id, expected_version)
        )
        if cursor.rowcount == 0:
            raise ConflictError()

    async def list_exceptions(self, task_id: str) -> list[TaskException]:
        cursor = await self._db.execute(
            """
            SELECT * FROM task_instance_exceptions
            WHERE task_id = ?
            ORDER BY original_occurrence_time ASC
            """,
            (task_id,),
        )
        return [_row_to_exception(row) for row in await cursor.fetchall()]

    async def get_exception(self, task_id: str, original: datetime) -> Optional[TaskException]:
        cursor = await self._db.execute(
            """
            SELECT * FROM task_instance_exceptions
            WHERE task_id = ? AND original_occurrence_time = ?
            """,
            (task_id, format_instant(original)),
        )
        row = await cursor.fetchone()
        return _row_to_exception(row) if row else None

    async def upsert_exception(
        self, task_id: str, user_id: str, original: datetime, fields: dict[str, Any]
    ) -> TaskException:
        """Insert or update the exception keyed by ``(task_id, original)`` in one statement.

        Only the columns named in ``fields`` are written on conflict; the row id
        and any other override columns are left as they were.

        Args:
            task_id: Owning task
            user_id: Owner recorded on a newly inserted row
            original: Original occurrence instant
            fields: Override column values, a subset of OVERRIDE_COLUMNS

        Returns:
            The stored exception after the write
        """
        unknown = set(fields) - OVERRIDE_COLUMNS
        if unknown:
            raise ValueError(f"not exception override columns: {sorted(unknown)}")

        params = {name: _to_db(value) for name, value in fields.items()}
        params.update(
            id=str(uuid.uuid4()),
            task_id=task_id,
            user_id=user_id,
            original_occurrence_time=format_instant(original),
        )
        columns = ", ".join(params)
        placeholders = ", ".join(f":{name}" for name in params)
        if fields:
            on_conflict = "DO UPDATE SET " + ", ".join(
                f"{name} = excluded.{name}" for name in fields
            )
        else:
            on_conflict = "DO NOTHING"

        await self._db.execute(
            f"""
            INSERT INTO task_instance_exceptions ({columns}) VALUES ({placeholders})
            ON CONFLICT (task_id, original_occurrence_time) {on_conflict}
            """,
            params,
        )
        stored = await self.get_exception(task_id, original)
        if stored is None:
            raise StoreError("Exception vanished after upsert")
        return stored

    async def delete_exceptions(self, exception_ids: Sequence[str]) -> int:
        deleted = 0
        for chunk in _chunks(list(exception_ids)):
            placeholders = ", ".join("?" for _ in chunk)
            cursor = await self._db.execute(
                f"DELETE FROM task_instance_exceptions WHERE id IN ({placeholders})", tuple(chunk)
            )
            deleted += cursor.rowcount
        return deleted

    async def delete_all_exceptions(self, task_id: str) -> int:
        cursor = await self._db.execute(
            "DELETE FROM task_instance_exceptions WHERE task_id = ?", (task_id,)
        )
        return cursor.rowcount

    async def set_system_setting(self, key: str, value: Any) -> None:
        await self._db.execute(
            f"""
            INSERT INTO system_settings (key, value) VALUES (?, ?)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value, updated_at = {_NOW_SQL}
            """,
            (key, json.dumps(value)),
        )


class DatabaseManager:
    """Manages SQLite database operations for task series."""

    def __init__(self, database_path: Union[Path, str], busy_timeout: float = 5.0):
        """Initialize database manager.

        Args:
            database_path: Path to SQLite database file
            busy_timeout: Seconds to wait for a write lock before giving up
        """
        self.database_path = Path(database_path).expanduser()
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._initialized = False
        self._initialization_lock: Optional[asyncio.Lock] = None

        logger.debug("Database manager initialized (lazy): %s", self.database_path)

    async def _ensure_initialized(self) -> None:
        """Create the schema on first use.

        Raises:
            StoreError: If the schema cannot be created
        """
        if self._initialized:
            return

        if self._initialization_lock is None:
            self._initialization_lock = asyncio.Lock()

        async with self._initialization_lock:
            if self._initialized:
                return
            await self._initialize_database()
            self._initialized = True

    async def _initialize_database(self) -> None:
        try:
            async with aiosqlite.connect(str(self.database_path), timeout=self.busy_timeout) as db:
                # WAL lets readers proceed while a mutation holds the write lock
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA synchronous=NORMAL")
                await db.execute("PRAGMA foreign_keys=ON")
                for statement in _SCHEMA:
                    await db.execute(statement)
                await db.commit()
            logger.info("Database schema ready at %s", self.database_path)
        except aiosqlite.Error as e:
            logger.exception("Failed to initialize database")
            raise StoreError(f"Could not initialize database at {self.database_path}") from e

    async def initialize(self) -> None:
        """Create the schema now instead of on first use."""
        await self._ensure_initialized()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        await self._ensure_initialized()
        async with aiosqlite.connect(
            str(self.database_path), timeout=self.busy_timeout, isolation_level=None
        ) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys=ON")
            yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """Run a block of writes as one serialised transaction.

        Commits when the block exits normally and rolls back on any exception.
        SQLite integrity and lock errors surface as ConflictError, other SQLite
        errors as StoreError.
        """
        try:
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    yield StoreTransaction(db)
                except BaseException:
                    await db.execute("ROLLBACK")
                    raise
                await db.execute("COMMIT")
        except aiosqlite.IntegrityError as e:
            logger.warning("Integrity conflict in transaction: %s", e)
            raise ConflictError() from e
        except aiosqlite.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                logger.warning("Database busy, transaction abandoned: %s", e)
                raise ConflictError() from e
            logger.exception("Database operation failed")
            raise StoreError("Database operation failed") from e
        except aiosqlite.Error as e:
            logger.exception("Database operation failed")
            raise StoreError("Database operation failed") from e

    @asynccontextmanager
    async def _reading(self, what: str) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with self._connect() as db:
                yield db
        except aiosqlite.Error as e:
            logger.exception("Failed to %s", what)
            raise StoreError(f"Failed to {what}") from e

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._reading("load task") as db:
            cursor = await db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
            row = await cursor.fetchone()
            return _row_to_task(row) if row else None

    async def list_exceptions(self, task_id: str) -> list[TaskException]:
        async with self._reading("load exceptions") as db:
            return await StoreTransaction(db).list_exceptions(task_id)

    async def fetch_tasks_for_window(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[Task]:
        """Get the user's active tasks that can produce occurrences in ``[start, end]``.

        Args:
            user_id: Owner whose tasks to load
            start: Inclusive window start
            end: Inclusive window end

        Returns:
            One-off tasks starting inside the window and recurring tasks starting
            at or before its end
        """
        start_str, end_str = format_instant(start), format_instant(end)
        async with self._reading("load tasks for window") as db:
            cursor = await db.execute(
                """
                SELECT * FROM tasks
                WHERE user_id = ? AND status = ?
                AND (
                    (rule IS NULL AND dtstart >= ? AND dtstart <= ?)
                    OR (rule IS NOT NULL AND dtstart <= ?)
                )
                ORDER BY dtstart ASC, id ASC
                """,
                (user_id, TaskStatus.ACTIVE.value, start_str, end_str, end_str),
            )
            tasks = [_row_to_task(row) for row in await cursor.fetchall()]

        logger.debug("Loaded %d task(s) for user %s in window %s..%s", len(tasks), user_id, start_str, end_str)
        return tasks

    async def fetch_exceptions(
        self, task_ids: Sequence[str], start: datetime, end: datetime
    ) -> list[TaskException]:
        """Get overrides of ``task_ids`` whose original instant lies in ``[start, end]``."""
        if not task_ids:
            return []

        start_str, end_str = format_instant(start), format_instant(end)
        exceptions: list[TaskException] = []
        async with self._reading("load exceptions for window") as db:
            for chunk in _chunks(list(task_ids)):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = await db.execute(
                    f"""
                    SELECT * FROM task_instance_exceptions
                    WHERE task_id IN ({placeholders})
                    AND original_occurrence_time >= ? AND original_occurrence_time <= ?
                    ORDER BY original_occurrence_time ASC
                    """,
                    (*chunk, start_str, end_str),
                )
                exceptions.extend(_row_to_exception(row) for row in await cursor.fetchall())
        return exceptions

    async def get_system_setting(self, key: str) -> Optional[Any]:
        """Return the decoded JSON value stored under ``key``, or None."""
        async with self._reading("read system setting") as db:
            cursor = await db.execute("SELECT value FROM system_settings WHERE key = ?", (key,))
            row = await cursor.fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning("System setting %r is not valid JSON, ignoring", key)
            return None

    async def set_system_setting(self, key: str, value: Any) -> None:
        async with self.transaction() as tx:
            await tx.set_system_setting(key, value)
        logger.info("Updated system setting %r", key)

    async def get_max_duration_minutes(self) -> Optional[int]:
        """Duration ceiling from the ``task_limits`` system setting, if configured.

        Read failures and malformed values are logged and treated as absent.
        """
        try:
            limits = await self.get_system_setting(TASK_LIMITS_KEY)
        except StoreError:
            logger.warning("Could not read %s, using default duration ceiling", TASK_LIMITS_KEY)
            return None
        if not isinstance(limits, dict):
            return None
        value = limits.get("max_duration_minutes")
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
        if value is not None:
            logger.warning("Ignoring invalid max_duration_minutes=%r in %s", value, TASK_LIMITS_KEY)
        return None

    async def get_database_info(self) -> dict[str, Any]:
        """Row counts and file details for health reporting."""
        async with self._reading("read database info") as db:
            info: dict[str, Any] = {"database_path": str(self.database_path)}
            for table in ("tasks", "task_instance_exceptions"):
                cursor = await db.execute(f"SELECT COUNT(*) AS count FROM {table}")
                row = await cursor.fetchone()
                info[f"{table}_count"] = row["count"] if row else 0
        info["file_size_bytes"] = (
            self.database_path.stat().st_size if self.database_path.exists() else 0
        )
        return info
