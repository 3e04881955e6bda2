# src/taskmail/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

from .task_models import ActionSource, Task, TaskAction, TaskActionLog

logger = logging.getLogger(__name__)

# Columns the application may change through update_task_fields().
_UPDATABLE: frozenset[str] = frozenset(
    {
        "text",
        "description",
        "completed",
        "due_at",
        "owner_email",
        "owner_name",
        "completed_at",
        "completed_by",
        "in_progress",
        "in_progress_at",
        "in_progress_by",
        "rescheduled_at",
        "rescheduled_by",
        "rescheduled_from",
    }
)

_EMAIL_STAMPS: frozenset[str] = frozenset({"last_completion_email_at", "last_uncomplete_email_at"})


class TaskStore:
    """
    SQLite task store (tasks + append-only task_actions log).

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "taskmail.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except Exception:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(Exception):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL,
                    owner_email TEXT,
                    owner_name TEXT,
                    text TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    completed INTEGER NOT NULL DEFAULT 0,
                    due_at REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    last_completion_email_at REAL,
                    last_uncomplete_email_at REAL
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("last_completion_email_at", "REAL")
            add_col("last_uncomplete_email_at", "REAL")
            add_col("completed_at", "REAL")
            add_col("completed_by", "TEXT")
            add_col("in_progress", "INTEGER NOT NULL DEFAULT 0")
            add_col("in_progress_at", "REAL")
            add_col("in_progress_by", "TEXT")
            add_col("rescheduled_at", "REAL")
            add_col("rescheduled_by", "TEXT")
            add_col("rescheduled_from", "REAL")

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    actor TEXT,
                    timestamp REAL NOT NULL,
                    source TEXT NOT NULL,
                    details TEXT NOT NULL DEFAULT '{}'
                )
                """
            )

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_overdue ON tasks(completed, due_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks(owner_id, completed)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_task_actions_task ON task_actions(task_id)")

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _details_to_str(details: dict[str, Any] | None) -> str:
        if not details:
            return "{}"
        try:
            return json.dumps(details, ensure_ascii=False)
        except Exception:
            logger.exception("Failed to JSON-encode action details; storing {}.")
            return "{}"

    @staticmethod
    def _str_to_details(s: str | None) -> dict[str, Any]:
        if not s:
            return {}
        try:
            val = json.loads(s)
            return val if isinstance(val, dict) else {}
        except Exception:
            return {}

    @staticmethod
    def _opt_float(value: Any) -> float | None:
        return float(value) if value is not None else None

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            owner_id=str(row["owner_id"]),
            owner_email=row["owner_email"],
            owner_name=row["owner_name"],
            text=str(row["text"] or ""),
            description=str(row["description"] or ""),
            completed=bool(row["completed"]),
            due_at=self._opt_float(row["due_at"]),
            created_at=float(row["created_at"] or 0.0),
            updated_at=float(row["updated_at"] or 0.0),
            last_completion_email_at=self._opt_float(row["last_completion_email_at"]),
            last_uncomplete_email_at=self._opt_float(row["last_uncomplete_email_at"]),
            completed_at=self._opt_float(row["completed_at"]),
            completed_by=row["completed_by"],
            in_progress=bool(row["in_progress"]),
            in_progress_at=self._opt_float(row["in_progress_at"]),
            in_progress_by=row["in_progress_by"],
            rescheduled_at=self._opt_float(row["rescheduled_at"]),
            rescheduled_by=row["rescheduled_by"],
            rescheduled_from=self._opt_float(row["rescheduled_from"]),
        )

    def _row_to_action(self, row: sqlite3.Row) -> TaskActionLog:
        return TaskActionLog(
            id=int(row["id"]),
            task_id=int(row["task_id"]),
            action=TaskAction(row["action"]),
            actor=row["actor"],
            timestamp=float(row["timestamp"]),
            source=ActionSource.from_db(row["source"]),
            details=self._str_to_details(row["details"]),
        )

    # ---- public API ----

    def count_tasks(self) -> int:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM tasks")
            (n,) = cur.fetchone()
            return int(n)
        finally:
            conn.close()

    def add_task(
        self,
        *,
        owner_id: str,
        text: str,
        owner_email: str | None = None,
        owner_name: str | None = None,
        description: str = "",
        due_at: float | None = None,
        completed: bool = False,
        now_ts: float | None = None,
    ) -> int:
        if not owner_id or not owner_id.strip():
            raise ValueError("owner_id is required")
        if not text or not text.strip():
            raise ValueError("text is required")

        now = time.time() if now_ts is None else float(now_ts)

        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO tasks(
                    owner_id, owner_email, owner_name,
                    text, description, completed, due_at,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    owner_id.strip(),
                    owner_email,
                    owner_name,
                    text.strip(),
                    description or "",
                    1 if completed else 0,
                    float(due_at) if due_at is not None else None,
                    now,
                    now,
                ),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for tasks insert")
            task_id = int(rowid)
            logger.debug("Task added id=%s owner=%s due_at=%s", task_id, owner_id, due_at)
            return task_id
        finally:
            conn.close()

    def get_task(self, task_id: int) -> Task | None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),))
            row = cur.fetchone()
            return self._row_to_task(row) if row else None
        finally:
            conn.close()

    def list_overdue_tasks(
        self,
        *,
        now_ts: float,
        limit: int = 200,
        after: tuple[float, int] | None = None,
    ) -> list[Task]:
        """
        Incomplete tasks whose due date is strictly before now_ts, oldest first.

        Keyset pagination: pass the (due_at, id) of the last task of the
        previous page as `after` to get the next page.
        """
        sql = """
            SELECT *
            FROM tasks
            WHERE completed = 0
              AND due_at IS NOT NULL
              AND due_at < ?
        """
        params: list[Any] = [float(now_ts)]
        if after is not None:
            sql += " AND (due_at > ? OR (due_at = ? AND id > ?))"
            params.extend([float(after[0]), float(after[0]), int(after[1])])
        sql += " ORDER BY due_at ASC, id ASC LIMIT ?"
        params.append(int(limit))

        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(sql, params)
            return [self._row_to_task(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def list_tasks_for_owner(
        self, owner_id: str, *, completed: bool | None = None, limit: int = 100
    ) -> list[Task]:
        if not owner_id:
            return []

        sql = "SELECT * FROM tasks WHERE owner_id = ?"
        params: list[Any] = [owner_id]
        if completed is not None:
            sql += " AND completed = ?"
            params.append(1 if completed else 0)
        sql += " ORDER BY COALESCE(due_at, created_at) ASC LIMIT ?"
        params.append(int(limit))

        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(sql, params)
            return [self._row_to_task(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def update_task_fields(
        self,
        task_id: int,
        *,
        now_ts: float | None = None,
        touch: bool = True,
        **changes: Any,
    ) -> bool:
        """
        Update whitelisted columns. None is a real value here (clears the column).

        touch=True bumps updated_at, which is the version the completion
        notifier compares its email stamps against.
        """
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")

        fields: list[str] = []
        params: list[Any] = []
        for name, value in changes.items():
            if isinstance(value, bool):
                value = 1 if value else 0
            fields.append(f"{name} = ?")
            params.append(value)

        if touch:
            fields.append("updated_at = ?")
            params.append(time.time() if now_ts is None else float(now_ts))

        if not fields:
            return False

        params.append(int(task_id))
        sql = f"UPDATE tasks SET {', '.join(fields)} WHERE id = ?"

        conn = self._get_conn()
        try:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def stamp_email_sent(self, task_id: int, field: str, value: float) -> bool:
        """
        Record that a completion-state email went out for the task version `value`.

        Never moves a stamp backwards and never touches updated_at.
        """
        if field not in _EMAIL_STAMPS:
            raise ValueError(f"Not an email stamp field: {field}")

        conn = self._get_conn()
        try:
            cur = conn.execute(
                f"""
                UPDATE tasks
                SET {field} = ?
                WHERE id = ?
                  AND ({field} IS NULL OR {field} < ?)
                """,
                (float(value), int(task_id), float(value)),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def append_action(
        self,
        task_id: int,
        action: TaskAction,
        *,
        actor: str | None,
        source: ActionSource,
        details: dict[str, Any] | None = None,
        now_ts: float | None = None,
    ) -> int:
        now = time.time() if now_ts is None else float(now_ts)
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO task_actions(task_id, action, actor, timestamp, source, details)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    int(task_id),
                    TaskAction(action).value,
                    actor,
                    now,
                    ActionSource(source).value,
                    self._details_to_str(details),
                ),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for task_actions insert")
            logger.debug("Task action logged task_id=%s action=%s source=%s", task_id, action, source)
            return int(rowid)
        finally:
            conn.close()

    def list_actions(self, task_id: int) -> list[TaskActionLog]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM task_actions WHERE task_id = ? ORDER BY timestamp ASC, id ASC",
                (int(task_id),),
            )
            return [self._row_to_action(r) for r in cur.fetchall()]
        finally:
            conn.close()
