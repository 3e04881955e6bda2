# src/taskmail/reminders/reminder_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .reminder_models import OverdueTier, ReminderInstance, ReminderKind, ReminderStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OverdueRecord:
    id: int
    task_id: int
    tier: OverdueTier
    minutes_overdue: int
    sent_at: float


class ReminderStore:
    """
    SQLite store for reminder instances and overdue cooldown records.

    All state transitions are single conditional statements, so several sweep
    workers may share one database file:
    - try_claim_instance: take a time-bounded send lease on a pending row
    - mark_sent: pending -> sent, only for the lease holder
    - try_record_overdue: insert a cooldown record only if none of the same
      or higher tier exists inside the cooldown window

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "taskmail.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("ReminderStore ready db=%s", self._db_path)

    def close(self) -> None:
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(Exception):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS reminder_instances (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL,
                    owner_id TEXT,
                    kind TEXT NOT NULL,
                    scheduled_for REAL NOT NULL,
                    due_at REAL NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at REAL NOT NULL,
                    sent_at REAL,
                    cancelled_at REAL,
                    claimed_by TEXT,
                    claimed_at REAL
                )
                """
            )
            # One live instance per (task, kind) for a given due date.
            cur.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_reminder_live
                ON reminder_instances(task_id, kind, due_at)
                WHERE status != 'cancelled'
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminder_due "
                "ON reminder_instances(status, scheduled_for)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminder_task ON reminder_instances(task_id, status)"
            )

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS overdue_notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL,
                    tier TEXT NOT NULL,
                    tier_rank INTEGER NOT NULL,
                    minutes_overdue INTEGER NOT NULL,
                    sent_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_overdue_task "
                "ON overdue_notifications(task_id, sent_at)"
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> ReminderInstance:
        return ReminderInstance(
            id=int(row["id"]),
            task_id=int(row["task_id"]),
            owner_id=row["owner_id"],
            kind=ReminderKind(row["kind"]),
            scheduled_for=float(row["scheduled_for"]),
            due_at=float(row["due_at"]),
            status=ReminderStatus.from_db(row["status"]),
            created_at=float(row["created_at"]),
            sent_at=float(row["sent_at"]) if row["sent_at"] is not None else None,
            cancelled_at=float(row["cancelled_at"]) if row["cancelled_at"] is not None else None,
            claimed_by=row["claimed_by"],
            claimed_at=float(row["claimed_at"]) if row["claimed_at"] is not None else None,
        )

    # ---- instances ----

    def add_instances(
        self,
        *,
        task_id: int,
        owner_id: str | None,
        due_at: float,
        candidates: Iterable[tuple[ReminderKind, float]],
        now_ts: float,
    ) -> list[ReminderInstance]:
        """
        Insert pending instances; rows that would break the live-uniqueness
        index are skipped silently. Returns only the rows actually created.
        """
        created_ids: list[int] = []
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            for kind, scheduled_for in candidates:
                cur.execute(
                    """
                    INSERT OR IGNORE INTO reminder_instances(
                        task_id, owner_id, kind, scheduled_for, due_at, status, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, 'pending', ?)
                    """,
                    (
                        int(task_id),
                        owner_id,
                        ReminderKind(kind).value,
                        float(scheduled_for),
                        float(due_at),
                        float(now_ts),
                    ),
                )
                if cur.rowcount == 1 and cur.lastrowid is not None:
                    created_ids.append(int(cur.lastrowid))
                else:
                    logger.debug(
                        "Reminder instance exists task_id=%s kind=%s due_at=%s", task_id, kind, due_at
                    )
            conn.commit()

            if not created_ids:
                return []
            placeholders = ",".join("?" for _ in created_ids)
            cur.execute(
                f"SELECT * FROM reminder_instances WHERE id IN ({placeholders}) ORDER BY scheduled_for",
                created_ids,
            )
            return [self._row_to_instance(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def list_due_instances(self, *, now_ts: float, limit: int = 200) -> list[ReminderInstance]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT *
                FROM reminder_instances
                WHERE status = 'pending'
                  AND scheduled_for <= ?
                ORDER BY scheduled_for ASC, id ASC
                    LIMIT ?
                """,
                (float(now_ts), int(limit)),
            )
            return [self._row_to_instance(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def list_instances_for_task(self, task_id: int) -> list[ReminderInstance]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM reminder_instances WHERE task_id = ? ORDER BY scheduled_for, id",
                (int(task_id),),
            )
            return [self._row_to_instance(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def get_instance(self, instance_id: int) -> ReminderInstance | None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM reminder_instances WHERE id = ?", (int(instance_id),))
            row = cur.fetchone()
            return self._row_to_instance(row) if row else None
        finally:
            conn.close()

    def cancel_pending_for_task(self, task_id: int, *, now_ts: float | None = None) -> int:
        """pending -> cancelled for every unsent instance of the task. Sent rows are untouched."""
        now = time.time() if now_ts is None else float(now_ts)
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE reminder_instances
                SET status = 'cancelled', cancelled_at = ?, claimed_by = NULL, claimed_at = NULL
                WHERE task_id = ?
                  AND status = 'pending'
                """,
                (now, int(task_id)),
            )
            conn.commit()
            if cur.rowcount:
                logger.debug("Cancelled %s pending reminder(s) task_id=%s", cur.rowcount, task_id)
            return int(cur.rowcount)
        finally:
            conn.close()

    def cancel_instance(self, instance_id: int, *, now_ts: float | None = None) -> bool:
        now = time.time() if now_ts is None else float(now_ts)
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE reminder_instances
                SET status = 'cancelled', cancelled_at = ?, claimed_by = NULL, claimed_at = NULL
                WHERE id = ?
                  AND status = 'pending'
                """,
                (now, int(instance_id)),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def try_claim_instance(
        self, instance_id: int, *, token: str, now_ts: float, lease_seconds: float
    ) -> bool:
        """
        Take the send lease on a pending instance.

        Succeeds if the row is still pending and either unclaimed or its lease
        expired (a worker died between claim and send). The status stays
        pending until mark_sent().
        """
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE reminder_instances
                SET claimed_by = ?, claimed_at = ?
                WHERE id = ?
                  AND status = 'pending'
                  AND (claimed_at IS NULL OR claimed_at < ?)
                """,
                (token, float(now_ts), int(instance_id), float(now_ts) - float(lease_seconds)),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def mark_sent(self, instance_id: int, *, token: str, now_ts: float) -> bool:
        """pending -> sent, only for the current lease holder."""
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE reminder_instances
                SET status = 'sent', sent_at = ?
                WHERE id = ?
                  AND status = 'pending'
                  AND claimed_by = ?
                """,
                (float(now_ts), int(instance_id), token),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def release_claim(self, instance_id: int, *, token: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                UPDATE reminder_instances
                SET claimed_by = NULL, claimed_at = NULL
                WHERE id = ?
                  AND status = 'pending'
                  AND claimed_by = ?
                """,
                (int(instance_id), token),
            )
            conn.commit()
        finally:
            conn.close()

    # ---- overdue cooldown ----

    def try_record_overdue(
        self,
        task_id: int,
        tier: OverdueTier,
        *,
        minutes_overdue: int,
        now_ts: float,
        cooldown_seconds: float,
    ) -> int | None:
        """
        Claim the right to send an overdue alert at `tier`.

        Inserts a record unless one of the same or a higher tier was recorded
        for the task within the cooldown window. Returns the record id, or None
        when the alert is still cooling down.
        """
        tier = OverdueTier(tier)
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                INSERT INTO overdue_notifications(task_id, tier, tier_rank, minutes_overdue, sent_at)
                SELECT ?, ?, ?, ?, ?
                WHERE NOT EXISTS (
                    SELECT 1
                    FROM overdue_notifications
                    WHERE task_id = ?
                      AND tier_rank >= ?
                      AND sent_at > ?
                )
                """,
                (
                    int(task_id),
                    tier.value,
                    tier.rank,
                    int(minutes_overdue),
                    float(now_ts),
                    int(task_id),
                    tier.rank,
                    float(now_ts) - float(cooldown_seconds),
                ),
            )
            conn.commit()
            if cur.rowcount != 1 or cur.lastrowid is None:
                return None
            return int(cur.lastrowid)
        finally:
            conn.close()

    def delete_overdue_record(self, record_id: int) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM overdue_notifications WHERE id = ?", (int(record_id),))
            conn.commit()
        finally:
            conn.close()

    def list_overdue_records(self, task_id: int) -> list[OverdueRecord]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM overdue_notifications WHERE task_id = ? ORDER BY sent_at, id",
                (int(task_id),),
            )
            return [
                OverdueRecord(
                    id=int(r["id"]),
                    task_id=int(r["task_id"]),
                    tier=OverdueTier(r["tier"]),
                    minutes_overdue=int(r["minutes_overdue"]),
                    sent_at=float(r["sent_at"]),
                )
                for r in cur.fetchall()
            ]
        finally:
            conn.close()

    # ---- housekeeping ----

    def prune(self, *, older_than_ts: float) -> tuple[int, int]:
        """
        Delete cancelled instances and cooldown records older than the cutoff.

        Sent instances are audit records and are never deleted here.
        Returns (instances_deleted, overdue_records_deleted).
        """
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                DELETE FROM reminder_instances
                WHERE status = 'cancelled'
                  AND COALESCE(cancelled_at, created_at) < ?
                """,
                (float(older_than_ts),),
            )
            instances = int(cur.rowcount)
            cur = conn.execute(
                "DELETE FROM overdue_notifications WHERE sent_at < ?",
                (float(older_than_ts),),
            )
            records = int(cur.rowcount)
            conn.commit()
            if instances or records:
                logger.info(
                    "Pruned %s cancelled reminder(s) and %s overdue record(s)", instances, records
                )
            return instances, records
        finally:
            conn.close()
