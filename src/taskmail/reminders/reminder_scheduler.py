# src/taskmail/reminders/reminder_scheduler.py

"""
Reminder scheduler.

Turns a task's due date into persisted "before" instances. Scheduling math is
done on absolute instants only; timezones matter for rendering, never here.
"""

from __future__ import annotations

import logging
import time

from ..core.ports import ReminderRepo
from ..tasks.task_models import Task
from .reminder_models import ReminderInstance, ReminderKind

logger = logging.getLogger(__name__)

REMINDER_KINDS: tuple[ReminderKind, ...] = (
    ReminderKind.BEFORE_10,
    ReminderKind.BEFORE_5,
    ReminderKind.BEFORE_1,
)


def reminder_candidates(due_at: float, now_ts: float) -> list[tuple[ReminderKind, float]]:
    """(kind, scheduled_for) pairs that are still strictly in the future."""
    out: list[tuple[ReminderKind, float]] = []
    for kind in REMINDER_KINDS:
        scheduled_for = due_at - kind.offset_seconds
        if scheduled_for > now_ts:
            out.append((kind, scheduled_for))
    return out


def schedule_reminders(
    store: ReminderRepo,
    task: Task,
    *,
    now_ts: float | None = None,
) -> list[ReminderInstance]:
    """
    Replace the task's pending reminders with a fresh set for task.due_at.

    - existing pending instances are cancelled first (sent ones are kept)
    - no due date, a due date in the past or a completed task -> nothing is created;
      past-due tasks are the overdue pass's job
    """
    now = time.time() if now_ts is None else float(now_ts)

    store.cancel_pending_for_task(task.id, now_ts=now)

    if task.due_at is None:
        logger.debug("No due date for task %s, skipping reminders", task.id)
        return []
    if task.completed:
        logger.debug("Task %s is completed, skipping reminders", task.id)
        return []
    if task.due_at <= now:
        logger.debug("Task %s is already due, leaving it to overdue escalation", task.id)
        return []

    candidates = reminder_candidates(task.due_at, now)
    if not candidates:
        return []

    created = store.add_instances(
        task_id=task.id,
        owner_id=task.owner_id,
        due_at=task.due_at,
        candidates=candidates,
        now_ts=now,
    )
    logger.info(
        "Scheduled %d reminder(s) for task %s: %s",
        len(created),
        task.id,
        ", ".join(i.kind.value for i in created) or "-",
    )
    return created
