# src/taskmail/tasks/task_api.py

"""
Task lifecycle helpers used by the HTTP boundary, the dispatcher and the CLI.

Every write that affects reminders goes through here, so reminder instances
always follow the task row:
- create_task: insert + schedule reminders
- set_task_completed: toggle + cancel/reschedule reminders + completion mail
- update_task_due_date: due-date write + rescheduling guard
"""

from __future__ import annotations

import logging
import time
from typing import Any

from ..core.state import AppState
from ..errors import TaskNotFound
from ..notifications.completion import Actor, notify_completion_change
from ..reminders.reminder_scheduler import schedule_reminders
from ..reminders.rescheduling import RescheduleOutcome, on_due_date_change
from .task_models import ActionSource, Task, TaskAction

logger = logging.getLogger(__name__)


def _actor_ref(actor: Actor | None) -> str | None:
    if actor is None:
        return None
    return actor.email or actor.id or actor.display_name


def get_task_or_raise(state: AppState, task_id: int | str) -> Task:
    try:
        tid = int(task_id)
    except (TypeError, ValueError):
        raise TaskNotFound(task_id) from None
    task = state.task_store.get_task(tid)
    if task is None:
        raise TaskNotFound(task_id)
    return task


def create_task(
    state: AppState,
    *,
    owner_id: str,
    text: str,
    owner_email: str | None = None,
    owner_name: str | None = None,
    description: str = "",
    due_at: float | None = None,
    now_ts: float | None = None,
) -> Task:
    now = time.time() if now_ts is None else float(now_ts)
    task_id = state.task_store.add_task(
        owner_id=owner_id,
        text=text,
        owner_email=owner_email,
        owner_name=owner_name,
        description=description,
        due_at=due_at,
        now_ts=now,
    )
    task = get_task_or_raise(state, task_id)
    schedule_reminders(state.reminder_store, task, now_ts=now)
    return task


async def set_task_completed(
    state: AppState,
    task_id: int | str,
    completed: bool,
    *,
    actor: Actor | None = None,
    source: ActionSource = ActionSource.APP,
    notify: bool = True,
    details: dict[str, Any] | None = None,
    now_ts: float | None = None,
) -> Task:
    """
    Flip the completion toggle.

    Completing cancels every pending reminder; un-completing schedules a new
    set when the due date is still ahead. When notify is set, the completion
    mail goes out even if the toggle did not change (its own dedup decides).
    Mail failures are logged, never raised: the toggle itself succeeded.
    """
    task = get_task_or_raise(state, task_id)
    now = time.time() if now_ts is None else float(now_ts)
    completed = bool(completed)

    if task.completed != completed:
        by = _actor_ref(actor)
        changes: dict[str, Any] = {
            "completed": completed,
            "completed_at": now if completed else None,
            "completed_by": by if completed else None,
        }
        if completed:
            changes["in_progress"] = False
        state.task_store.update_task_fields(task.id, now_ts=now, **changes)

        if completed:
            state.reminder_store.cancel_pending_for_task(task.id, now_ts=now)
            state.task_store.append_action(
                task.id, TaskAction.COMPLETED, actor=by, source=source, details=details, now_ts=now
            )
        task = get_task_or_raise(state, task.id)
        if not completed:
            schedule_reminders(state.reminder_store, task, now_ts=now)
        logger.info("Task %s marked %s by %s", task.id, "completed" if completed else "incomplete", by)

    if notify:
        try:
            await notify_completion_change(state, task.id, completed, actor=actor)
        except Exception:
            logger.exception("Completion notification failed task_id=%s", task.id)

    return task


async def update_task_due_date(
    state: AppState,
    task_id: int | str,
    new_due_at: float | None,
    *,
    actor: Actor | None = None,
    source: ActionSource = ActionSource.APP,
    details: dict[str, Any] | None = None,
    now_ts: float | None = None,
) -> tuple[Task, RescheduleOutcome]:
    task = get_task_or_raise(state, task_id)
    now = time.time() if now_ts is None else float(now_ts)
    old_due_at = task.due_at
    by = _actor_ref(actor)

    state.task_store.update_task_fields(
        task.id,
        now_ts=now,
        due_at=new_due_at,
        rescheduled_at=now,
        rescheduled_by=by,
        rescheduled_from=old_due_at,
    )
    log_details = {"old_due_at": old_due_at, "new_due_at": new_due_at, **(details or {})}
    state.task_store.append_action(
        task.id, TaskAction.RESCHEDULED, actor=by, source=source, details=log_details, now_ts=now
    )

    updated = get_task_or_raise(state, task.id)
    outcome = await on_due_date_change(state, updated, old_due_at, new_due_at, now_ts=now)
    logger.info(
        "Task %s rescheduled %s -> %s (alert=%s, reminders=%d)",
        task.id,
        old_due_at,
        new_due_at,
        outcome.alert_sent,
        len(outcome.scheduled),
    )
    return updated, outcome
