# src/taskmail/reminders/rescheduling.py

"""
Rescheduling guard: runs after every due-date write.

The caller persists the new due date first, then calls on_due_date_change(),
so a concurrent sweep never sees fresh instances next to a stale task row.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field

from ..core.state import AppState
from ..mail.messages import is_deliverable_address, rescheduling_alert_email
from ..mail.transport import send_with_retry
from ..tasks.task_models import Task
from .reminder_models import ReminderInstance
from .reminder_scheduler import schedule_reminders

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RescheduleOutcome:
    alert_sent: bool = False
    cancelled: int = 0
    scheduled: list[ReminderInstance] = field(default_factory=list)


def is_last_minute(old_due_at: float | None, now_ts: float, window_seconds: float) -> bool:
    """True when the previous due date is within the alert window around now."""
    if old_due_at is None:
        return False
    return abs(old_due_at - now_ts) <= window_seconds


async def on_due_date_change(
    state: AppState,
    task: Task,
    old_due_at: float | None,
    new_due_at: float | None,
    *,
    now_ts: float | None = None,
) -> RescheduleOutcome:
    """
    - alert the owner once if the old due date was within the alert window
    - cancel pending instances (sent ones stay as audit rows)
    - schedule a fresh set for new_due_at
    """
    now = time.time() if now_ts is None else float(now_ts)
    settings = state.settings
    outcome = RescheduleOutcome()

    window = float(getattr(settings, "reschedule_alert_minutes", 10)) * 60.0
    if (
        old_due_at != new_due_at
        and is_last_minute(old_due_at, now, window)
        and is_deliverable_address(task.owner_email)
    ):
        try:
            await send_with_retry(
                state.mailer,
                rescheduling_alert_email(task, old_due_at, new_due_at, settings),
                delay_seconds=float(getattr(settings, "mail_retry_delay_seconds", 0.0)),
            )
            outcome.alert_sent = True
            logger.info("Last-minute reschedule alert sent task_id=%s", task.id)
        except Exception:
            logger.exception("Rescheduling alert failed task_id=%s", task.id)

    outcome.cancelled = state.reminder_store.cancel_pending_for_task(task.id, now_ts=now)
    outcome.scheduled = schedule_reminders(
        state.reminder_store,
        dataclasses.replace(task, due_at=new_due_at),
        now_ts=now,
    )
    return outcome
