# src/taskmail/reminders/sweep.py

"""
Due-instance processor.

One sweep = two independent passes over persisted state:
- before-due pass: fire pending reminder instances whose time has come
- overdue pass: escalate incomplete tasks past their due date

There are no in-process timers. Whatever calls run_sweep (the cron route, the
CLI, or run_sweep_loop) only decides *when* to look; the rows decide *what*.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass

from ..core.state import AppState
from ..mail.messages import is_deliverable_address, overdue_email, reminder_email
from ..mail.transport import send_with_retry
from ..tasks.task_models import Task
from .escalation import minutes_overdue, tier
from .reminder_models import OverdueTier, ReminderInstance

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepResult:
    instances_processed: int = 0
    reminders_sent: int = 0
    instances_cancelled: int = 0
    overdue_alerts_sent: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _stale_reason(task: Task | None, instance: ReminderInstance, now: float) -> str | None:
    if task is None:
        return "task missing"
    if task.completed:
        return "task completed"
    if task.due_at != instance.due_at:
        return "due date changed"
    # past-due tasks belong to the overdue pass
    if task.due_at is not None and task.due_at <= now:
        return "already due"
    if not is_deliverable_address(task.owner_email):
        return "no deliverable owner address"
    return None


async def _process_instance(
    state: AppState,
    instance: ReminderInstance,
    result: SweepResult,
    *,
    token: str,
    now: float,
) -> None:
    settings = state.settings
    reminders = state.reminder_store

    task = state.task_store.get_task(instance.task_id)
    reason = _stale_reason(task, instance, now)
    if task is None or reason is not None:
        if reminders.cancel_instance(instance.id, now_ts=now):
            result.instances_cancelled += 1
            logger.info("Reminder %s cancelled (%s) task_id=%s", instance.id, reason, instance.task_id)
        return

    lease = float(getattr(settings, "claim_lease_seconds", 300.0))
    if not reminders.try_claim_instance(instance.id, token=token, now_ts=now, lease_seconds=lease):
        logger.debug("Reminder %s already claimed elsewhere", instance.id)
        return

    message = reminder_email(task, instance.kind, settings, now_ts=now)
    try:
        await send_with_retry(
            state.mailer,
            message,
            delay_seconds=float(getattr(settings, "mail_retry_delay_seconds", 0.0)),
        )
    except Exception:
        reminders.release_claim(instance.id, token=token)
        raise

    if reminders.mark_sent(instance.id, token=token, now_ts=now):
        result.reminders_sent += 1
        logger.info("Reminder %s (%s) sent task_id=%s", instance.id, instance.kind.value, task.id)
    else:
        logger.warning("Reminder %s sent but its lease was lost before marking", instance.id)


async def _process_overdue(state: AppState, task: Task, result: SweepResult, *, now: float) -> None:
    if task.due_at is None or not is_deliverable_address(task.owner_email):
        return

    mins = minutes_overdue(task.due_at, now)
    level = tier(mins)
    if level is OverdueTier.NONE:
        return

    settings = state.settings
    cooldown = float(getattr(settings, "overdue_cooldown_minutes", 30)) * 60.0
    record_id = state.reminder_store.try_record_overdue(
        task.id, level, minutes_overdue=mins, now_ts=now, cooldown_seconds=cooldown
    )
    if record_id is None:
        logger.debug("Overdue alert for task %s (%s) is cooling down", task.id, level.value)
        return

    try:
        await send_with_retry(
            state.mailer,
            overdue_email(task, level, mins, settings),
            delay_seconds=float(getattr(settings, "mail_retry_delay_seconds", 0.0)),
        )
    except Exception:
        state.reminder_store.delete_overdue_record(record_id)
        raise

    result.overdue_alerts_sent += 1
    logger.info("Overdue alert %s sent task_id=%s minutes=%s", level.value, task.id, mins)


async def run_sweep(
    state: AppState,
    *,
    now_ts: float | None = None,
    batch_limit: int | None = None,
) -> SweepResult:
    """
    Run one sweep. Failures are counted per item and never abort the run.

    Safe to run concurrently with itself: every send is preceded by a
    conditional claim in the reminder store, and the loser skips silently.
    """
    now = time.time() if now_ts is None else float(now_ts)
    limit = int(batch_limit or getattr(state.settings, "sweep_batch_limit", 200))
    token = uuid.uuid4().hex
    result = SweepResult()

    try:
        instances = state.reminder_store.list_due_instances(now_ts=now, limit=limit)
    except Exception:
        logger.exception("list_due_instances failed")
        instances = []
        result.errors += 1

    for instance in instances:
        result.instances_processed += 1
        try:
            await _process_instance(state, instance, result, token=token, now=now)
        except Exception:
            result.errors += 1
            logger.exception("Reminder processing failed instance_id=%s", instance.id)

    # every overdue task is visited, one keyset page at a time
    after: tuple[float, int] | None = None
    while True:
        try:
            page = state.task_store.list_overdue_tasks(now_ts=now, limit=limit, after=after)
        except Exception:
            logger.exception("list_overdue_tasks failed")
            result.errors += 1
            break

        for task in page:
            try:
                await _process_overdue(state, task, result, now=now)
            except Exception:
                result.errors += 1
                logger.exception("Overdue processing failed task_id=%s", task.id)

        if len(page) < limit:
            break
        last = page[-1]
        after = (float(last.due_at), last.id)

    if instances or result.overdue_alerts_sent or result.errors:
        logger.info("Sweep done: %s", result.to_dict())
    return result


def prune(
    state: AppState,
    *,
    older_than_days: float | None = None,
    now_ts: float | None = None,
) -> tuple[int, int]:
    """Delete cancelled instances and cooldown records past the retention window."""
    days = float(older_than_days if older_than_days is not None else getattr(state.settings, "retention_days", 7))
    now = time.time() if now_ts is None else float(now_ts)
    return state.reminder_store.prune(older_than_ts=now - days * 86400.0)


async def run_sweep_loop(
    state: AppState,
    *,
    interval_seconds: float | None = None,
    prune_every_seconds: float = 3600.0,
) -> None:
    """
    Polling loop around run_sweep.

    Every interval_seconds:
    - run one sweep (errors are logged, the loop keeps going)
    - once per prune_every_seconds, prune old cancelled rows

    To stop the loop, cancel the coroutine/task.
    """
    if interval_seconds is None:
        interval_seconds = float(getattr(state.settings, "sweep_interval_seconds", 60.0))
    sleep_s = max(0.5, float(interval_seconds))
    last_prune = 0.0

    logger.info("Sweep loop started (interval=%.1fs)", sleep_s)
    while True:
        try:
            await run_sweep(state)
        except Exception:
            logger.exception("Sweep failed")

        now = time.time()
        if now - last_prune >= prune_every_seconds:
            try:
                prune(state, now_ts=now)
            except Exception:
                logger.exception("Prune failed")
            last_prune = now

        await asyncio.sleep(sleep_s)
