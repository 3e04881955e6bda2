# src/taskmail/mail/dispatcher.py

"""
Action dispatcher for parsed email replies.

Identification errors (no reference, unknown task) are raised and get no
mail: the sender may be an auto-responder and a reply would start a loop.
Everything after the task is identified ends with a confirmation mail,
failures included.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from ..core.state import AppState
from ..errors import InvalidRescheduleTime, MissingTaskReference
from ..notifications.completion import Actor
from ..reminders.reminder_models import ReminderStatus
from ..tasks import task_api
from ..tasks.task_models import ActionSource, Task, TaskAction
from .command_parser import EmailAction, EmailCommand, parse_email
from .messages import (
    confirmation_email,
    display_zone,
    format_instant,
    is_deliverable_address,
    normalize_address,
)
from .transport import send_with_retry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchResult:
    success: bool
    action: EmailAction
    task_id: int
    message: str
    error: str | None = None
    new_due_at: float | None = None
    confirmation_sent: bool = False
    confirmation_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data


def _complete_outcome(cancelled_any: bool) -> str:
    if cancelled_any:
        return "The task is marked as completed and its remaining reminders were cancelled."
    return "The task is marked as completed."


async def _do_complete(
    state: AppState, task: Task, actor: Actor, *, now: float
) -> DispatchResult:
    pending_before = [
        i for i in state.reminder_store.list_instances_for_task(task.id) if i.status is ReminderStatus.PENDING
    ]
    await task_api.set_task_completed(
        state,
        task.id,
        True,
        actor=actor,
        source=ActionSource.EMAIL_REPLY,
        now_ts=now,
    )
    return DispatchResult(
        success=True,
        action=EmailAction.COMPLETE,
        task_id=task.id,
        message=_complete_outcome(bool(pending_before)),
    )


def _do_in_progress(state: AppState, task: Task, actor_ref: str, *, now: float) -> DispatchResult:
    state.task_store.update_task_fields(
        task.id,
        now_ts=now,
        in_progress=True,
        in_progress_at=now,
        in_progress_by=actor_ref,
    )
    state.task_store.append_action(
        task.id, TaskAction.IN_PROGRESS, actor=actor_ref, source=ActionSource.EMAIL_REPLY, now_ts=now
    )
    return DispatchResult(
        success=True,
        action=EmailAction.IN_PROGRESS,
        task_id=task.id,
        message="The task is marked as in progress. Keep going!",
    )


async def _do_reschedule(
    state: AppState, task: Task, command: EmailCommand, actor: Actor, *, now: float
) -> DispatchResult:
    if command.reschedule_at is None:
        raise InvalidRescheduleTime(command.raw_reschedule_expression)

    _, outcome = await task_api.update_task_due_date(
        state,
        task.id,
        command.reschedule_at,
        actor=actor,
        source=ActionSource.EMAIL_REPLY,
        details={"expression": command.raw_reschedule_expression},
        now_ts=now,
    )
    when = format_instant(command.reschedule_at, getattr(state.settings, "timezone", None))
    return DispatchResult(
        success=True,
        action=EmailAction.RESCHEDULE,
        task_id=task.id,
        message=f"The task is now due {when}. {len(outcome.scheduled)} reminder(s) scheduled.",
        new_due_at=command.reschedule_at,
    )


def _do_no_action(state: AppState, task: Task, actor_ref: str, *, now: float) -> DispatchResult:
    state.task_store.append_action(
        task.id, TaskAction.NO_ACTION, actor=actor_ref, source=ActionSource.EMAIL_REPLY, now_ts=now
    )
    return DispatchResult(
        success=True,
        action=EmailAction.NO_ACTION,
        task_id=task.id,
        message="No changes were made. You will keep getting reminders for this task.",
    )


async def _send_confirmation(
    state: AppState, sender: str, task: Task, reply_action: str, result: DispatchResult
) -> None:
    to = normalize_address(sender)
    if not is_deliverable_address(to):
        result.confirmation_error = "sender address is not deliverable"
        logger.warning("No confirmation for task %s: undeliverable sender %r", task.id, sender)
        return

    message = confirmation_email(
        to,
        task,
        action=reply_action,
        success=result.success,
        outcome=result.message,
        settings=state.settings,
    )
    try:
        await send_with_retry(
            state.mailer,
            message,
            delay_seconds=float(getattr(state.settings, "mail_retry_delay_seconds", 0.0)),
        )
        result.confirmation_sent = True
    except Exception as e:
        result.confirmation_error = str(e) or e.__class__.__name__
        logger.exception("Confirmation mail failed task_id=%s", task.id)


async def dispatch(
    state: AppState,
    command: EmailCommand,
    *,
    sender: str,
    now_ts: float | None = None,
) -> DispatchResult:
    """
    Apply a parsed reply to its task and confirm the outcome to the sender.

    Raises MissingTaskReference / TaskNotFound before anything is changed.
    """
    if not command.task_id:
        raise MissingTaskReference()
    task = task_api.get_task_or_raise(state, command.task_id)

    now = time.time() if now_ts is None else float(now_ts)
    actor_ref = normalize_address(sender) or sender
    actor = Actor(email=actor_ref)

    action = command.action
    try:
        if action is EmailAction.COMPLETE:
            result = await _do_complete(state, task, actor, now=now)
        elif action is EmailAction.IN_PROGRESS:
            result = _do_in_progress(state, task, actor_ref, now=now)
        elif action is EmailAction.RESCHEDULE:
            result = await _do_reschedule(state, task, command, actor, now=now)
        elif action is EmailAction.NO_ACTION:
            result = _do_no_action(state, task, actor_ref, now=now)
        else:
            raise ValueError(f"Unhandled email action: {action!r}")
    except InvalidRescheduleTime as e:
        logger.info("Reschedule rejected task_id=%s expression=%r", task.id, e.expression)
        result = DispatchResult(
            success=False,
            action=action,
            task_id=task.id,
            message=f'Could not understand the new time "{e.expression or ""}". The task was not changed.',
            error=str(e),
        )

    logger.info(
        "Email action %s task_id=%s success=%s sender=%s", action.value, task.id, result.success, actor_ref
    )

    current = state.task_store.get_task(task.id) or task
    await _send_confirmation(state, sender, current, action.value, result)
    return result


async def handle_inbound_email(
    state: AppState,
    payload: dict[str, Any],
    *,
    now_ts: float | None = None,
) -> tuple[EmailCommand, DispatchResult]:
    """
    Webhook entry: parse the provider payload and dispatch it.

    The reply address (replyTo / to) carries the task reference; `from` is
    the actor and the confirmation recipient.
    """
    sender = str(payload.get("from") or "")
    address = str(payload.get("replyTo") or payload.get("to") or sender)
    subject = str(payload.get("subject") or "")
    body = str(payload.get("content") or payload.get("text") or "")

    now = time.time() if now_ts is None else float(now_ts)
    local_now = datetime.fromtimestamp(now, tz=display_zone(getattr(state.settings, "timezone", None)))

    command = parse_email(address, subject, body, now=local_now)
    logger.info(
        "Inbound reply message_id=%s task_id=%s action=%s",
        payload.get("messageId"),
        command.task_id,
        command.action.value,
    )
    result = await dispatch(state, command, sender=sender, now_ts=now)
    return command, result
