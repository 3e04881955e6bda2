# src/taskmail/notifications/completion.py

"""
Completion notifier.

Sends "task completed" / "task marked incomplete" mails when the completion
toggle flips. Dedup is per task version: a stamp that is >= updated_at means
this version was already announced.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..core.state import AppState
from ..errors import TaskNotFound
from ..mail.messages import clean_recipients, completion_state_email
from ..mail.transport import send_with_retry

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Actor:
    id: str | None = None
    display_name: str | None = None
    email: str | None = None


@dataclass(slots=True)
class CompletionNotice:
    sent: bool
    recipients: list[str] = field(default_factory=list)
    skipped_reason: str | None = None
    delivery_id: str | None = None


def actor_label(actor: Actor | None) -> str:
    """Display name, then email, then a shortened user id."""
    if actor is None:
        return "Unknown user"
    if actor.display_name and actor.display_name.strip():
        return actor.display_name.strip()
    if actor.email and actor.email.strip():
        return actor.email.strip()
    if actor.id:
        return f"User ({actor.id[:8]}...)"
    return "Unknown user"


def _stamp_field(completed: bool) -> str:
    return "last_completion_email_at" if completed else "last_uncomplete_email_at"


async def notify_completion_change(
    state: AppState,
    task_id: int,
    completed: bool,
    *,
    actor: Actor | None = None,
    recipients: Iterable[str] | None = None,
) -> CompletionNotice:
    """
    Announce the task's current completion state.

    Raises TaskNotFound, and MailDeliveryError when delivery fails after the
    retry. Skips (sent=False) when this version was already announced, when
    the stored state differs from `completed`, or when no recipient is valid.
    """
    task = state.task_store.get_task(task_id)
    if task is None:
        raise TaskNotFound(task_id)

    if task.completed != bool(completed):
        logger.info("Completion mail skipped task_id=%s: stored state differs", task.id)
        return CompletionNotice(sent=False, skipped_reason="state mismatch")

    stamp_field = _stamp_field(task.completed)
    stamp = getattr(task, stamp_field)
    if stamp is not None and stamp >= task.updated_at:
        logger.debug("Completion mail already sent task_id=%s version=%s", task.id, task.updated_at)
        return CompletionNotice(sent=False, skipped_reason="already notified")

    if recipients is None:
        cc = getattr(state.settings, "completion_cc", None) or []
        recipients = [task.owner_email or "", *cc]
    to = clean_recipients(recipients)
    if not to:
        logger.info("Completion mail skipped task_id=%s: no valid recipients", task.id)
        return CompletionNotice(sent=False, skipped_reason="no valid recipients")

    message = completion_state_email(
        to, task, completed=task.completed, actor_label=actor_label(actor), settings=state.settings
    )
    delivery_id = await send_with_retry(
        state.mailer,
        message,
        delay_seconds=float(getattr(state.settings, "mail_retry_delay_seconds", 0.0)),
    )

    try:
        state.task_store.stamp_email_sent(task.id, stamp_field, task.updated_at)
    except Exception:
        logger.exception("Failed to stamp %s task_id=%s", stamp_field, task.id)

    logger.info(
        "Completion mail (%s) sent task_id=%s to=%s",
        "completed" if task.completed else "uncompleted",
        task.id,
        ",".join(to),
    )
    return CompletionNotice(sent=True, recipients=to, delivery_id=delivery_id)
