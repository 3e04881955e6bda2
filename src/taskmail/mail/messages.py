# src/taskmail/mail/messages.py

"""
Outbound message composition.

Every mail about a task carries the task reference three ways so a reply can
be matched back: the Reply-To address (reply+task-<id>@domain), the subject
([task-<id>]) and the text body (Task ID: task-<id>).

Due dates are rendered in the configured display timezone here and only here.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from email.utils import parseaddr
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jinja2

from ..core.ports import OutboundEmail
from ..reminders.reminder_models import OverdueTier, ReminderKind
from ..tasks.task_models import Task

logger = logging.getLogger(__name__)

# Placeholder domains some sign-in providers hand out; mail to them goes nowhere.
_UNDELIVERABLE_SUFFIXES = (".local", ".invalid", ".localhost", ".test")


def task_reference(task_id: int | str) -> str:
    return f"task-{task_id}"


def reply_address(task_id: int | str, domain: str) -> str:
    return f"reply+{task_reference(task_id)}@{domain}"


def reply_instructions(task_id: int | str, task_text: str) -> str:
    return (
        "Reply to this email with one of the following actions:\n"
        "\n"
        "  COMPLETED          - mark the task as done\n"
        "  YES / WORKING      - mark the task as in progress\n"
        "  NO / NOT YET       - no change, just let us know\n"
        "  RESCHEDULE [TIME]  - move the due time\n"
        "\n"
        "Examples:\n"
        '  "COMPLETED"\n'
        '  "RESCHEDULE 4pm"        (today at 4pm, or tomorrow if 4pm has passed)\n'
        '  "RESCHEDULE tomorrow 9:30am"\n'
        '  "RESCHEDULE 12/24"\n'
        "\n"
        f"Task: {task_text}\n"
        f"Task ID: {task_reference(task_id)}\n"
    )


def display_zone(tz_name: str | None) -> ZoneInfo | timezone:
    if not tz_name:
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, rendering in UTC", tz_name)
        return timezone.utc


def format_instant(ts: float | None, tz_name: str | None = None) -> str:
    if ts is None:
        return "no due date"
    dt = datetime.fromtimestamp(float(ts), tz=display_zone(tz_name))
    return dt.strftime("%a %d %b %Y, %H:%M %Z")


def normalize_address(address: str | None) -> str:
    if not address:
        return ""
    return parseaddr(address)[1].strip().lower()


def is_deliverable_address(address: str | None) -> bool:
    addr = normalize_address(address)
    local, sep, domain = addr.partition("@")
    if not sep or not local or "." not in domain:
        return False
    return not domain.endswith(_UNDELIVERABLE_SUFFIXES)


def clean_recipients(addresses: Iterable[str | None]) -> list[str]:
    """Normalise, drop undeliverable addresses and de-duplicate (order kept)."""
    seen: set[str] = set()
    out: list[str] = []
    for raw in addresses:
        addr = normalize_address(raw)
        if not is_deliverable_address(addr) or addr in seen:
            continue
        seen.add(addr)
        out.append(addr)
    return out


_HTML_TEMPLATE = """\
<div style="font-family:system-ui,-apple-system,Segoe UI,Roboto,Arial,sans-serif;padding:16px;">
  <h2 style="margin:0 0 12px 0;">{{ title }}</h2>
{% for paragraph in paragraphs %}
  <p style="margin:0 0 10px 0;">
  {%- for line in paragraph.splitlines() %}{{ line }}{% if not loop.last %}<br>{% endif %}{% endfor -%}
  </p>
{% endfor %}
{% if footer %}
  <hr style="margin:16px 0;border:none;border-top:1px solid #eee;">
  <pre style="color:#666;font-size:12px;white-space:pre-wrap;">{{ footer }}</pre>
{% endif %}
</div>
"""

_env = jinja2.Environment(loader=jinja2.BaseLoader(), autoescape=True, trim_blocks=True, lstrip_blocks=True)
_html_template = _env.from_string(_HTML_TEMPLATE)


def _render_html(title: str, paragraphs: Iterable[str], *, footer: str | None = None) -> str:
    return _html_template.render(title=title, paragraphs=[p for p in paragraphs if p], footer=footer)


def _greeting(task: Task) -> str:
    return f"Hello {task.owner_name or 'there'},"


def _tz(settings: object) -> str | None:
    return getattr(settings, "timezone", None)


def _reply_to(task: Task, settings: object) -> str:
    return reply_address(task.id, getattr(settings, "reply_domain", "localhost"))


def reminder_email(task: Task, kind: ReminderKind, settings: object, *, now_ts: float) -> OutboundEmail:
    """Before-due reminder; the lead time is computed from the live due date."""
    due_at = task.due_at if task.due_at is not None else now_ts
    minutes_left = max(0, round((due_at - now_ts) / 60.0))
    if minutes_left >= 1:
        when = f"due in {minutes_left} minute{'s' if minutes_left != 1 else ''}"
    else:
        when = "due now"

    subject = f"Reminder: {task.text} is {when} [{task_reference(task.id)}]"
    lines = [
        _greeting(task),
        f'Your task "{task.text}" is {when}.',
        f"Due: {format_instant(task.due_at, _tz(settings))}",
        task.description,
    ]
    instructions = reply_instructions(task.id, task.text)
    text = "\n\n".join(p for p in lines if p) + f"\n\n--\n{instructions}"
    logger.debug("Composed %s reminder for task %s", kind.value, task.id)
    return OutboundEmail(
        to=(normalize_address(task.owner_email),),
        subject=subject,
        html_body=_render_html(f"Reminder ({kind.minutes_before} min)", lines, footer=instructions),
        text_body=text,
        reply_to=_reply_to(task, settings),
    )


def overdue_email(task: Task, tier: OverdueTier, minutes_overdue: int, settings: object) -> OutboundEmail:
    subject = f"Overdue: {task.text} ({minutes_overdue} min) [{task_reference(task.id)}]"
    lines = [
        _greeting(task),
        f'Are you completing "{task.text}"? You are {minutes_overdue} minutes overdue!',
        f"Was due: {format_instant(task.due_at, _tz(settings))}",
    ]
    instructions = reply_instructions(task.id, task.text)
    text = "\n\n".join(lines) + f"\n\n--\n{instructions}"
    return OutboundEmail(
        to=(normalize_address(task.owner_email),),
        subject=subject,
        html_body=_render_html(f"Task overdue ({tier.value})", lines, footer=instructions),
        text_body=text,
        reply_to=_reply_to(task, settings),
    )


def rescheduling_alert_email(
    task: Task, old_due_at: float | None, new_due_at: float | None, settings: object
) -> OutboundEmail:
    tz_name = _tz(settings)
    subject = f"Rescheduled at the last minute: {task.text} [{task_reference(task.id)}]"
    lines = [
        _greeting(task),
        f'Your task "{task.text}" was rescheduled within the last minutes before it was due.',
        f"Previous due time: {format_instant(old_due_at, tz_name)}",
        f"New due time: {format_instant(new_due_at, tz_name)}",
    ]
    return OutboundEmail(
        to=(normalize_address(task.owner_email),),
        subject=subject,
        html_body=_render_html("Last-minute reschedule", lines),
        text_body="\n\n".join(lines),
        reply_to=_reply_to(task, settings),
    )


def confirmation_email(
    to: str,
    task: Task,
    *,
    action: str,
    success: bool,
    outcome: str,
    settings: object,
) -> OutboundEmail:
    status = "processed" if success else "could not be processed"
    subject = f"Task action {'confirmed' if success else 'failed'}: {task.text} [{task_reference(task.id)}]"
    lines = [
        f'Your reply "{action}" {status} for task: {task.text}',
        outcome,
        f"Due: {format_instant(task.due_at, _tz(settings))}",
    ]
    footer = None if success else reply_instructions(task.id, task.text)
    text = "\n\n".join(lines) + (f"\n\n--\n{footer}" if footer else "")
    return OutboundEmail(
        to=(normalize_address(to),),
        subject=subject,
        html_body=_render_html("Task action " + ("confirmed" if success else "failed"), lines, footer=footer),
        text_body=text,
        reply_to=_reply_to(task, settings),
    )


def completion_state_email(
    recipients: Iterable[str],
    task: Task,
    *,
    completed: bool,
    actor_label: str,
    settings: object,
) -> OutboundEmail:
    tz_name = _tz(settings)
    action = "completed" if completed else "uncompleted"
    title = "Task Completed" if completed else "Task Marked Incomplete"
    by_label = "Completed by:" if completed else "Uncompleted by:"
    base_url = getattr(settings, "base_url", "")

    lines = [
        _greeting(task),
        f'The task "{task.text}" was {action}.',
        f"{by_label} {actor_label}",
        f"Description: {task.description}" if task.description else "",
        f"Due: {format_instant(task.due_at, tz_name)}",
        f"Updated: {format_instant(task.updated_at, tz_name)}",
        f"View your tasks: {base_url}/tasks" if base_url else "",
    ]
    return OutboundEmail(
        to=tuple(recipients),
        subject=f"{title}: {task.text}",
        html_body=_render_html(title, lines),
        text_body="\n\n".join(p for p in lines if p),
        reply_to=_reply_to(task, settings),
    )
