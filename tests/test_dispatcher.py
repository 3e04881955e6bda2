# tests/test_dispatcher.py

from __future__ import annotations

import pytest

from taskmail.errors import MailDeliveryError, MissingTaskReference, TaskNotFound
from taskmail.mail.command_parser import EmailAction, EmailCommand
from taskmail.mail.dispatcher import dispatch, handle_inbound_email
from taskmail.reminders.reminder_models import ReminderStatus
from taskmail.tasks import task_api
from taskmail.tasks.task_models import ActionSource, TaskAction

from .fakes import MIN, T0

OWNER = "Ada Lovelace <Ada@Example.com>"


def _task(state, *, due_at=T0 + 60 * MIN, now_ts=T0 - 30 * MIN):
    return task_api.create_task(
        state,
        owner_id="user-1",
        owner_email="ada@example.com",
        owner_name="Ada",
        text="Renew passport",
        due_at=due_at,
        now_ts=now_ts,
    )


def _payload(task_id, content: str) -> dict:
    return {
        "from": OWNER,
        "replyTo": f"reply+task-{task_id}@example.com",
        "subject": "Re: Reminder: Renew passport",
        "content": content,
        "messageId": "<abc@mail.example.com>",
    }


@pytest.mark.asyncio
async def test_completed_reply_completes_task_and_confirms(state, mailer) -> None:
    task = _task(state)

    command, result = await handle_inbound_email(
        state, _payload(task.id, "COMPLETED\n\n> RESCHEDULE 4pm"), now_ts=T0
    )

    assert command.action is EmailAction.COMPLETE
    assert result.success is True
    assert result.confirmation_sent is True

    stored = state.task_store.get_task(task.id)
    assert stored.completed is True
    assert stored.completed_by == "ada@example.com"
    assert stored.completed_at == T0

    rows = state.reminder_store.list_instances_for_task(task.id)
    assert {r.status for r in rows} == {ReminderStatus.CANCELLED}

    actions = state.task_store.list_actions(task.id)
    assert [(a.action, a.source) for a in actions] == [(TaskAction.COMPLETED, ActionSource.EMAIL_REPLY)]

    assert len(mailer.sent) == 2
    announcement, confirmation = mailer.sent
    assert announcement.subject == "Task Completed: Renew passport"
    assert "Completed by: ada@example.com" in announcement.text_body
    assert confirmation.to == ("ada@example.com",)
    assert "confirmed" in confirmation.subject
    assert "remaining reminders were cancelled" in confirmation.text_body


@pytest.mark.asyncio
async def test_in_progress_reply(state, mailer) -> None:
    task = _task(state)

    _, result = await handle_inbound_email(state, _payload(task.id, "Working on it!"), now_ts=T0)

    assert result.action is EmailAction.IN_PROGRESS
    stored = state.task_store.get_task(task.id)
    assert stored.in_progress is True
    assert stored.in_progress_by == "ada@example.com"
    assert stored.completed is False
    assert [a.action for a in state.task_store.list_actions(task.id)] == [TaskAction.IN_PROGRESS]
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_reschedule_reply_moves_due_date(state, mailer) -> None:
    old_due = T0 + 60 * MIN
    task = _task(state, due_at=old_due)

    # T0 is 08:00 UTC, so "4pm" is 16:00 the same day.
    _, result = await handle_inbound_email(state, _payload(task.id, "RESCHEDULE 4pm"), now_ts=T0)

    new_due = T0 + 8 * 60 * MIN
    assert result.success is True
    assert result.new_due_at == new_due

    stored = state.task_store.get_task(task.id)
    assert stored.due_at == new_due
    assert stored.rescheduled_from == old_due
    assert stored.rescheduled_by == "ada@example.com"

    pending = [
        r for r in state.reminder_store.list_instances_for_task(task.id) if r.status is ReminderStatus.PENDING
    ]
    assert {r.due_at for r in pending} == {new_due}

    action = state.task_store.list_actions(task.id)[0]
    assert action.action is TaskAction.RESCHEDULED
    assert action.details["expression"] == "4pm"
    # Old due date is an hour away: only the confirmation goes out.
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_unparseable_reschedule_changes_nothing_but_confirms(state, mailer) -> None:
    task = _task(state)

    _, result = await handle_inbound_email(state, _payload(task.id, "reschedule to 13/45"), now_ts=T0)

    assert result.success is False
    assert result.error == "invalid reschedule time"
    assert state.task_store.get_task(task.id).due_at == task.due_at
    assert state.task_store.list_actions(task.id) == []
    assert len(mailer.sent) == 1
    assert "failed" in mailer.sent[0].subject
    assert "Task ID: task-" in mailer.sent[0].text_body


@pytest.mark.asyncio
async def test_no_action_reply_is_logged(state, mailer) -> None:
    task = _task(state)

    _, result = await handle_inbound_email(state, _payload(task.id, "not yet"), now_ts=T0)

    assert result.action is EmailAction.NO_ACTION
    assert result.success is True
    assert [a.action for a in state.task_store.list_actions(task.id)] == [TaskAction.NO_ACTION]
    assert state.task_store.get_task(task.id).completed is False
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_missing_reference_raises_without_mail(state, mailer) -> None:
    payload = {"from": OWNER, "subject": "hello", "content": "COMPLETED"}

    with pytest.raises(MissingTaskReference):
        await handle_inbound_email(state, payload, now_ts=T0)
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_unknown_task_raises_without_mail(state, mailer) -> None:
    with pytest.raises(TaskNotFound):
        await dispatch(state, EmailCommand(action=EmailAction.COMPLETE, task_id="999"), sender=OWNER)
    with pytest.raises(TaskNotFound):
        await dispatch(state, EmailCommand(action=EmailAction.COMPLETE, task_id="abc"), sender=OWNER)
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_confirmation_failure_is_reported_not_raised(state, mailer) -> None:
    task = _task(state)
    # completion announcement and confirmation both fail
    mailer.fail_times = 2
    mailer.error = MailDeliveryError

    _, result = await handle_inbound_email(state, _payload(task.id, "done"), now_ts=T0)

    assert result.success is True
    assert result.confirmation_sent is False
    assert result.confirmation_error
    assert state.task_store.get_task(task.id).completed is True


@pytest.mark.asyncio
async def test_result_serializes_action_value(state) -> None:
    task = _task(state)
    result = await dispatch(
        state, EmailCommand(action=EmailAction.NO_ACTION, task_id=str(task.id)), sender=OWNER, now_ts=T0
    )

    data = result.to_dict()
    assert data["action"] == "no_action"
    assert data["task_id"] == task.id


@pytest.mark.asyncio
async def test_completed_reply_announces_to_owner_and_cc(state, mailer) -> None:
    state.settings.completion_cc = ["team@example.com"]
    task = _task(state)

    await handle_inbound_email(state, _payload(task.id, "COMPLETED"), now_ts=T0)
    await handle_inbound_email(state, _payload(task.id, "done again"), now_ts=T0 + MIN)

    announcements = [m for m in mailer.sent if m.subject.startswith("Task Completed")]
    assert len(announcements) == 1
    assert announcements[0].to == ("ada@example.com", "team@example.com")
    assert state.task_store.get_task(task.id).last_completion_email_at is not None
