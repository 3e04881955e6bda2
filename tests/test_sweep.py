# tests/test_sweep.py

from __future__ import annotations

import asyncio

import pytest

from taskmail.errors import MailDeliveryError
from taskmail.reminders.reminder_models import ReminderKind, ReminderStatus
from taskmail.reminders.sweep import prune, run_sweep
from taskmail.tasks import task_api

from .fakes import MIN, T0


def _task(state, *, due_at, now_ts, email="owner@example.com"):
    return task_api.create_task(
        state,
        owner_id="user-1",
        owner_email=email,
        owner_name="Ada",
        text="Submit expenses",
        due_at=due_at,
        now_ts=now_ts,
    )


@pytest.mark.asyncio
async def test_reminder_lifecycle_scenario(state, mailer) -> None:
    due = T0
    task = _task(state, due_at=due, now_ts=due - 20 * MIN)
    rows = state.reminder_store.list_instances_for_task(task.id)
    assert [r.scheduled_for for r in rows] == [due - 10 * MIN, due - 5 * MIN, due - 1 * MIN]

    first = await run_sweep(state, now_ts=due - 10 * MIN)
    assert first.instances_processed == 1
    assert first.reminders_sent == 1
    assert len(mailer.sent) == 1
    assert "Reminder" in mailer.sent[0].subject
    assert mailer.sent[0].reply_to == f"reply+task-{task.id}@example.com"

    second = await run_sweep(state, now_ts=due - 9 * MIN)
    assert second.instances_processed == 0
    assert len(mailer.sent) == 1

    await task_api.set_task_completed(state, task.id, True, notify=False, now_ts=due - 7 * MIN)

    third = await run_sweep(state, now_ts=due - 5 * MIN)
    assert third.instances_processed == 0
    assert third.reminders_sent == 0
    assert len(mailer.sent) == 1

    statuses = {r.kind: r.status for r in state.reminder_store.list_instances_for_task(task.id)}
    assert statuses == {
        ReminderKind.BEFORE_10: ReminderStatus.SENT,
        ReminderKind.BEFORE_5: ReminderStatus.CANCELLED,
        ReminderKind.BEFORE_1: ReminderStatus.CANCELLED,
    }


@pytest.mark.asyncio
async def test_concurrent_sweeps_send_one_email(state, mailer) -> None:
    task = _task(state, due_at=T0, now_ts=T0 - 20 * MIN)
    now = T0 - 10 * MIN

    a, b = await asyncio.gather(run_sweep(state, now_ts=now), run_sweep(state, now_ts=now))

    assert a.reminders_sent + b.reminders_sent == 1
    assert len(mailer.sent) == 1
    rows = state.reminder_store.list_instances_for_task(task.id)
    assert [r.status for r in rows if r.kind is ReminderKind.BEFORE_10] == [ReminderStatus.SENT]


@pytest.mark.asyncio
async def test_transient_failure_is_retried_once(state, mailer) -> None:
    _task(state, due_at=T0, now_ts=T0 - 20 * MIN)
    mailer.fail_times = 1

    result = await run_sweep(state, now_ts=T0 - 10 * MIN)

    assert result.reminders_sent == 1
    assert result.errors == 0
    assert mailer.attempts == 2


@pytest.mark.asyncio
async def test_failed_send_releases_the_claim(state, mailer) -> None:
    task = _task(state, due_at=T0, now_ts=T0 - 20 * MIN)
    mailer.fail_times = 2

    failed = await run_sweep(state, now_ts=T0 - 10 * MIN)
    assert failed.errors == 1
    assert failed.reminders_sent == 0
    inst = state.reminder_store.list_instances_for_task(task.id)[0]
    assert inst.status is ReminderStatus.PENDING
    assert inst.claimed_by is None

    retried = await run_sweep(state, now_ts=T0 - 9 * MIN)
    assert retried.reminders_sent == 1
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_other_tasks(state, mailer) -> None:
    _task(state, due_at=T0, now_ts=T0 - 20 * MIN)
    _task(state, due_at=T0, now_ts=T0 - 20 * MIN)
    mailer.fail_times = 1
    mailer.error = MailDeliveryError

    result = await run_sweep(state, now_ts=T0 - 10 * MIN)

    assert result.instances_processed == 2
    assert result.errors == 1
    assert result.reminders_sent == 1


@pytest.mark.asyncio
async def test_stale_instances_are_cancelled_without_mail(state, mailer) -> None:
    moved = _task(state, due_at=T0, now_ts=T0 - 20 * MIN)
    gone_owner = _task(state, due_at=T0, now_ts=T0 - 20 * MIN, email="someone@laptop.local")
    # Due date written without going through the rescheduling guard.
    state.task_store.update_task_fields(moved.id, due_at=T0 + 60 * MIN, now_ts=T0 - 15 * MIN)

    result = await run_sweep(state, now_ts=T0 - 10 * MIN)

    assert result.instances_cancelled == 2
    assert result.reminders_sent == 0
    assert mailer.sent == []
    for task_id in (moved.id, gone_owner.id):
        before_10 = [
            r for r in state.reminder_store.list_instances_for_task(task_id) if r.kind is ReminderKind.BEFORE_10
        ]
        assert before_10[0].status is ReminderStatus.CANCELLED


@pytest.mark.asyncio
async def test_overdue_escalation_respects_cooldown(state, mailer) -> None:
    due = T0
    task = _task(state, due_at=due, now_ts=due + MIN)

    assert (await run_sweep(state, now_ts=due + 4 * MIN)).overdue_alerts_sent == 0
    assert (await run_sweep(state, now_ts=due + 5 * MIN)).overdue_alerts_sent == 1
    assert (await run_sweep(state, now_ts=due + 7 * MIN)).overdue_alerts_sent == 0
    assert (await run_sweep(state, now_ts=due + 10 * MIN)).overdue_alerts_sent == 1
    assert (await run_sweep(state, now_ts=due + 12 * MIN)).overdue_alerts_sent == 0
    assert (await run_sweep(state, now_ts=due + 16 * MIN)).overdue_alerts_sent == 1

    assert len(mailer.sent) == 3
    assert "Overdue" in mailer.sent[0].subject
    assert "You are 5 minutes overdue!" in mailer.sent[0].text_body
    tiers = [r.tier.value for r in state.reminder_store.list_overdue_records(task.id)]
    assert tiers == ["overdue_5min", "overdue_10min", "overdue_15min"]


@pytest.mark.asyncio
async def test_same_tier_repeats_after_cooldown(state, mailer) -> None:
    due = T0
    _task(state, due_at=due, now_ts=due + MIN)

    assert (await run_sweep(state, now_ts=due + 60 * MIN)).overdue_alerts_sent == 1
    assert (await run_sweep(state, now_ts=due + 80 * MIN)).overdue_alerts_sent == 0
    assert (await run_sweep(state, now_ts=due + 91 * MIN)).overdue_alerts_sent == 1


@pytest.mark.asyncio
async def test_failed_overdue_alert_frees_the_cooldown_slot(state, mailer) -> None:
    task = _task(state, due_at=T0, now_ts=T0 + MIN)
    mailer.fail_times = 2

    failed = await run_sweep(state, now_ts=T0 + 5 * MIN)
    assert failed.errors == 1
    assert state.reminder_store.list_overdue_records(task.id) == []

    again = await run_sweep(state, now_ts=T0 + 6 * MIN)
    assert again.overdue_alerts_sent == 1


@pytest.mark.asyncio
async def test_completed_and_undeliverable_tasks_get_no_overdue_alerts(state, mailer) -> None:
    done = _task(state, due_at=T0, now_ts=T0 + MIN)
    await task_api.set_task_completed(state, done.id, True, notify=False, now_ts=T0 + 2 * MIN)
    _task(state, due_at=T0, now_ts=T0 + MIN, email="user@device.local")

    result = await run_sweep(state, now_ts=T0 + 20 * MIN)

    assert result.overdue_alerts_sent == 0
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_overdue_pass_reaches_tasks_beyond_one_batch(state, mailer) -> None:
    owners = [f"o{i}@example.com" for i in range(5)]
    for i, email in enumerate(owners):
        _task(state, due_at=T0 + i, now_ts=T0 - MIN, email=email)

    for step in range(3):
        await run_sweep(state, now_ts=T0 + 10 * MIN + step * 31 * MIN, batch_limit=2)

    per_owner = {email: sum(1 for m in mailer.sent if m.to == (email,)) for email in owners}
    assert per_owner == {email: 3 for email in owners}


@pytest.mark.asyncio
async def test_late_sweep_cancels_before_reminders_of_past_due_task(state, mailer) -> None:
    task = _task(state, due_at=T0, now_ts=T0 - 20 * MIN)

    result = await run_sweep(state, now_ts=T0 + 100 * MIN)

    assert result.reminders_sent == 0
    assert result.instances_cancelled == 3
    assert result.overdue_alerts_sent == 1
    assert mailer.subjects() == [f"Overdue: Submit expenses (100 min) [task-{task.id}]"]
    statuses = {r.status for r in state.reminder_store.list_instances_for_task(task.id)}
    assert statuses == {ReminderStatus.CANCELLED}

def test_prune_removes_old_cancelled_rows_only(state) -> None:
    task = _task(state, due_at=T0 + 60 * MIN, now_ts=T0)
    store = state.reminder_store
    rows = store.list_instances_for_task(task.id)
    assert store.try_claim_instance(rows[0].id, token="w", now_ts=T0, lease_seconds=60)
    assert store.mark_sent(rows[0].id, token="w", now_ts=T0)
    store.cancel_pending_for_task(task.id, now_ts=T0)
    store.try_record_overdue(task.id, "overdue_5min", minutes_overdue=5, now_ts=T0, cooldown_seconds=1800)

    assert prune(state, now_ts=T0 + 3 * 86400) == (0, 0)
    assert prune(state, now_ts=T0 + 8 * 86400) == (2, 1)

    remaining = store.list_instances_for_task(task.id)
    assert [r.status for r in remaining] == [ReminderStatus.SENT]
