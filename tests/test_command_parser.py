# tests/test_command_parser.py

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from taskmail.mail.command_parser import (
    EmailAction,
    extract_task_id,
    parse_email,
    parse_reschedule_time,
    strip_quoted_reply,
)

UTC = timezone.utc
MORNING = datetime(2026, 10, 19, 10, 0, tzinfo=UTC)
REPLY_TO = "reply+task-42@example.com"


def _parse(body: str, *, now: datetime = MORNING, subject: str = "Re: Reminder"):
    return parse_email(REPLY_TO, subject, body, now=now)


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ("COMPLETED", EmailAction.COMPLETE),
        ("Done!", EmailAction.COMPLETE),
        ("finished it this morning", EmailAction.COMPLETE),
        ("almost done", EmailAction.IN_PROGRESS),
        ("I'm working on it", EmailAction.IN_PROGRESS),
        ("Yes", EmailAction.IN_PROGRESS),
        ("getting there", EmailAction.IN_PROGRESS),
        ("not yet", EmailAction.NO_ACTION),
        ("No", EmailAction.NO_ACTION),
        ("later", EmailAction.NO_ACTION),
        ("thanks for the note", EmailAction.NO_ACTION),
        ("", EmailAction.NO_ACTION),
        ("\x00\x01 ??? %%%", EmailAction.NO_ACTION),
    ],
)
def test_classification(body: str, expected: EmailAction) -> None:
    cmd = _parse(body)
    assert cmd.action is expected
    assert cmd.task_id == "42"


def test_keywords_need_word_boundaries() -> None:
    assert _parse("it is still undone").action is EmailAction.NO_ACTION
    assert _parse("I am networking today").action is EmailAction.NO_ACTION


def test_completion_wins_over_reschedule() -> None:
    assert _parse("done, but reschedule the follow-up to 5pm").action is EmailAction.COMPLETE


def test_yes_inside_a_reschedule_reply_does_not_mark_progress() -> None:
    cmd = _parse("yes please move it to 5pm")
    assert cmd.action is EmailAction.RESCHEDULE
    assert cmd.reschedule_at is not None

    assert _parse("Yes!\n").action is EmailAction.IN_PROGRESS
    assert _parse("yes, but not today").action is EmailAction.NO_ACTION


def test_reschedule_4pm_before_4pm_is_today() -> None:
    cmd = _parse("RESCHEDULE 4pm")

    assert cmd.action is EmailAction.RESCHEDULE
    assert cmd.raw_reschedule_expression == "4pm"
    assert cmd.reschedule_at == datetime(2026, 10, 19, 16, 0, tzinfo=UTC).timestamp()


@pytest.mark.parametrize("hour", [16, 17])
def test_reschedule_4pm_at_or_after_4pm_rolls_to_tomorrow(hour: int) -> None:
    cmd = _parse("RESCHEDULE 4pm", now=MORNING.replace(hour=hour))
    assert cmd.reschedule_at == datetime(2026, 10, 20, 16, 0, tzinfo=UTC).timestamp()


def test_move_word_with_day_and_time() -> None:
    cmd = _parse("Can you move it to tomorrow 9:30am please")

    assert cmd.action is EmailAction.RESCHEDULE
    assert cmd.raw_reschedule_expression == "tomorrow 9:30am"
    assert cmd.reschedule_at == datetime(2026, 10, 20, 9, 30, tzinfo=UTC).timestamp()


def test_reschedule_without_time_token_is_not_a_reschedule() -> None:
    assert _parse("please reschedule").action is EmailAction.NO_ACTION
    assert _parse("move 4 people to the other room").action is EmailAction.NO_ACTION


def test_unresolvable_reschedule_keeps_action_without_instant() -> None:
    cmd = _parse("reschedule 13/45")

    assert cmd.action is EmailAction.RESCHEDULE
    assert cmd.raw_reschedule_expression == "13/45"
    assert cmd.reschedule_at is None


def test_quoted_original_is_ignored() -> None:
    body = (
        "Thanks, will look at it\n"
        "\n"
        "On Mon, Oct 19, 2026 at 9:50 AM Taskmail <taskmail@example.com> wrote:\n"
        "> Reply COMPLETED to mark the task as done.\n"
        "> Task ID: task-42\n"
    )
    cmd = parse_email("taskmail@example.com", "Re: Reminder", body, now=MORNING)

    assert cmd.action is EmailAction.NO_ACTION
    assert cmd.task_id == "42"


def test_strip_quoted_reply_handles_wrapped_header_and_signature() -> None:
    body = "working on it\nOn Mon, Oct 19, 2026 at 9:50 AM Taskmail\n<taskmail@example.com> wrote:\n> done"
    assert strip_quoted_reply(body).strip() == "working on it"
    assert strip_quoted_reply("yes\n-- \nSent from my phone. Done.").strip() == "yes"


def test_task_id_resolution_order() -> None:
    assert extract_task_id("reply+task-42@example.com", "Re: [task-7]", "Task ID: task-9") == "42"
    assert extract_task_id("me@example.com", "Re: Reminder [task-7]", "Task ID: task-9") == "7"
    assert extract_task_id("me@example.com", "Re: Reminder", "Task ID: TASK-9") == "9"
    assert extract_task_id("me@example.com", "Re: Reminder", "no reference") is None
    assert extract_task_id(None, None, None) is None


def test_parse_email_never_raises_on_none() -> None:
    cmd = parse_email(None, None, None)
    assert cmd.action is EmailAction.NO_ACTION
    assert cmd.task_id is None


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("16:30", datetime(2026, 10, 19, 16, 30, tzinfo=UTC)),
        ("9am", datetime(2026, 10, 20, 9, 0, tzinfo=UTC)),
        ("12pm", datetime(2026, 10, 19, 12, 0, tzinfo=UTC)),
        ("12:15am", datetime(2026, 10, 20, 0, 15, tzinfo=UTC)),
        ("4 p.m.", datetime(2026, 10, 19, 16, 0, tzinfo=UTC)),
        ("tomorrow", datetime(2026, 10, 20, 10, 0, tzinfo=UTC)),
        ("today 6pm", datetime(2026, 10, 19, 18, 0, tzinfo=UTC)),
        ("12/24", datetime(2026, 12, 24, 0, 0, tzinfo=UTC)),
        ("12/24 9:30", datetime(2026, 12, 24, 9, 30, tzinfo=UTC)),
        ("1/5/27", datetime(2027, 1, 5, 0, 0, tzinfo=UTC)),
        ("1/5/2028 8am", datetime(2028, 1, 5, 8, 0, tzinfo=UTC)),
    ],
)
def test_parse_reschedule_time(expression: str, expected: datetime) -> None:
    assert parse_reschedule_time(expression, MORNING) == expected


@pytest.mark.parametrize("expression", ["", "soon", "25:00", "13pm", "2/30", "9:75"])
def test_parse_reschedule_time_rejects_invalid(expression: str) -> None:
    assert parse_reschedule_time(expression, MORNING) is None


def test_wall_clock_is_read_in_the_given_timezone() -> None:
    eastern = timezone(timedelta(hours=-4))
    now = datetime(2026, 10, 19, 10, 0, tzinfo=eastern)

    cmd = _parse("reschedule 4pm", now=now)

    assert cmd.reschedule_at == datetime(2026, 10, 19, 20, 0, tzinfo=UTC).timestamp()
