# src/taskmail/mail/command_parser.py

"""
Email reply parser.

Maps (reply address, subject, body) to a closed EmailCommand. This is a fixed
keyword/pattern classifier, checked in priority order:

    completion > in progress > reschedule > negative > no_action

The parser never raises: anything unexpected degrades to NO_ACTION.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import StrEnum

logger = logging.getLogger(__name__)


class EmailAction(StrEnum):
    COMPLETE = "complete"
    IN_PROGRESS = "in_progress"
    RESCHEDULE = "reschedule"
    NO_ACTION = "no_action"


@dataclass(slots=True, frozen=True)
class EmailCommand:
    action: EmailAction
    task_id: str | None = None
    raw_reschedule_expression: str | None = None
    # Absolute instant (POSIX seconds); None for a reschedule means "could not parse".
    reschedule_at: float | None = None


# ---- task reference ----

_REPLY_ADDRESS_RE = re.compile(r"reply\+task-([A-Za-z0-9]+)@", re.IGNORECASE)
_TASK_REF_RE = re.compile(r"\btask-([A-Za-z0-9]+)", re.IGNORECASE)

# ---- keyword families (matched on the lower-cased, unquoted body) ----

_COMPLETE_RE = re.compile(r"\b(?:completed|finished|(?<!almost )done)\b")
_IN_PROGRESS_RE = re.compile(r"\b(?:working|in progress|almost done|getting there)\b")
# "yes" alone answers the reminder; inside a longer reply it carries no action
_BARE_YES_RE = re.compile(r"^\W*yes\W*$")
_RESCHEDULE_RE = re.compile(r"\breschedul(?:e|ed|ing)\b")
_MOVE_RE = re.compile(r"\b(?:move|moved|change|changed|push|postpone)\b")
_NEGATIVE_RE = re.compile(r"\b(?:no|not yet|not ready|later)\b")

# ---- time/date tokens ----

_DAY_RE = re.compile(r"\b(today|tomorrow)\b")
_DATE_RE = re.compile(r"(?<![\d/])(\d{1,2})/(\d{1,2})(?:/(\d{4}|\d{2}))?(?![\d/])")
_CLOCK_RE = re.compile(
    r"(?<![\d/:])(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>[ap]\.?m\.?)?(?![\d/:a-z])"
)

_QUOTE_HEADER_RE = re.compile(r"^on\b.*\bwrote:\s*$")
_FORWARD_MARKERS = ("-----original message-----", "________________________________")


def extract_task_id(address: str | None, subject: str | None, body: str | None) -> str | None:
    """Reply address first, then subject, then body. First match wins."""
    m = _REPLY_ADDRESS_RE.search(address or "")
    if m:
        return m.group(1)
    m = _TASK_REF_RE.search(subject or "")
    if m:
        return m.group(1)
    m = _TASK_REF_RE.search(body or "")
    if m:
        return m.group(1)
    return None


def strip_quoted_reply(body: str) -> str:
    """
    Drop the quoted original message from a reply.

    Our own mails contain the whole action vocabulary ("COMPLETED", "NO",
    "RESCHEDULE 4pm"), so classifying a quoted copy would misfire.
    """
    kept: list[str] = []
    lines = body.splitlines()
    for i, line in enumerate(lines):
        s = line.strip().lower()
        if s.startswith(">"):
            continue
        if s in ("--", "-- ") or s.startswith(_FORWARD_MARKERS):
            break
        if _QUOTE_HEADER_RE.match(s):
            break
        # Clients wrap long "On <date>, <sender> wrote:" headers onto two lines.
        if s.startswith("on ") and i + 1 < len(lines) and lines[i + 1].strip().lower().endswith("wrote:"):
            break
        kept.append(line)
    return "\n".join(kept)


def _clock_matches(text: str) -> list[re.Match[str]]:
    # A bare number is not a time; it needs minutes or am/pm.
    return [m for m in _CLOCK_RE.finditer(text) if m.group("minute") or m.group("meridiem")]


def find_time_expression(text: str) -> str | None:
    """
    Collect the first day word / slash date and the first clock time into one
    expression ("tomorrow 4pm", "12/24 9:30"). None when no token is present.
    """
    parts: list[tuple[int, str]] = []
    day = _DAY_RE.search(text)
    date_m = _DATE_RE.search(text)
    if day and (not date_m or day.start() < date_m.start()):
        parts.append((day.start(), day.group(0)))
    elif date_m:
        parts.append((date_m.start(), date_m.group(0)))
    clocks = _clock_matches(text)
    if clocks:
        parts.append((clocks[0].start(), clocks[0].group(0).strip()))
    if not parts:
        return None
    parts.sort()
    return " ".join(p for _, p in parts)


def _clock_to_24h(m: re.Match[str]) -> tuple[int, int] | None:
    hour = int(m.group("hour"))
    minute = int(m.group("minute") or 0)
    meridiem = (m.group("meridiem") or "").replace(".", "")
    if not 0 <= minute <= 59:
        return None
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        if meridiem == "pm" and hour != 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0
    elif not 0 <= hour <= 23:
        return None
    return hour, minute


def _resolve_date(m: re.Match[str], today: date) -> date:
    month = int(m.group(1))
    day = int(m.group(2))
    raw_year = m.group(3)
    if raw_year is None:
        year = today.year
    elif len(raw_year) == 2:
        year = 2000 + int(raw_year)
    else:
        year = int(raw_year)
    return date(year, month, day)


def parse_reschedule_time(expression: str | None, now: datetime) -> datetime | None:
    """
    Resolve a reschedule expression against `now` (timezone-aware).

    - "4pm", "16:30", "9:15am": today at that time, tomorrow if already passed
    - "today" / "tomorrow": that day at the current clock time
    - "12/24", "12/24/2027": that date at midnight (missing year = this year)
    - a day word or date plus a clock time: that day at that time

    Returns None when nothing can be resolved.
    """
    text = (expression or "").lower().strip()
    if not text:
        return None

    try:
        day: date | None = None
        explicit_date = False

        date_m = _DATE_RE.search(text)
        day_m = _DAY_RE.search(text)
        if date_m:
            day = _resolve_date(date_m, now.date())
            explicit_date = True
        elif day_m:
            offset = 1 if day_m.group(1) == "tomorrow" else 0
            day = now.date() + timedelta(days=offset)

        clocks = _clock_matches(text)
        if clocks:
            hm = _clock_to_24h(clocks[0])
            if hm is None:
                return None
            hour, minute = hm
            if day is None:
                candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
                if candidate <= now:
                    candidate += timedelta(days=1)
                return candidate
            return datetime.combine(day, time(hour, minute), tzinfo=now.tzinfo)

        if day is None:
            return None
        if explicit_date:
            return datetime.combine(day, time(0, 0), tzinfo=now.tzinfo)
        return datetime.combine(day, now.timetz())
    except (ValueError, OverflowError):
        return None


def classify_reply(text: str) -> tuple[EmailAction, str | None]:
    """Return (action, raw reschedule expression) for an already lower-cased body."""
    if _COMPLETE_RE.search(text):
        return EmailAction.COMPLETE, None
    if _IN_PROGRESS_RE.search(text):
        return EmailAction.IN_PROGRESS, None

    expression = find_time_expression(text)
    if expression and (_RESCHEDULE_RE.search(text) or _MOVE_RE.search(text)):
        return EmailAction.RESCHEDULE, expression
    if _BARE_YES_RE.match(text):
        return EmailAction.IN_PROGRESS, None

    if _NEGATIVE_RE.search(text):
        return EmailAction.NO_ACTION, None
    return EmailAction.NO_ACTION, None


def parse_email(
    address: str | None,
    subject: str | None,
    body: str | None,
    *,
    now: datetime | None = None,
) -> EmailCommand:
    """
    Parse one inbound reply.

    `address` is where the reply was sent (Reply-To / To), falling back to the
    sender. `now` must be timezone-aware; wall-clock expressions such as "4pm"
    are interpreted in its timezone.
    """
    task_id: str | None = None
    try:
        if now is None:
            now = datetime.now(timezone.utc)
        task_id = extract_task_id(address, subject, body)

        text = strip_quoted_reply(body or "").lower()
        action, expression = classify_reply(text)

        if action is not EmailAction.RESCHEDULE:
            return EmailCommand(action=action, task_id=task_id)

        resolved = parse_reschedule_time(expression, now)
        if resolved is None:
            logger.info("Unresolvable reschedule expression %r task_id=%s", expression, task_id)
        return EmailCommand(
            action=action,
            task_id=task_id,
            raw_reschedule_expression=expression,
            reschedule_at=resolved.timestamp() if resolved is not None else None,
        )
    except Exception:
        logger.exception("Email parsing failed; treating reply as no_action")
        return EmailCommand(action=EmailAction.NO_ACTION, task_id=task_id)
