# src/taskmail/reminders/reminder_models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ReminderKind(StrEnum):
    """Fixed offsets before the due date at which a reminder fires."""

    BEFORE_10 = "before_10"
    BEFORE_5 = "before_5"
    BEFORE_1 = "before_1"

    @property
    def minutes_before(self) -> int:
        return _MINUTES_BEFORE[self]

    @property
    def offset_seconds(self) -> float:
        return float(_MINUTES_BEFORE[self] * 60)


_MINUTES_BEFORE: dict[ReminderKind, int] = {
    ReminderKind.BEFORE_10: 10,
    ReminderKind.BEFORE_5: 5,
    ReminderKind.BEFORE_1: 1,
}


class ReminderStatus(StrEnum):
    """
    Instance lifecycle.

    pending -> sent       (sweep, conditional on status still being pending)
    pending -> cancelled  (due-date change, completion, task gone)

    sent and cancelled are terminal.
    """

    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"

    @classmethod
    def from_db(cls, raw: str | None) -> ReminderStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.CANCELLED


class OverdueTier(StrEnum):
    NONE = "none"
    OVERDUE_5MIN = "overdue_5min"
    OVERDUE_10MIN = "overdue_10min"
    OVERDUE_15MIN = "overdue_15min"
    OVERDUE_30MIN = "overdue_30min"
    OVERDUE_1HOUR = "overdue_1hour"

    @property
    def rank(self) -> int:
        """Severity order used by the "same tier or higher" cooldown check."""
        return _TIER_RANK[self]


_TIER_RANK: dict[OverdueTier, int] = {
    OverdueTier.NONE: 0,
    OverdueTier.OVERDUE_5MIN: 1,
    OverdueTier.OVERDUE_10MIN: 2,
    OverdueTier.OVERDUE_15MIN: 3,
    OverdueTier.OVERDUE_30MIN: 4,
    OverdueTier.OVERDUE_1HOUR: 5,
}


@dataclass(slots=True)
class ReminderInstance:
    id: int
    task_id: int
    owner_id: str | None
    kind: ReminderKind
    scheduled_for: float
    # Due date the instance was computed for; a different task.due_at makes it stale.
    due_at: float
    status: ReminderStatus
    created_at: float
    sent_at: float | None = None
    cancelled_at: float | None = None
    claimed_by: str | None = None
    claimed_at: float | None = None
