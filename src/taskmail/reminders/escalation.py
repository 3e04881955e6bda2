# src/taskmail/reminders/escalation.py

"""
Overdue escalation.

Tiers are recomputed on every sweep from the due date; nothing here touches
storage. Thresholds are checked from the most severe down, so the result is
the highest tier met (not a cumulative list).
"""

from __future__ import annotations

import math

from .reminder_models import OverdueTier

_THRESHOLDS: tuple[tuple[int, OverdueTier], ...] = (
    (60, OverdueTier.OVERDUE_1HOUR),
    (30, OverdueTier.OVERDUE_30MIN),
    (15, OverdueTier.OVERDUE_15MIN),
    (10, OverdueTier.OVERDUE_10MIN),
    (5, OverdueTier.OVERDUE_5MIN),
)


def tier(minutes_overdue: int) -> OverdueTier:
    for threshold, result in _THRESHOLDS:
        if minutes_overdue >= threshold:
            return result
    return OverdueTier.NONE


def minutes_overdue(due_at: float, now_ts: float) -> int:
    """Whole minutes elapsed since due_at (negative before the due date)."""
    return math.floor((now_ts - due_at) / 60.0)
