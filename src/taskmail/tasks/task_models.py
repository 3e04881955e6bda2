# src/taskmail/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class TaskAction(StrEnum):
    """Action recorded in the append-only task action log."""

    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"
    RESCHEDULED = "rescheduled"
    NO_ACTION = "no_action"


class ActionSource(StrEnum):
    EMAIL_REPLY = "email_reply"
    APP = "app"
    API = "api"

    @classmethod
    def from_db(cls, raw: str | None) -> ActionSource:
        if not raw:
            return cls.APP
        try:
            return cls(raw)
        except ValueError:
            return cls.APP


@dataclass(slots=True)
class Task:
    id: int
    owner_id: str
    owner_email: str | None
    owner_name: str | None

    text: str
    description: str
    completed: bool
    due_at: float | None

    created_at: float
    updated_at: float

    last_completion_email_at: float | None = None
    last_uncomplete_email_at: float | None = None

    completed_at: float | None = None
    completed_by: str | None = None
    in_progress: bool = False
    in_progress_at: float | None = None
    in_progress_by: str | None = None
    rescheduled_at: float | None = None
    rescheduled_by: str | None = None
    rescheduled_from: float | None = None


@dataclass(slots=True)
class TaskActionLog:
    id: int
    task_id: int
    action: TaskAction
    actor: str | None
    timestamp: float
    source: ActionSource
    details: dict[str, Any] = field(default_factory=dict)
