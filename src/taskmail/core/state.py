# src/taskmail/core/state.py

from __future__ import annotations

from dataclasses import dataclass

from .ports import Mailer, ReminderRepo, TaskRepo


@dataclass
class AppState:
    """Everything a request handler or a sweep needs, wired once in bootstrap."""

    # Store Settings on the state for easy access in other modules later.
    settings: object

    task_store: TaskRepo
    reminder_store: ReminderRepo
    mailer: Mailer
