# src/taskmail/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete stores and the mail transport into AppState.
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.ports import Mailer
from ..core.state import AppState
from ..mail.transport import OfflineMailer, SmtpMailer
from ..reminders.reminder_store import ReminderStore
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)


def create_mailer(settings) -> Mailer:
    try:
        return SmtpMailer(settings)
    except ValueError as e:
        # Fallback for demos / local runs without an SMTP server.
        logger.warning("%s; using the offline mailer (mails are only logged)", e)
        return OfflineMailer()


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    If settings is None, falls back to get_settings(). Both stores share one
    SQLite file.
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    return AppState(
        settings=settings,
        task_store=TaskStore(settings.db_path),
        reminder_store=ReminderStore(settings.db_path),
        mailer=create_mailer(settings),
    )
