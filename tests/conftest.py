# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from taskmail.core.state import AppState
from taskmail.reminders.reminder_store import ReminderStore
from taskmail.tasks.task_store import TaskStore

from .fakes import FakeMailer


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and core modules.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="taskmail",
        timezone="UTC",
        # Paths (tmp per test run)
        data_dir=tmp_path,
        db_path=tmp_path / "taskmail.sqlite3",
        # Mail
        mail_from="taskmail@example.com",
        reply_domain="example.com",
        base_url="https://tasks.example.com",
        smtp_host="",
        mail_retry_delay_seconds=0.0,
        completion_cc=[],
        # Sweep tuning
        sweep_interval_seconds=60.0,
        sweep_batch_limit=200,
        overdue_cooldown_minutes=30,
        reschedule_alert_minutes=10,
        claim_lease_seconds=300.0,
        retention_days=7,
        cron_secret=None,
    )


@pytest.fixture()
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture()
def state(settings: SimpleNamespace, mailer: FakeMailer) -> AppState:
    """
    AppState wired with a fake mailer.

    NOTE: We keep real SQLite stores here because their conditional updates
    are what makes the sweep safe, so they are part of what we test.
    """
    return AppState(
        settings=settings,
        task_store=TaskStore(settings.db_path),
        reminder_store=ReminderStore(settings.db_path),
        mailer=mailer,
    )
