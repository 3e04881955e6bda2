# src/taskmail/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps the mail transport and the stores swappable and makes testing easier.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Awaitable, Protocol


@dataclass(slots=True, frozen=True)
class OutboundEmail:
    """What the core wants delivered; rendering is done before this point."""

    to: tuple[str, ...]
    subject: str
    html_body: str
    text_body: str
    reply_to: str | None = None


class Mailer(Protocol):
    """
    Outbound mail transport.

    Returns a delivery identifier. Raises TransientMailError for failures worth
    one retry and MailDeliveryError for anything permanent.
    """

    def send(self, message: OutboundEmail) -> Awaitable[str]: ...


class TaskRepo(Protocol):
    def get_task(self, task_id: int) -> Any | None: ...

    def add_task(
            self,
            *,
            owner_id: str,
            text: str,
            owner_email: str | None = None,
            owner_name: str | None = None,
            description: str = "",
            due_at: float | None = None,
            completed: bool = False,
            now_ts: float | None = None,
    ) -> int: ...

    def list_overdue_tasks(
            self, *, now_ts: float, limit: int = 200, after: tuple[float, int] | None = None
    ) -> list[Any]: ...
    def list_tasks_for_owner(
            self, owner_id: str, *, completed: bool | None = None, limit: int = 100
    ) -> list[Any]: ...

    def update_task_fields(
            self, task_id: int, *, now_ts: float | None = None, touch: bool = True, **changes: Any
    ) -> bool: ...

    def stamp_email_sent(self, task_id: int, field: str, value: float) -> bool: ...

    # Append-only action log
    def append_action(
            self,
            task_id: int,
            action: Any,
            *,
            actor: str | None,
            source: Any,
            details: dict[str, Any] | None = None,
            now_ts: float | None = None,
    ) -> int: ...

    def list_actions(self, task_id: int) -> list[Any]: ...


class ReminderRepo(Protocol):
    def add_instances(
            self,
            *,
            task_id: int,
            owner_id: str | None,
            due_at: float,
            candidates: Iterable[tuple[Any, float]],
            now_ts: float,
    ) -> list[Any]: ...

    def list_due_instances(self, *, now_ts: float, limit: int = 200) -> list[Any]: ...
    def list_instances_for_task(self, task_id: int) -> list[Any]: ...
    def cancel_pending_for_task(self, task_id: int, *, now_ts: float | None = None) -> int: ...
    def cancel_instance(self, instance_id: int, *, now_ts: float | None = None) -> bool: ...

    # Send lease + guarded transition
    def try_claim_instance(
            self, instance_id: int, *, token: str, now_ts: float, lease_seconds: float
    ) -> bool: ...
    def mark_sent(self, instance_id: int, *, token: str, now_ts: float) -> bool: ...
    def release_claim(self, instance_id: int, *, token: str) -> None: ...

    # Overdue cooldown records
    def try_record_overdue(
            self,
            task_id: int,
            tier: Any,
            *,
            minutes_overdue: int,
            now_ts: float,
            cooldown_seconds: float,
    ) -> int | None: ...
    def delete_overdue_record(self, record_id: int) -> None: ...
    def list_overdue_records(self, task_id: int) -> Sequence[Any]: ...

    def prune(self, *, older_than_ts: float) -> tuple[int, int]: ...
