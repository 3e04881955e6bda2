# src/taskmail/errors.py

"""
Error taxonomy.

- identification errors: the reply carries no task reference, or the
  referenced task does not exist (map to 400 / 404 at the HTTP boundary)
- parse errors: a reschedule was requested but its time could not be resolved
- delivery errors: the mail transport failed (transient or permanent)

Race outcomes (a lost conditional update) are not errors and have no class here.
"""

from __future__ import annotations


class TaskMailError(Exception):
    code = "processing-failure"
    status = 500


class MissingTaskReference(TaskMailError):
    code = "missing-task-reference"
    status = 400

    def __init__(self, message: str = "missing task reference") -> None:
        super().__init__(message)


class TaskNotFound(TaskMailError):
    code = "task-not-found"
    status = 404

    def __init__(self, task_id: object) -> None:
        super().__init__(f"task not found: {task_id}")
        self.task_id = task_id


class InvalidRescheduleTime(TaskMailError):
    code = "invalid-reschedule-time"
    status = 422

    def __init__(self, expression: str | None) -> None:
        super().__init__("invalid reschedule time")
        self.expression = expression


class MailDeliveryError(TaskMailError):
    """Permanent transport failure (rejected recipient, auth failure...)."""


class TransientMailError(MailDeliveryError):
    """Transport failure worth one retry (connection drop, 4xx reply, timeout)."""


class InvalidRequest(TaskMailError):
    """Malformed HTTP payload (missing or badly typed field)."""

    code = "invalid-request"
    status = 400
