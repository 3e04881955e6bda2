# src/taskmail/web/app.py

"""
HTTP boundary (Flask).

Thin routes: decode JSON, call one task/reminder operation, encode the result.
Known TaskMailError subclasses map to their code/status; anything else in the
webhook becomes processing-failure (500).
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Any

from flask import Blueprint, Flask, current_app, jsonify, request

from ..core.state import AppState
from ..errors import InvalidRequest, MissingTaskReference, TaskMailError
from ..mail.dispatcher import handle_inbound_email
from ..mail.messages import display_zone
from ..notifications.completion import Actor, notify_completion_change
from ..reminders.reminder_scheduler import schedule_reminders
from ..reminders.sweep import run_sweep
from ..tasks import task_api
from ..tasks.task_models import ActionSource, Task

logger = logging.getLogger(__name__)

api_bp = Blueprint("taskmail_api", __name__, url_prefix="/api")


def _state() -> AppState:
    return current_app.extensions["taskmail"]


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _task_id(data: dict[str, Any]) -> str:
    raw = data.get("taskId")
    if raw is None or str(raw).strip() == "":
        raise MissingTaskReference()
    return str(raw).strip()


def parse_instant(value: Any, tz_name: str | None = None) -> float | None:
    """
    Accept an ISO-8601 string or a POSIX timestamp (seconds or milliseconds).

    Naive ISO strings are read in the display timezone. None stays None.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidRequest("dueDate must be a date string or a timestamp")
    if isinstance(value, (int, float)):
        ts = float(value)
        return ts / 1000.0 if ts > 1e11 else ts
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidRequest(f"unrecognised date: {text!r}") from None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=display_zone(tz_name))
        return dt.timestamp()
    raise InvalidRequest("dueDate must be a date string or a timestamp")


def _error_response(e: TaskMailError):
    return jsonify({"success": False, "error": str(e), "code": e.code}), e.status


@api_bp.errorhandler(TaskMailError)
def handle_taskmail_error(e: TaskMailError):
    logger.info("Request failed code=%s: %s", e.code, e)
    return _error_response(e)


@api_bp.route("/email-webhook", methods=["POST"])
async def email_webhook():
    data = _json_body()
    try:
        command, result = await handle_inbound_email(_state(), data)
    except TaskMailError:
        raise
    except Exception as e:
        logger.exception("Email webhook processing failed")
        return jsonify({"success": False, "error": str(e), "code": "processing-failure"}), 500

    return jsonify(
        {
            "success": result.success,
            "action": command.action.value,
            "taskId": result.task_id,
            "result": result.to_dict(),
        }
    )


def _cron_authorized() -> bool:
    secret = getattr(_state().settings, "cron_secret", None)
    if not secret:
        return True
    header = request.headers.get("Authorization", "")
    return hmac.compare_digest(header, f"Bearer {secret}")


@api_bp.route("/cron/sweep", methods=["POST"])
async def cron_sweep():
    if not _cron_authorized():
        return jsonify({"success": False, "error": "unauthorized", "code": "unauthorized"}), 401

    result = await run_sweep(_state())
    return jsonify({"success": True, **result.to_dict()})


def _instances_json(task: Task, instances) -> dict[str, Any]:
    return {
        "success": True,
        "taskId": task.id,
        "scheduled": len(instances),
        "instances": [
            {"id": i.id, "kind": i.kind.value, "scheduledFor": i.scheduled_for} for i in instances
        ],
    }


@api_bp.route("/schedule-notifications", methods=["POST"])
def schedule_notifications():
    state = _state()
    task = task_api.get_task_or_raise(state, _task_id(_json_body()))
    instances = schedule_reminders(state.reminder_store, task)
    return jsonify(_instances_json(task, instances))


@api_bp.route("/smart-update-notifications", methods=["POST"])
async def smart_update_notifications():
    state = _state()
    data = _json_body()
    task_id = _task_id(data)
    if "dueDate" not in data:
        raise InvalidRequest("dueDate is required (null clears it)")
    new_due_at = parse_instant(data.get("dueDate"), getattr(state.settings, "timezone", None))

    actor_id = data.get("userId")
    task, outcome = await task_api.update_task_due_date(
        state,
        task_id,
        new_due_at,
        actor=Actor(id=str(actor_id)) if actor_id else None,
        source=ActionSource.API,
    )
    body = _instances_json(task, outcome.scheduled)
    body.update({"cancelled": outcome.cancelled, "alertSent": outcome.alert_sent})
    return jsonify(body)


@api_bp.route("/cancel-notifications", methods=["POST"])
def cancel_notifications():
    state = _state()
    task_id = _task_id(_json_body())
    try:
        tid = int(task_id)
    except ValueError:
        raise InvalidRequest(f"invalid taskId: {task_id!r}") from None
    cancelled = state.reminder_store.cancel_pending_for_task(tid)
    return jsonify({"success": True, "taskId": tid, "cancelled": cancelled})


def _actor_for(task: Task, user_id: str | None) -> Actor:
    if user_id and user_id == task.owner_id:
        return Actor(id=user_id, display_name=task.owner_name, email=task.owner_email)
    return Actor(id=user_id)


@api_bp.route("/tasks/complete-email", methods=["POST"])
async def complete_email():
    state = _state()
    data = _json_body()
    task = task_api.get_task_or_raise(state, _task_id(data))
    if "completed" not in data:
        raise InvalidRequest("completed is required")
    completed = bool(data.get("completed"))

    user_id = str(data["userId"]) if data.get("userId") else None
    actor = _actor_for(task, user_id)
    await task_api.set_task_completed(
        state, task.id, completed, actor=actor, source=ActionSource.API, notify=False
    )
    notice = await notify_completion_change(state, task.id, completed, actor=actor)
    return jsonify(
        {
            "success": True,
            "taskId": task.id,
            "emailSent": notice.sent,
            "recipients": notice.recipients,
            "skippedReason": notice.skipped_reason,
        }
    )


def create_app(state: AppState) -> Flask:
    app = Flask(__name__)
    app.extensions["taskmail"] = state
    app.register_blueprint(api_bp)

    @app.get("/healthz")
    def healthz():
        return jsonify({"status": "ok"})

    logger.info("Flask app created")
    return app
