# src/taskmail/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Every tunable of the reminder pipeline lives here, nowhere else.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TASKMAIL"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str
    timezone: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path

    # ---- Outbound mail ----
    mail_from: str
    reply_domain: str
    base_url: str
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    smtp_starttls: bool
    smtp_use_tls: bool
    smtp_timeout: float
    mail_retry_delay_seconds: float
    completion_cc: list[str]

    # ---- Sweep tuning ----
    sweep_interval_seconds: float
    sweep_batch_limit: int
    overdue_cooldown_minutes: int
    reschedule_alert_minutes: int
    claim_lease_seconds: float
    retention_days: int

    # ---- HTTP boundary ----
    http_host: str
    http_port: int
    cron_secret: str | None

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskmail")
        log_level = _env(_k("LOG_LEVEL"), "INFO")
        timezone = _env(_k("TIMEZONE"), "UTC")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskmail"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "taskmail.sqlite3")

        smtp_host = (_first_env(_k("SMTP_HOST"), "SMTP_HOST", default="") or "").strip()
        smtp_user = (_first_env(_k("SMTP_USER"), "SMTP_USER", default="") or "").strip()
        smtp_password = _first_env(_k("SMTP_PASSWORD"), "SMTP_PASS", default="") or ""
        smtp_use_tls = _env_bool(_k("SMTP_USE_TLS"), False)
        smtp_port = _env_int(_k("SMTP_PORT"), 465 if smtp_use_tls else 587)

        # Replies must land on a mailbox whose provider forwards to /api/email-webhook.
        mail_from = _env(_k("MAIL_FROM"), smtp_user or "taskmail@localhost")
        reply_domain = _env(_k("REPLY_DOMAIN"), mail_from.partition("@")[2] or "localhost")

        cron_secret = _first_env(_k("CRON_SECRET"), "CRON_SECRET", default=None)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            timezone=timezone,
            data_dir=data_dir,
            db_path=db_path,
            mail_from=mail_from,
            reply_domain=reply_domain,
            base_url=_env(_k("BASE_URL"), "http://localhost:8080"),
            smtp_host=smtp_host,
            smtp_port=smtp_port,
            smtp_user=smtp_user,
            smtp_password=smtp_password,
            smtp_starttls=_env_bool(_k("SMTP_STARTTLS"), not smtp_use_tls),
            smtp_use_tls=smtp_use_tls,
            smtp_timeout=_env_float(_k("SMTP_TIMEOUT"), 30.0),
            mail_retry_delay_seconds=_env_float(_k("MAIL_RETRY_DELAY_SECONDS"), 2.0),
            completion_cc=_env_list(_k("COMPLETION_CC"), []),
            sweep_interval_seconds=_env_float(_k("SWEEP_INTERVAL_SECONDS"), 60.0),
            sweep_batch_limit=_env_int(_k("SWEEP_BATCH_LIMIT"), 200),
            overdue_cooldown_minutes=_env_int(_k("OVERDUE_COOLDOWN_MINUTES"), 30),
            reschedule_alert_minutes=_env_int(_k("RESCHEDULE_ALERT_MINUTES"), 10),
            claim_lease_seconds=_env_float(_k("CLAIM_LEASE_SECONDS"), 300.0),
            retention_days=_env_int(_k("RETENTION_DAYS"), 7),
            http_host=_env(_k("HTTP_HOST"), "127.0.0.1"),
            http_port=_env_int(_k("HTTP_PORT"), 8080),
            cron_secret=cron_secret,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
