# src/taskmail/mail/transport.py

"""
Mail transport implementations of the Mailer port.

- SmtpMailer: aiosmtplib, classifies failures into transient / permanent
- OfflineMailer: logs and keeps the last messages in memory; used when no SMTP
  host is configured so the sweep and the webhook still run end-to-end
- send_with_retry: the single retry policy for every outbound mail
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

import aiosmtplib

from ..core.ports import Mailer, OutboundEmail
from ..errors import MailDeliveryError, TransientMailError

logger = logging.getLogger(__name__)


def build_mime(message: OutboundEmail, *, mail_from: str, app_name: str, domain: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = f'"{app_name}" <{mail_from}>'
    msg["To"] = ", ".join(message.to)
    msg["Subject"] = message.subject
    msg["Date"] = formatdate(localtime=False)
    msg["Message-ID"] = make_msgid(domain=domain)
    if message.reply_to:
        msg["Reply-To"] = message.reply_to
    msg.set_content(message.text_body)
    msg.add_alternative(message.html_body, subtype="html")
    return msg


class SmtpMailer:
    """Async SMTP delivery. Raises TransientMailError / MailDeliveryError."""

    def __init__(self, settings) -> None:
        host = getattr(settings, "smtp_host", "")
        if not host:
            raise ValueError("SMTP host is not configured")

        self._host: str = host
        self._port: int = int(getattr(settings, "smtp_port", 587))
        self._username: str | None = getattr(settings, "smtp_user", "") or None
        self._password: str | None = getattr(settings, "smtp_password", "") or None
        self._use_tls: bool = bool(getattr(settings, "smtp_use_tls", False))
        self._start_tls: bool = bool(getattr(settings, "smtp_starttls", True)) and not self._use_tls
        self._timeout: float = float(getattr(settings, "smtp_timeout", 30.0))
        self._mail_from: str = getattr(settings, "mail_from", "taskmail@localhost")
        self._app_name: str = getattr(settings, "app_name", "taskmail")
        self._domain: str = self._mail_from.partition("@")[2] or "localhost"

    async def send(self, message: OutboundEmail) -> str:
        if not message.to:
            raise MailDeliveryError("message has no recipients")

        mime = build_mime(
            message, mail_from=self._mail_from, app_name=self._app_name, domain=self._domain
        )
        message_id = str(mime["Message-ID"])

        try:
            await aiosmtplib.send(
                mime,
                hostname=self._host,
                port=self._port,
                username=self._username,
                password=self._password,
                use_tls=self._use_tls,
                start_tls=self._start_tls,
                timeout=self._timeout,
            )
        except (
            aiosmtplib.SMTPConnectError,
            aiosmtplib.SMTPServerDisconnected,
            aiosmtplib.SMTPTimeoutError,
        ) as e:
            raise TransientMailError(f"SMTP connection problem: {e}") from e
        except aiosmtplib.SMTPResponseException as e:
            if 400 <= e.code < 500:
                raise TransientMailError(f"SMTP temporary failure {e.code}: {e.message}") from e
            raise MailDeliveryError(f"SMTP rejected message {e.code}: {e.message}") from e
        except aiosmtplib.SMTPException as e:
            raise MailDeliveryError(f"SMTP error: {e}") from e
        except OSError as e:
            raise TransientMailError(f"Network error: {e}") from e

        logger.info("Mail sent id=%s to=%s subject=%r", message_id, ",".join(message.to), message.subject)
        return message_id


class OfflineMailer:
    """
    Offline mailer used for demos and local runs when no SMTP server is configured.

    Messages are logged (subject + recipients at INFO, body at DEBUG) and the
    most recent ones are kept in `outbox`.
    """

    def __init__(self, *, keep: int = 100) -> None:
        self.outbox: deque[OutboundEmail] = deque(maxlen=keep)

    async def send(self, message: OutboundEmail) -> str:
        delivery_id = f"offline-{uuid.uuid4().hex[:12]}"
        self.outbox.append(message)
        logger.info(
            "[offline mail] id=%s to=%s subject=%r", delivery_id, ",".join(message.to), message.subject
        )
        logger.debug("[offline mail] body:\n%s", message.text_body)
        return delivery_id


async def send_with_retry(
    mailer: Mailer,
    message: OutboundEmail,
    *,
    delay_seconds: float = 0.0,
) -> str:
    """
    Send once, retry once on TransientMailError, then give up.

    A second transient failure propagates as is; TransientMailError is a
    MailDeliveryError, so callers handle both with one except clause.

    Permanent errors are raised immediately. Callers decide whether the final
    failure is fatal (single-item requests) or just logged (batch sweeps).
    """
    try:
        return await mailer.send(message)
    except TransientMailError as e:
        logger.warning("Transient mail failure to=%s (%s); retrying once", ",".join(message.to), e)

    if delay_seconds > 0:
        await asyncio.sleep(delay_seconds)
    return await mailer.send(message)
