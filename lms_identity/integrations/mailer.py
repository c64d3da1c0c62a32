"""Outbound email over SMTP."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from ..domain.errors import EmailDeliveryError

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html_body: str) -> None: ...


class SmtpEmailSender:
    """Send HTML email through a single SMTP relay, one connection per message."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        from_email: str,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout_seconds: int = 30,
    ) -> None:
        self._host = host
        self._port = port
        self._from_email = from_email
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._timeout = timeout_seconds

    def _build_message(self, to: str, subject: str, html_body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._from_email
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable email client.")
        message.add_alternative(html_body, subtype="html")
        return message

    def send(self, to: str, subject: str, html_body: str) -> None:
        message = self._build_message(to, subject, html_body)
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as conn:
                if self._use_tls:
                    conn.starttls()
                if self._username:
                    conn.login(self._username, self._password)
                conn.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("failed to send %r to %s: %s", subject, to, exc)
            raise EmailDeliveryError(str(exc)) from exc
        logger.info("sent %r to %s", subject, to)
