"""Admin notifications (email)."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from .config import Settings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send_once(self, subject: str, body: str) -> bool:
        """Deliver a message. Returns False if the channel is not configured.

        Raises on delivery failure so callers can retry later.
        """
        ...


class EmailNotifier:
    """Sends admin email over SMTP with STARTTLS."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str | None,
        password: str | None,
        recipient: str | None,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.recipient = recipient or user
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> EmailNotifier:
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            recipient=settings.admin_email,
        )

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password and self.recipient)

    def send_once(self, subject: str, body: str) -> bool:
        if not self.configured:
            logger.warning(
                f"Cannot send '{subject}': SMTP user/password/admin email not configured"
            )
            return False

        message = EmailMessage()
        message["From"] = self.user
        message["To"] = self.recipient
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            smtp.login(self.user, self.password)
            smtp.send_message(message)

        logger.info(f"Notification '{subject}' sent to {self.recipient}")
        return True
