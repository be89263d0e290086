"""Outbound email, used for password reset delivery."""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from config import Settings, get_settings

logger = logging.getLogger(__name__)


class MailerError(Exception):
    pass


class Mailer(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None:
        ...


class SmtpMailer:
    def __init__(self, settings: Settings):
        self.settings = settings

    async def send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.settings.smtp_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise MailerError(f"Could not send email to {to}: {e}") from e
        logger.info(f"Sent '{subject}' email to {to}")

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=10) as smtp:
            if self.settings.smtp_user:
                smtp.starttls()
                smtp.login(self.settings.smtp_user, self.settings.smtp_password)
            smtp.send_message(message)


def get_mailer() -> Mailer:
    """Dependency for endpoints that may send email."""
    return SmtpMailer(get_settings())
