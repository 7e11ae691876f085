import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid

from .. import config
from .base import EMAIL_OUTBOX, NotificationError


@dataclass
class EmailResult:
    message_id: str


class SmtpEmailSender:
    """Email channel backed by an SMTP relay."""

    def __init__(self, server=None, port=None, from_addr=None, timeout=None):
        self.server = server if server is not None else os.getenv("SMTP_SERVER")
        self.port = int(port or os.getenv("SMTP_PORT", "25"))
        self.from_addr = from_addr or os.getenv("EMAIL_FROM", "CircleWatch <noreply@example.com>")
        self.timeout = timeout or config.NOTIFICATION_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return config.testing() or bool(self.server)

    def send(self, to_address: str, template_params: dict) -> EmailResult:
        subject = template_params["subject"]
        body = template_params["body"]
        message_id = make_msgid(domain="circlewatch")
        if config.testing():
            EMAIL_OUTBOX.append((to_address, subject, body))
            return EmailResult(message_id=message_id)
        if not self.server:
            raise NotificationError("SMTP server not configured")
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_addr
        msg["To"] = to_address
        msg["Message-ID"] = message_id
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as s:
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Failed to send email: {exc}") from exc
        return EmailResult(message_id=message_id)
