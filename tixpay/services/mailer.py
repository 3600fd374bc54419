# tixpay/services/mailer.py
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import List, Optional, Protocol, Sequence

from tixpay.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class Attachment:
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


class Mailer(Protocol):
    def send(self, to: str, subject: str, html: str, attachments: Sequence[Attachment] = ()) -> None: ...


def build_message(sender: str, to: str, subject: str, html: str, attachments: Sequence[Attachment]) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content("This message requires an HTML capable mail client.")
    msg.add_alternative(html, subtype="html")
    for att in attachments:
        maintype, subtype = att.mime_type.split("/", 1)
        msg.add_attachment(att.content, maintype=maintype, subtype=subtype, filename=att.filename)
    return msg


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout_secs: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.user = user
        self.password = password
        self.timeout_secs = timeout_secs

    def send(self, to: str, subject: str, html: str, attachments: Sequence[Attachment] = ()) -> None:
        msg = build_message(self.sender, to, subject, html, attachments)
        smtp_cls = smtplib.SMTP_SSL if self.port == 465 else smtplib.SMTP
        with smtp_cls(self.host, self.port, timeout=self.timeout_secs) as smtp:
            if self.port != 465:
                smtp.starttls()
            if self.user and self.password:
                smtp.login(self.user, self.password)
            smtp.send_message(msg)
        logger.info("email sent to %s: %s", to, subject)


class LogMailer:
    """Used when SMTP is not configured: messages are logged, and kept for inspection."""

    def __init__(self, sender: str = "TixPay <no-reply@tixpay.local>"):
        self.sender = sender
        self.outbox: List[EmailMessage] = []

    def send(self, to: str, subject: str, html: str, attachments: Sequence[Attachment] = ()) -> None:
        msg = build_message(self.sender, to, subject, html, attachments)
        self.outbox.append(msg)
        logger.info("email preview to=%s subject=%r attachments=%d", to, subject, len(attachments))


def mailer_from_settings(settings: Settings) -> Mailer:
    if not settings.smtp_host or not settings.smtp_port:
        logger.warning("SMTP configuration missing; emails will be logged instead of sent")
        return LogMailer(settings.smtp_from)
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        sender=settings.smtp_from,
        user=settings.smtp_user,
        password=settings.smtp_password,
        timeout_secs=settings.smtp_timeout_secs,
    )
