"""
HOA Dues Engine -- Email Delivery

``EmailSender.send(OutboundEmail) -> SendResult`` is the delivery boundary.
It returns a terminal status synchronously; transport errors become a
non-success result rather than an exception so the caller decides what a
failure means.

Implementations:
    SmtpEmailSender     smtplib + STARTTLS, credentials from EmailSettings
    DryRunEmailSender   logs and records messages, always succeeds

When ``EmailSettings.test_recipient`` is set, both senders deliver to that
address instead of the real recipients.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
import uuid
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Protocol, runtime_checkable

from .config import EmailSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundEmail:
    subject: str
    html_body: str
    sender_address: str
    recipients: tuple[str, ...]
    text_body: str = ""


@dataclass(frozen=True)
class SendResult:
    succeeded: bool
    message_id: str = ""
    error: str = ""


@runtime_checkable
class EmailSender(Protocol):
    def send(self, message: OutboundEmail) -> SendResult: ...


def _effective_recipients(message: OutboundEmail, test_recipient: str) -> list[str]:
    if test_recipient:
        return [test_recipient]
    return [r for r in message.recipients if r]


def build_mime_message(
    message: OutboundEmail,
    recipients: list[str],
    sender_name: str = "",
) -> MIMEMultipart:
    """Build a multipart/alternative MIME message (plain text + HTML)."""
    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((sender_name, message.sender_address)) if sender_name else message.sender_address
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = message.subject
    msg["Date"] = formatdate(localtime=False)
    msg["Message-ID"] = make_msgid()

    if message.text_body:
        msg.attach(MIMEText(message.text_body, "plain", "utf-8"))
    msg.attach(MIMEText(message.html_body, "html", "utf-8"))
    return msg


class SmtpEmailSender:
    """Send through an SMTP relay with STARTTLS."""

    def __init__(self, settings: EmailSettings) -> None:
        self.settings = settings

    def send(self, message: OutboundEmail) -> SendResult:
        recipients = _effective_recipients(message, self.settings.test_recipient)
        if not recipients:
            return SendResult(False, error="No recipient email address")

        msg = build_mime_message(message, recipients, self.settings.sender_name)
        try:
            context = ssl.create_default_context()
            with smtplib.SMTP(
                self.settings.host, self.settings.port, timeout=self.settings.timeout_seconds,
            ) as server:
                if self.settings.use_tls:
                    server.starttls(context=context)
                if self.settings.username:
                    server.login(self.settings.username, self.settings.password)
                refused = server.sendmail(message.sender_address, recipients, msg.as_string())
        except smtplib.SMTPAuthenticationError:
            return SendResult(False, error="SMTP authentication failed; check HOA_SMTP_USERNAME/PASSWORD")
        except smtplib.SMTPRecipientsRefused as e:
            return SendResult(False, error=f"Recipients refused: {e.recipients}")
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP error sending %r: %s", message.subject, e)
            return SendResult(False, error=f"Send failed - {e}")

        if refused:
            return SendResult(False, message_id=msg["Message-ID"], error=f"Recipients refused: {refused}")

        logger.info("Sent %r to %s", message.subject, ", ".join(recipients))
        return SendResult(True, message_id=msg["Message-ID"])


@dataclass
class DryRunEmailSender:
    """Records messages instead of sending them."""

    test_recipient: str = ""
    sent: list[OutboundEmail] = field(default_factory=list)

    def send(self, message: OutboundEmail) -> SendResult:
        recipients = _effective_recipients(message, self.test_recipient)
        if not recipients:
            return SendResult(False, error="No recipient email address")
        self.sent.append(message)
        logger.info("[dry run] %r -> %s", message.subject, ", ".join(recipients))
        return SendResult(True, message_id=f"dry-run-{uuid.uuid4()}")


def sender_from_settings(settings: EmailSettings) -> EmailSender:
    if settings.dry_run:
        return DryRunEmailSender(test_recipient=settings.test_recipient)
    return SmtpEmailSender(settings)
