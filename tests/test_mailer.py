"""Tests for hoa_dues.mailer -- MIME building and the two senders.

Covers:
- multipart/alternative structure and headers
- Test-recipient redirection
- DryRunEmailSender recording
- SmtpEmailSender success and transport failures (smtplib replaced by a fake)
"""

import smtplib

import pytest

from hoa_dues.config import EmailSettings
from hoa_dues.mailer import (
    DryRunEmailSender,
    EmailSender,
    OutboundEmail,
    SmtpEmailSender,
    build_mime_message,
    sender_from_settings,
)


def _message(recipients=("owner@example.com",)):
    return OutboundEmail(
        subject="GRHA Dues Notice",
        html_body="<b>Total:</b> $150.00",
        text_body="Total: $150.00",
        sender_address="treasurer@example.org",
        recipients=tuple(recipients),
    )


class _FakeSMTP:
    """Stands in for smtplib.SMTP; records what would have been sent."""

    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.logged_in = None
        self.sent = []
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, username, password):
        self.logged_in = username

    def sendmail(self, from_addr, to_addrs, msg):
        if _FakeSMTP.fail_with is not None:
            raise _FakeSMTP.fail_with
        self.sent.append((from_addr, to_addrs, msg))
        return {}


@pytest.fixture
def fake_smtp(monkeypatch):
    _FakeSMTP.instances = []
    _FakeSMTP.fail_with = None
    monkeypatch.setattr("hoa_dues.mailer.smtplib.SMTP", _FakeSMTP)
    return _FakeSMTP


# ============================================================================
# MIME
# ============================================================================

class TestBuildMimeMessage:

    def test_headers_and_parts(self):
        msg = build_mime_message(_message(), ["owner@example.com"], "HOA Treasurer")
        assert msg["Subject"] == "GRHA Dues Notice"
        assert msg["To"] == "owner@example.com"
        assert "HOA Treasurer" in msg["From"]
        assert msg["Message-ID"]
        parts = msg.get_payload()
        assert [p.get_content_type() for p in parts] == ["text/plain", "text/html"]

    def test_html_only(self):
        message = OutboundEmail("s", "<p>x</p>", "from@example.org", ("to@example.org",))
        parts = build_mime_message(message, ["to@example.org"]).get_payload()
        assert [p.get_content_type() for p in parts] == ["text/html"]


# ============================================================================
# Dry run
# ============================================================================

class TestDryRunSender:

    def test_records_message(self):
        sender = DryRunEmailSender()
        assert isinstance(sender, EmailSender)
        result = sender.send(_message())
        assert result.succeeded
        assert result.message_id.startswith("dry-run-")
        assert sender.sent == [_message()]

    def test_no_recipient_fails(self):
        result = DryRunEmailSender().send(_message(recipients=()))
        assert not result.succeeded
        assert "No recipient" in result.error

    def test_test_recipient_allows_send(self):
        result = DryRunEmailSender(test_recipient="qa@example.org").send(_message(recipients=()))
        assert result.succeeded


# ============================================================================
# SMTP
# ============================================================================

class TestSmtpSender:

    def test_success(self, fake_smtp):
        settings = EmailSettings(username="mailer", password="pw", use_tls=True)
        result = SmtpEmailSender(settings).send(_message())

        assert result.succeeded
        assert result.message_id
        server = fake_smtp.instances[0]
        assert server.logged_in == "mailer"
        assert server.sent[0][1] == ["owner@example.com"]

    def test_test_recipient_redirects(self, fake_smtp):
        settings = EmailSettings(test_recipient="qa@example.org")
        SmtpEmailSender(settings).send(_message())
        assert fake_smtp.instances[0].sent[0][1] == ["qa@example.org"]

    @pytest.mark.parametrize("error,fragment", [
        (smtplib.SMTPAuthenticationError(535, b"bad credentials"), "authentication"),
        (smtplib.SMTPRecipientsRefused({"owner@example.com": (550, b"no such user")}), "refused"),
        (smtplib.SMTPServerDisconnected("gone"), "Send failed"),
        (OSError("network unreachable"), "Send failed"),
    ])
    def test_transport_errors_become_failed_results(self, fake_smtp, error, fragment):
        fake_smtp.fail_with = error
        result = SmtpEmailSender(EmailSettings()).send(_message())
        assert not result.succeeded
        assert fragment in result.error

    def test_no_recipient(self, fake_smtp):
        result = SmtpEmailSender(EmailSettings()).send(_message(recipients=()))
        assert not result.succeeded
        assert fake_smtp.instances == []


class TestSenderFromSettings:

    def test_dry_run(self):
        sender = sender_from_settings(EmailSettings(dry_run=True, test_recipient="qa@example.org"))
        assert isinstance(sender, DryRunEmailSender)
        assert sender.test_recipient == "qa@example.org"

    def test_smtp(self):
        assert isinstance(sender_from_settings(EmailSettings()), SmtpEmailSender)
