"""Tests for the SMTP email service and message builders."""

import smtplib

import pytest

from gatekeep.config import Settings
from gatekeep.service import email as email_module
from gatekeep.service.email import (
    EmailService,
    invitation_message,
    password_reset_message,
    redact_address,
    verification_message,
    welcome_message,
)


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to, message):
        self.sent.append((from_addr, to, message))


class RefusingSMTP(FakeSMTP):
    def sendmail(self, from_addr, to, message):
        raise smtplib.SMTPRecipientsRefused({to: (550, b"no such user")})


@pytest.fixture(autouse=True)
def reset_instances():
    FakeSMTP.instances = []


@pytest.fixture
def service():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
    )


class TestEmailService:
    def test_unconfigured_service_logs_instead(self, monkeypatch):
        monkeypatch.setattr(email_module.smtplib, "SMTP", pytest.fail)
        service = EmailService.from_settings(Settings())

        assert not service.is_configured
        assert service.send("ada@example.com", "Hi", "body") is True

    def test_sends_over_starttls(self, service, monkeypatch):
        monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)

        assert service.send("ada@example.com", "Hi", "plain", "<p>html</p>") is True

        smtp = FakeSMTP.instances[0]
        assert smtp.started_tls
        assert smtp.logged_in == ("mailer", "pw")
        from_addr, to, message = smtp.sent[0]
        assert from_addr == "noreply@example.com"
        assert to == "ada@example.com"
        assert "Subject: Hi" in message
        assert "Gatekeep <noreply@example.com>" in message

    def test_refused_recipient_returns_false(self, service, monkeypatch):
        monkeypatch.setattr(email_module.smtplib, "SMTP", RefusingSMTP)

        assert service.send("ghost@example.com", "Hi", "body") is False

    def test_connection_error_returns_false(self, service, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("connection refused")

        monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)

        assert service.send("ada@example.com", "Hi", "body") is False


class TestMessages:
    def test_invitation_link(self):
        subject, body, html = invitation_message("https://app.example.com", "abc123", "Ada")

        assert "https://app.example.com/invitations/accept?token=abc123" in body
        assert body.startswith("Ada has invited you")
        assert "abc123" in html

    def test_reset_mentions_validity(self):
        _, body, _ = password_reset_message("https://app.example.com", "tok", 30)

        assert "30 minutes" in body
        assert "https://app.example.com/password/reset?token=tok" in body

    def test_verification_link(self):
        subject, body, _ = verification_message("https://app.example.com", "tok", 24)

        assert subject == "Confirm your email address"
        assert "24 hours" in body
        assert "https://app.example.com/email/verify?token=tok" in body

    def test_html_is_escaped(self):
        _, _, html = welcome_message("<script>")

        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_redact_address(self):
        assert redact_address("ada.lovelace@example.com") == "ad***@example.com"
        assert redact_address("nonsense") == "redacted"
