from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional, Protocol

from gatekeep.config import Settings
from gatekeep.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    def send(
        self, to: str, subject: str, body: str, html_body: Optional[str] = None
    ) -> bool:
        """Deliver one message; return False instead of raising on failure."""
        ...


def redact_address(address: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in address:
        return "redacted"
    local, domain = address.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _html(paragraphs: list[str], link: Optional[str] = None, label: str = "") -> str:
    parts = [f"<p>{escape(p)}</p>" for p in paragraphs]
    if link:
        parts.append(f'<p><a href="{escape(link, quote=True)}">{escape(label or link)}</a></p>')
    return "<!DOCTYPE html><html><body>" + "".join(parts) + "</body></html>"


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Invitation, password reset, password changed and welcome emails
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Gatekeep",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(
        self, to: str, subject: str, body: str, html_body: Optional[str] = None
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_address(to),
                subject=subject,
                body_preview=body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to
            msg.attach(MIMEText(body, "plain"))
            if html_body:
                msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_address(to),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())

            logger.info("email_sent", to=redact_address(to), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_address(to),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_address(to),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_address(to),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_address(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


def invitation_message(base_url: str, token: str, inviter: Optional[str] = None) -> tuple[str, str, str]:
    link = f"{base_url}/invitations/accept?token={token}"
    intro = f"{inviter} has invited you to join." if inviter else "You have been invited to join."
    lines = [intro, "Use the link below to set your password and activate your account.", link]
    return (
        "You're invited",
        "\n\n".join(lines),
        _html(lines[:2], link, "Accept invitation"),
    )


def password_reset_message(base_url: str, token: str, ttl_minutes: int) -> tuple[str, str, str]:
    link = f"{base_url}/password/reset?token={token}"
    lines = [
        "We received a request to reset your password.",
        f"The link below is valid for {ttl_minutes} minutes and can be used once.",
        "If you did not ask for this you can ignore this email.",
    ]
    return (
        "Reset your password",
        "\n\n".join(lines + [link]),
        _html(lines, link, "Reset password"),
    )


def password_changed_message() -> tuple[str, str, str]:
    lines = [
        "Your password was just changed and every open session was signed out.",
        "If this wasn't you, contact your administrator immediately.",
    ]
    return "Your password was changed", "\n\n".join(lines), _html(lines)


def welcome_message(name: Optional[str]) -> tuple[str, str, str]:
    lines = [f"Welcome{', ' + name if name else ''}!", "Your account is now active."]
    return "Welcome aboard", "\n\n".join(lines), _html(lines)


def verification_message(base_url: str, token: str, ttl_hours: int) -> tuple[str, str, str]:
    link = f"{base_url}/email/verify?token={token}"
    lines = [
        "Thanks for signing up.",
        f"Confirm your email address within {ttl_hours} hours to activate your account.",
    ]
    return (
        "Confirm your email address",
        "\n\n".join(lines + [link]),
        _html(lines, link, "Confirm email"),
    )
