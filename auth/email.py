"""
auth/email.py -- Outbound email for recovery links.

AuthService depends on the EmailSender protocol, not on a transport. Two
implementations ship:

  SmtpEmailSender -- smtplib with STARTTLS (or implicit TLS when
                     SMTP_USE_TLS=false). Raises on delivery failure; the
                     service logs and carries on.
  LogEmailSender  -- used when SMTP_HOST is unset. Logs that a message would
                     have been sent. The link itself is not logged because it
                     carries a live token; use `python main.py reset-link` to
                     get one in development.

Recipient addresses are redacted in every log line.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol
from urllib.parse import urlencode

logger = logging.getLogger("authkeeper.auth.email")


def redact_email(email: str) -> str:
    """Return a log-safe form of an address: 'jo***@example.com'."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailSender(Protocol):
    def send_password_reset(self, to_email: str, name: str, token: str) -> None: ...

    def send_email_verification(self, to_email: str, name: str, token: str) -> None: ...


def _link(base_url: str, path: str, token: str) -> str:
    return f"{base_url.rstrip('/')}{path}?{urlencode({'token': token})}"


class LogEmailSender:
    """Development sender: records the intent in the log, delivers nothing."""

    def send_password_reset(self, to_email: str, name: str, token: str) -> None:
        logger.info("Password reset email for %s (not sent: SMTP_HOST unset)", redact_email(to_email))

    def send_email_verification(self, to_email: str, name: str, token: str) -> None:
        logger.info("Verification email for %s (not sent: SMTP_HOST unset)", redact_email(to_email))


class SmtpEmailSender:
    """SMTP transport for password reset and verification links."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str = "no-reply@localhost",
        base_url: str = "http://localhost:8000",
        timeout: int = 30,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email
        self.base_url = base_url
        self.timeout = timeout

    def _build(self, to_email: str, subject: str, text_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        return msg

    def _send(self, to_email: str, subject: str, text_body: str) -> None:
        msg = self._build(to_email, subject, text_body)
        context = ssl.create_default_context()
        if self.use_tls:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        logger.info("Sent '%s' to %s", subject, redact_email(to_email))

    def send_password_reset(self, to_email: str, name: str, token: str) -> None:
        link = _link(self.base_url, "/reset-password", token)
        body = (
            f"Hello {name or 'there'},\n\n"
            "Someone asked to reset the password for this account. If it was you,\n"
            f"open the link below to choose a new password:\n\n{link}\n\n"
            "The link works once and expires soon. If you did not ask for\n"
            "a reset you can ignore this message.\n"
        )
        self._send(to_email, "Reset your password", body)

    def send_email_verification(self, to_email: str, name: str, token: str) -> None:
        link = _link(self.base_url, "/verify-email", token)
        body = (
            f"Hello {name or 'there'},\n\n"
            f"Confirm your email address by opening the link below:\n\n{link}\n\n"
            "The link works once and expires soon.\n"
        )
        self._send(to_email, "Verify your email address", body)


def build_email_sender(settings) -> EmailSender:
    """Pick the transport from Settings: SMTP when SMTP_HOST is set, log otherwise."""
    if not settings.smtp_host:
        return LogEmailSender()
    return SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        from_email=settings.mail_from,
        base_url=settings.app_url,
    )
