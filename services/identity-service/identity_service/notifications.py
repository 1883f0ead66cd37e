"""Outbound notifications carrying verification and password-reset links."""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .config import Settings

logger = logging.getLogger(__name__)

VERIFICATION_SUBJECT = "Confirma tu correo electrónico"
PASSWORD_RESET_SUBJECT = "Restablece tu contraseña"


class NotificationSink(Protocol):
    def send_verification_email(self, to_email: str, name: str, link: str) -> None: ...

    def send_password_reset_email(self, to_email: str, name: str, link: str) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def redact_link(link: str) -> str:
    """Keep only a short prefix of the token in a link so logs cannot replay it."""
    parts = urlsplit(link)
    query = [
        (key, f"{value[:6]}***" if key == "token" else value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query, safe="*")))


def _verification_body(name: str, link: str) -> tuple[str, str]:
    text = f"Hola {name}, confirma tu correo electrónico en el siguiente enlace: {link}"
    safe_name, safe_link = html.escape(name), html.escape(link)
    markup = f"<p>Hola {safe_name},</p><p>Confirma tu correo electrónico: <a href=\"{safe_link}\">{safe_link}</a></p>"
    return text, markup


def _password_reset_body(name: str, link: str) -> tuple[str, str]:
    text = f"Hola {name}, restablece tu contraseña en el siguiente enlace: {link}"
    safe_name, safe_link = html.escape(name), html.escape(link)
    markup = f"<p>Hola {safe_name},</p><p>Restablece tu contraseña: <a href=\"{safe_link}\">{safe_link}</a></p>"
    return text, markup


class LoggingNotificationSink:
    """Development sink that records notifications in the log instead of sending them."""

    def send_verification_email(self, to_email: str, name: str, link: str) -> None:
        logger.info("verification email for %s: %s", redact_email(to_email), redact_link(link))

    def send_password_reset_email(self, to_email: str, name: str, link: str) -> None:
        logger.info("password reset email for %s: %s", redact_email(to_email), redact_link(link))


class SmtpNotificationSink:
    """Sends transactional email over SMTP with STARTTLS or implicit TLS.

    Delivery errors propagate; callers treat delivery as best-effort.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        from_email: str | None = None,
        from_name: str = "Identity Service",
        timeout: float = 30.0,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._use_tls = use_tls
        self._from_email = from_email or user or ""
        self._from_name = from_name
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpNotificationSink":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user or None,
            password=settings.smtp_password or None,
            use_tls=settings.smtp_use_tls,
            from_email=settings.mail_from or None,
            from_name=settings.mail_from_name,
        )

    def send_verification_email(self, to_email: str, name: str, link: str) -> None:
        text, html = _verification_body(name, link)
        self._send(to_email, VERIFICATION_SUBJECT, text, html)

    def send_password_reset_email(self, to_email: str, name: str, link: str) -> None:
        text, html = _password_reset_body(name, link)
        self._send(to_email, PASSWORD_RESET_SUBJECT, text, html)

    def _build_message(self, to_email: str, subject: str, text: str, html: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self._from_name} <{self._from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def _send(self, to_email: str, subject: str, text: str, html: str) -> None:
        msg = self._build_message(to_email, subject, text, html)
        context = ssl.create_default_context()
        if self._use_tls:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                server.starttls(context=context)
                self._login(server)
                server.sendmail(self._from_email, [to_email], msg.as_string())
        else:
            with smtplib.SMTP_SSL(self._host, self._port, context=context, timeout=self._timeout) as server:
                self._login(server)
                server.sendmail(self._from_email, [to_email], msg.as_string())
        logger.info("email sent to %s (%s)", redact_email(to_email), subject)

    def _login(self, server: smtplib.SMTP) -> None:
        if self._user and self._password:
            server.login(self._user, self._password)
