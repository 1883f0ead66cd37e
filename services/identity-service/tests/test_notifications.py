from __future__ import annotations

import logging
from unittest.mock import patch

import pytest

from identity_service.notifications import (
    LoggingNotificationSink,
    SmtpNotificationSink,
    _verification_body,
    redact_email,
    redact_link,
)


def test_redact_email_hides_local_part():
    assert redact_email("ana.lopez@x.com") == "an***@x.com"
    assert redact_email("nope") == "redacted"


def test_redact_link_truncates_token():
    link = "https://app.example.com/verify-email?token=ab%2Bcd%2Fefgh%3D%3D"

    assert redact_link(link) == "https://app.example.com/verify-email?token=ab%2Bcd%2F***"


def test_logging_sink_hides_address_and_token(caplog):
    caplog.set_level(logging.INFO, logger="identity_service.notifications")

    LoggingNotificationSink().send_verification_email(
        "ana@x.com", "Ana", "https://app/verify-email?token=secret-token-value"
    )

    assert "https://app/verify-email?token=secret***" in caplog.text
    assert "secret-token-value" not in caplog.text
    assert "ana@x.com" not in caplog.text


def test_html_body_escapes_name():
    text, markup = _verification_body(
        '<a href="https://evil.example">click</a>', "https://app/verify-email?token=t&x=1"
    )

    assert "<a href=\"https://evil.example\">" not in markup
    assert "&lt;a href=&quot;https://evil.example&quot;&gt;click&lt;/a&gt;" in markup
    assert "token=t&amp;x=1" in markup
    assert "<a href=\"https://evil.example\">click</a>" in text


def test_smtp_sink_uses_starttls_and_login():
    sink = SmtpNotificationSink(
        host="smtp.example.com", user="mailer@x.com", password="secret", from_name="Identidad"
    )

    with patch("identity_service.notifications.smtplib.SMTP") as smtp:
        sink.send_password_reset_email("ana@x.com", "Ana", "https://app/reset-password?token=t")

    server = smtp.return_value.__enter__.return_value
    smtp.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer@x.com", "secret")
    sender, recipients, raw = server.sendmail.call_args.args
    assert sender == "mailer@x.com"
    assert recipients == ["ana@x.com"]
    assert "Identidad <mailer@x.com>" in raw


def test_smtp_sink_implicit_tls_without_credentials():
    sink = SmtpNotificationSink(host="smtp.example.com", port=465, use_tls=False, from_email="no-reply@x.com")

    with patch("identity_service.notifications.smtplib.SMTP_SSL") as smtp_ssl:
        sink.send_verification_email("ana@x.com", "Ana", "https://app/verify-email?token=t")

    server = smtp_ssl.return_value.__enter__.return_value
    server.login.assert_not_called()
    server.sendmail.assert_called_once()


def test_smtp_errors_propagate():
    sink = SmtpNotificationSink(host="smtp.example.com")

    with patch("identity_service.notifications.smtplib.SMTP", side_effect=OSError("connection refused")):
        with pytest.raises(OSError):
            sink.send_verification_email("ana@x.com", "Ana", "https://app/verify-email?token=t")
