"""Delivery channels for the notification outbox: SMTP email and Twilio SMS."""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from claimflow.core.config import Settings
from claimflow.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    use_tls: bool
    from_email: str


def smtp_config_from_settings(settings: Settings) -> Optional[SmtpConfig]:
    if not settings.smtp_host or not settings.smtp_from_email:
        return None
    return SmtpConfig(
        host=settings.smtp_host,
        port=int(settings.smtp_port),
        user=settings.smtp_user or None,
        password=settings.smtp_password or None,
        use_tls=bool(settings.smtp_use_tls),
        from_email=settings.smtp_from_email,
    )


def _redact_email(value: str) -> str:
    local, _, domain = (value or "").partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def send_email_via_smtp(
    *,
    smtp: SmtpConfig,
    to_email: str,
    subject: str,
    body_text: str,
    extra_headers: dict[str, str] | None = None,
) -> None:
    msg = EmailMessage()
    msg["From"] = smtp.from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body_text)
    for header_name, header_value in (extra_headers or {}).items():
        msg[header_name] = header_value

    context = ssl.create_default_context()
    # 465 is implicit TLS, anything else upgrades with STARTTLS when enabled.
    if smtp.port == 465:
        server = smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=20, context=context)
    else:
        server = smtplib.SMTP(smtp.host, smtp.port, timeout=20)
        if smtp.use_tls:
            server.starttls(context=context)
    try:
        if smtp.user and smtp.password:
            server.login(smtp.user, smtp.password)
        server.send_message(msg)
    finally:
        try:
            server.quit()
        except smtplib.SMTPException:
            logger.debug("SMTP quit failed", exc_info=True)
    logger.info("Email sent to=%s subject=%s", _redact_email(to_email), subject)


def send_email_payload(payload: dict[str, Any], *, smtp: Optional[SmtpConfig]) -> None:
    if smtp is None:
        raise RuntimeError("SMTP is not configured")
    to_email = str(payload.get("to") or "").strip()
    subject = str(payload.get("subject") or "").strip()
    body_text = str(payload.get("body_text") or "").strip()
    if not to_email or not subject or not body_text:
        raise RuntimeError("Email payload is missing to/subject/body_text")
    send_email_via_smtp(
        smtp=smtp,
        to_email=to_email,
        subject=subject,
        body_text=body_text,
        extra_headers=payload.get("extra_headers"),
    )


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    from_number: str
    redact_numbers: bool = True


def twilio_config_from_settings(settings: Settings) -> Optional[TwilioConfig]:
    if not settings.enable_twilio:
        return None
    if not settings.twilio_account_sid or not settings.twilio_auth_token or not settings.twilio_from_number:
        return None
    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        redact_numbers=bool(settings.pii_redaction_enabled),
    )


def _redact_phone(value: str) -> str:
    if not value:
        return ""
    return f"***{value[-3:]}"


def send_sms_payload(payload: dict[str, Any], *, twilio: Optional[TwilioConfig]) -> str:
    """Send one SMS. Returns the Twilio message SID."""
    if twilio is None:
        raise RuntimeError("Twilio is disabled or not configured")
    to_number = str(payload.get("to_number") or "").strip()
    body = str(payload.get("body") or "").strip()
    if not to_number or not body:
        raise RuntimeError("SMS payload is missing to_number/body")

    log_to = _redact_phone(to_number) if twilio.redact_numbers else to_number
    client = Client(twilio.account_sid, twilio.auth_token)
    try:
        message = client.messages.create(to=to_number, from_=twilio.from_number, body=body)
    except TwilioRestException as exc:
        logger.error("Twilio rejected SMS to=%s status=%s", log_to, exc.status)
        alert_tracker.record("SMS_SEND_FAILED", {"status": exc.status})
        raise
    logger.info("SMS sent to=%s sid=%s", log_to, message.sid)
    return message.sid
