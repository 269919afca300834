from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

import httpx

from clubauth.logging import get_logger
from clubauth.service.email_templates import EmailComposer, RenderedEmail

logger = get_logger(__name__)


class EmailDeliveryError(Exception):
    """The transport refused or failed to deliver a message."""


class EmailNotConfigured(EmailDeliveryError):
    """No transport is configured."""


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailTransport(Protocol):
    def send(self, sender: str, to: str, subject: str, html: str, text: Optional[str] = None) -> None: ...


class ResendTransport:
    """Delivers through the Resend HTTP API."""

    endpoint = "https://api.resend.com/emails"

    def __init__(self, api_key: str, *, timeout: float = 30.0) -> None:
        self.api_key = api_key
        self.timeout = timeout

    def send(self, sender: str, to: str, subject: str, html: str, text: Optional[str] = None) -> None:
        payload = {"from": sender, "to": [to], "subject": subject, "html": html}
        if text:
            payload["text"] = text
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    self.endpoint,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as exc:
            logger.error("email_resend_unreachable", to=redact_email(to), error=str(exc))
            raise EmailDeliveryError(f"Resend request failed: {exc}") from exc
        if response.status_code >= 400:
            logger.error(
                "email_resend_rejected",
                to=redact_email(to),
                status=response.status_code,
                body=response.text[:200],
            )
            raise EmailDeliveryError(f"Resend API error: {response.status_code}")
        logger.info("email_sent", to=redact_email(to), subject=subject, transport="resend")


class SmtpTransport:
    """Delivers over SMTP with STARTTLS, or implicit TLS when ``use_tls`` is off."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls

    def send(self, sender: str, to: str, subject: str, html: str, text: Optional[str] = None) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to
        if text:
            msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        context = ssl.create_default_context()
        envelope_from = sender.rsplit("<", 1)[-1].rstrip(">").strip()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(envelope_from, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=30) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(envelope_from, to, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=redact_email(to), host=self.host, error=str(exc))
            raise EmailDeliveryError("SMTP authentication failed") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=redact_email(to), error=str(exc))
            raise EmailDeliveryError("SMTP recipient refused") from exc
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_smtp_error",
                to=redact_email(to),
                host=self.host,
                port=self.port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise EmailDeliveryError(f"SMTP delivery failed: {exc}") from exc
        logger.info("email_sent", to=redact_email(to), subject=subject, transport="smtp")


class EmailService:
    """Renders transactional email and hands it to the configured transport.

    Without a transport the service logs and reports "not sent"; callers
    that pass ``required=True`` get :class:`EmailNotConfigured` instead.
    """

    def __init__(
        self,
        *,
        transport: Optional[EmailTransport],
        composer: EmailComposer,
        from_email: str,
        from_name: str,
        notification_email: Optional[str] = None,
    ) -> None:
        self.transport = transport
        self.composer = composer
        self.from_email = from_email
        self.from_name = from_name
        self.notification_email = notification_email

    @property
    def is_configured(self) -> bool:
        return self.transport is not None

    @property
    def sender(self) -> str:
        return f"{self.from_name} <{self.from_email}>"

    def _dispatch(self, to: str, message: RenderedEmail, *, required: bool = False) -> bool:
        if not self.is_configured:
            logger.warning("email_not_configured", to=redact_email(to), subject=message.subject)
            if required:
                raise EmailNotConfigured(
                    "Email service is not configured. Set RESEND_API_KEY or SMTP_HOST."
                )
            return False
        try:
            self.transport.send(self.sender, to, message.subject, message.html, message.text)
        except EmailDeliveryError:
            if required:
                raise
            logger.warning("email_send_failed", to=redact_email(to), subject=message.subject)
            return False
        return True

    def send_verification(self, to: str, token: str, tenant_id: str) -> bool:
        return self._dispatch(to, self.composer.verification(tenant_id, token))

    def send_password_reset(self, to: str, token: str, tenant_id: str) -> bool:
        return self._dispatch(to, self.composer.password_reset(tenant_id, token))

    def send_two_factor_enabled(self, to: str) -> bool:
        return self._dispatch(to, self.composer.two_factor_enabled())

    def send_coach_welcome(self, to: str, pin: str, tenant_id: str, username: str) -> bool:
        return self._dispatch(to, self.composer.coach_welcome(tenant_id, username, pin))

    def send_pin_reset(self, to: str, token: str, tenant_id: str, username: str) -> bool:
        """PIN reset mail always surfaces delivery problems to the caller."""

        return self._dispatch(to, self.composer.pin_reset(tenant_id, username, token), required=True)

    def send_cold_outreach(self, to: str, club_name: str, president_name: str) -> bool:
        return self._dispatch(
            to, self.composer.cold_outreach(club_name, president_name), required=True
        )

    def send_signup_notification(
        self, club_name: str, email: str, tenant_id: str, plan_id: Optional[str]
    ) -> bool:
        if not self.notification_email:
            logger.warning("signup_notification_skipped", reason="no_recipient")
            return False
        return self._dispatch(
            self.notification_email,
            self.composer.signup_notification(club_name, email, tenant_id, plan_id),
        )
