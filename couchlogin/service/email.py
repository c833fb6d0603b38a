from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from string import Template
from typing import Any, Dict, List, Mapping, Optional

from couchlogin.logging import get_logger
from couchlogin.service.errors import ServiceError

logger = get_logger(__name__)


class MailDeliveryError(ServiceError):
    """Outbound email could not be rendered or handed to the SMTP server."""

    status_code = 500
    error_code = "mail_failed"


@dataclass
class EmailTemplate:
    subject: str
    text: str
    html: Optional[str] = None


DEFAULT_TEMPLATES: Dict[str, EmailTemplate] = {
    "confirmEmail": EmailTemplate(
        subject="Please confirm your email",
        text=(
            "Hi $name,\n\n"
            "Please confirm your email address by visiting the link below:\n\n"
            "$base_url/confirm-email/$token\n\n"
            "If you didn't create an account, you can safely ignore this email.\n"
        ),
    ),
    "forgotPassword": EmailTemplate(
        subject="Your password reset link",
        text=(
            "Hi $name,\n\n"
            "We received a request to reset your password. Your reset token is:\n\n"
            "    $token\n\n"
            "It expires in $token_life_hours hours. If you didn't request this, "
            "you can safely ignore this email.\n"
        ),
    ),
}


@dataclass
class SentEmail:
    template: str
    to: str
    subject: str
    body: str
    variables: Dict[str, Any]


class Mailer:
    """Transactional email for account confirmation and password recovery.

    Without an SMTP host (or in test mode) messages are logged and kept in
    ``outbox`` instead of being sent.
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
        from_name: str = "couchlogin",
        base_url: Optional[str] = None,
        templates: Optional[Mapping[str, EmailTemplate]] = None,
        test_mode: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.templates: Dict[str, EmailTemplate] = {**DEFAULT_TEMPLATES, **(templates or {})}
        self.test_mode = test_mode
        self.outbox: List[SentEmail] = []

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email) and not self.test_mode

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(self, template: str, variables: Mapping[str, Any]) -> tuple[str, str, Optional[str]]:
        tmpl = self.templates.get(template)
        if tmpl is None:
            raise MailDeliveryError(f'No template found for "{template}"')
        values = {"base_url": self.base_url, **variables}
        subject = Template(tmpl.subject).safe_substitute(values)
        text = Template(tmpl.text).safe_substitute(values)
        html = Template(tmpl.html).safe_substitute(values) if tmpl.html else None
        return subject, text, html

    def _deliver(self, to_email: str, subject: str, text: str, html: Optional[str]) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

    async def send_email(self, template: str, to: str, variables: Mapping[str, Any]) -> None:
        """Render ``template`` with ``variables`` and send it to ``to``.

        Delivery failures raise ``MailDeliveryError``.
        """
        subject, text, html = self.render(template, variables)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                template=template,
                to=self._redact_email(to),
                subject=subject,
            )
            self.outbox.append(
                SentEmail(template=template, to=to, subject=subject, body=text, variables=dict(variables))
            )
            return
        try:
            await asyncio.to_thread(self._deliver, to, subject, text, html)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to),
                host=self.smtp_host,
                error=str(exc),
            )
            raise MailDeliveryError("Failed to send email: authentication failed") from exc
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise MailDeliveryError(f"Failed to send email: {exc}") from exc
        logger.info("email_sent", template=template, to=self._redact_email(to), subject=subject)
