"""
Transactional email: templated notifications delivered via SendGrid or SMTP.
"""
import asyncio
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import httpx

from config.settings import settings
from utils.errors import NotificationError

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
BRAND = "Opian Lifestyle"

# (subject, html body) rendered with str.format(**data); body values are HTML-escaped
TEMPLATES: Dict[str, tuple] = {
    "verifyEmail": (
        f"Verify your {BRAND} account",
        "<p>Hi {name},</p><p>Please confirm your email address:</p>"
        '<p><a href="{verifyUrl}">{verifyUrl}</a></p>',
    ),
    "welcome": (
        f"Welcome to {BRAND}",
        "<p>Hi {name},</p><p>Welcome aboard! Your account is ready.</p>"
        '<p>Sign in any time at <a href="{loginUrl}">{loginUrl}</a>.</p>',
    ),
    "passwordReset": (
        f"Reset your {BRAND} password",
        "<p>Hi {name},</p><p>Use the link below within the next hour to choose a new password:</p>"
        '<p><a href="{resetUrl}">{resetUrl}</a></p>',
    ),
    "subscriptionChange": (
        f"Your {BRAND} subscription has been updated",
        "<p>Hi {name},</p><p>Your plan changed from {oldPlan} to {newPlan} on {changeDate}.</p>"
        "<p>Next billing date: {nextBilling}.</p>",
    ),
    "paymentReceipt": (
        f"Payment receipt for your {BRAND} subscription",
        "<p>Hi {name},</p><p>We received {amount} for your {planName} plan on {date}.</p>"
        "<p>Transaction: {transactionId}</p>",
    ),
}


def render_template(template_name: str, data: Dict[str, Any]) -> tuple:
    """
    Render a named template.

    Raises:
        NotificationError: Unknown template or missing placeholder value
    """
    if template_name not in TEMPLATES:
        raise NotificationError(f"Email template {template_name} not found")
    subject, body = TEMPLATES[template_name]
    escaped = {key: html.escape(value) if isinstance(value, str) else value for key, value in data.items()}
    try:
        return subject.format(**data), body.format(**escaped)
    except KeyError as e:
        raise NotificationError(f"Email template {template_name} is missing value {e}")


class EmailService:
    """Email sending via SendGrid or SMTP."""

    def __init__(self):
        self.sendgrid_key = settings.sendgrid_api_key
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_pass = settings.smtp_pass
        self.from_email = settings.smtp_from

    async def send(self, template_name: str, data: Dict[str, Any], to: str) -> Dict[str, Any]:
        """
        Render and deliver one email.

        Raises:
            NotificationError: If no transport is configured or delivery fails
        """
        subject, html_content = render_template(template_name, data)
        if self.sendgrid_key:
            return await self._send_via_sendgrid(to, subject, html_content)
        return await self._send_via_smtp(to, subject, html_content)

    async def _send_via_sendgrid(self, to: str, subject: str, html_content: str) -> Dict[str, Any]:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email, "name": BRAND},
            "subject": subject,
            "content": [{"type": "text/html", "value": html_content}],
        }
        try:
            async with httpx.AsyncClient(timeout=20.0) as client:
                response = await client.post(
                    SENDGRID_URL,
                    headers={
                        "Authorization": f"Bearer {self.sendgrid_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Failed to send email: {e}")
        return {"status": "sent", "message_id": response.headers.get("X-Message-Id"), "to": to}

    async def _send_via_smtp(self, to: str, subject: str, html_content: str) -> Dict[str, Any]:
        if not all([self.smtp_host, self.smtp_user, self.smtp_pass]):
            raise NotificationError("Email service not configured - missing SMTP credentials")

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.from_email
        message["To"] = to
        message.attach(MIMEText(html_content, "html"))

        def deliver():
            # Port 465 is implicit TLS; anything else upgrades with STARTTLS
            if self.smtp_port == 465:
                server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port)
            else:
                server = smtplib.SMTP(self.smtp_host, self.smtp_port)
            with server:
                if self.smtp_port != 465:
                    server.starttls()
                server.login(self.smtp_user, self.smtp_pass)
                server.send_message(message)

        try:
            await asyncio.to_thread(deliver)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to send email: {e}")
        return {"status": "sent", "to": to}


async def notify(template_name: str, data: Dict[str, Any], to: str, email_service: Optional[EmailService] = None) -> bool:
    """
    Send a notification without ever failing the caller.

    Returns:
        True if delivered, False if the failure was logged and swallowed
    """
    try:
        await (email_service or EmailService()).send(template_name, data, to)
        return True
    except Exception as e:
        logger.warning(f"Failed to send {template_name} email to {to}: {e}")
        return False
