"""
Outbound mail transports.
"""

from email.message import EmailMessage

import aiosmtplib

from storefront.config.logging import get_logger
from storefront.config.settings import Settings
from storefront.v1.core.exceptions import TransportError

logger = get_logger(__name__)


class ConsoleTransport:
    """Logs messages instead of sending them. Development only."""

    def __init__(self, settings: Settings):
        self.sender = settings.mail_from

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        logger.info(
            "Email (console transport)",
            sender=self.sender,
            recipient=recipient,
            subject=subject,
            headers=headers or {},
            body_length=len(body),
        )


class SmtpTransport:
    """Sends HTML mail through an SMTP relay with aiosmtplib."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def build_message(
        self,
        recipient: str,
        subject: str,
        body: str,
        headers: dict[str, str] | None = None,
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.settings.mail_from
        message["To"] = recipient
        message["Subject"] = subject
        for name, value in (headers or {}).items():
            message[name] = value
        message.set_content(body, subtype="html", charset="utf-8")
        return message

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        message = self.build_message(recipient, subject, body, headers)

        try:
            await aiosmtplib.send(
                message,
                hostname=self.settings.smtp_host,
                port=self.settings.smtp_port,
                username=self.settings.smtp_user,
                password=self.settings.smtp_password,
                use_tls=self.settings.smtp_use_tls,
                start_tls=self.settings.smtp_start_tls and not self.settings.smtp_use_tls,
                timeout=self.settings.smtp_timeout_s,
            )
        except (aiosmtplib.SMTPException, OSError, TimeoutError) as e:
            logger.error(
                "SMTP delivery failed",
                recipient=recipient,
                smtp_host=self.settings.smtp_host,
                error=str(e),
            )
            raise TransportError(f"SMTP delivery to {recipient} failed: {e}") from e

        logger.info("Email sent", recipient=recipient, subject=subject)
