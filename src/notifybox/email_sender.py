#!/usr/bin/env python3
"""Email delivery providers."""

from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Protocol

import aiosmtplib
from loguru import logger

from notifybox.config import (
    DEFAULT_FROM_EMAIL,
    DEFAULT_FROM_NAME,
    DEFAULT_SMTP_HOST,
    DEFAULT_SMTP_PORT,
    DEFAULT_SMTP_TIMEOUT,
)
from notifybox.errors import DeliveryError
from notifybox.models import NotificationRequest


class EmailSender(Protocol):
    """Anything that can deliver a rendered email."""

    async def send(self, to: str, subject: str, plain_text: str, html: str) -> None:
        ...


async def deliver(sender: EmailSender, request: NotificationRequest) -> None:
    """Hand a rendered notification to the sender."""
    await sender.send(request.recipient_email, request.subject, request.summary_text, request.html_body)


class SmtpEmailSender:
    """Sends multipart (plain text + HTML) emails through an SMTP server."""

    def __init__(
        self,
        host: str = DEFAULT_SMTP_HOST,
        port: int = DEFAULT_SMTP_PORT,
        username: Optional[str] = None,
        password: Optional[str] = None,
        start_tls: bool = True,
        timeout: float = DEFAULT_SMTP_TIMEOUT,
        from_email: str = DEFAULT_FROM_EMAIL,
        from_name: str = DEFAULT_FROM_NAME,
    ) -> None:
        """
        Initialize SmtpEmailSender.

        Args:
            host: SMTP server hostname
            port: SMTP server port
            username: Login user (optional, no AUTH when omitted)
            password: Login password (optional)
            start_tls: Upgrade the connection with STARTTLS
            timeout: Socket timeout in seconds
            from_email: Sender address
            from_name: Sender display name
        """
        if port < 1 or port > 65535:
            raise ValueError("port must be between 1 and 65535")
        if (username is None) != (password is None):
            raise ValueError("username and password must be given together")

        self.host: str = host
        self.port: int = port
        self.username: Optional[str] = username
        self.password: Optional[str] = password
        self.start_tls: bool = start_tls
        self.timeout: float = timeout
        self.from_email: str = from_email
        self.from_name: str = from_name

    def build_message(self, to: str, subject: str, plain_text: str, html: str) -> EmailMessage:
        """Build a UTF-8 multipart/alternative message."""
        msg = EmailMessage()
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(plain_text, charset="utf-8")
        msg.add_alternative(html, subtype="html", charset="utf-8")
        return msg

    async def send(self, to: str, subject: str, plain_text: str, html: str) -> None:
        """
        Send one email.

        Raises:
            DeliveryError: If the SMTP exchange fails
        """
        if not to:
            raise DeliveryError("Recipient address is empty")

        msg = self.build_message(to, subject, plain_text, html)
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                start_tls=self.start_tls,
                timeout=self.timeout,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to {}: {}", to, e)
            raise DeliveryError(f"Failed to send email to {to}: {e}") from e

        logger.info("Email sent to {} (subject: {})", to, subject)


class LogEmailSender:
    """Development sender: logs each email and keeps it for inspection."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(self, to: str, subject: str, plain_text: str, html: str) -> None:
        if not to:
            raise DeliveryError("Recipient address is empty")
        self.sent.append({"to": to, "subject": subject, "text": plain_text, "html": html})
        logger.info("[log provider] email to {} (subject: {}): {}", to, subject, plain_text)
