"""
Outbound mail transport.
SMTP calls block, so they run in a worker thread to keep the event loop free.
"""

import asyncio
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Protocol

from afterlife.config import settings
from afterlife.infrastructure.observability.logging import get_logger
from afterlife.messaging.models import OutboundMessage
from afterlife.workflows.errors import DeliveryFailure

logger = get_logger(__name__)


class MessageTransport(Protocol):
    async def send(self, message: OutboundMessage) -> None:
        """Deliver ``message`` or raise DeliveryFailure."""
        ...


def build_email(message: OutboundMessage) -> EmailMessage:
    email = EmailMessage()
    email["From"] = formataddr((message.sender_name or settings.SENDER_NAME, message.sender))
    email["To"] = message.recipient
    email["Subject"] = message.subject
    email["Message-ID"] = make_msgid(domain=message.sender.rsplit("@", 1)[-1])
    if message.in_reply_to:
        email["In-Reply-To"] = message.in_reply_to
        email["References"] = message.in_reply_to
    email.set_content(message.body)
    return email


class SmtpTransport:
    """Delivers OutboundMessage objects through an SMTP relay."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
        starttls: bool | None = None,
        timeout: float | None = None,
    ):
        self.host = host or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.username = username if username is not None else settings.SMTP_USERNAME
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.starttls = settings.SMTP_STARTTLS if starttls is None else starttls
        self.timeout = timeout or settings.SMTP_TIMEOUT_SECONDS

    def _send_blocking(self, email: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.starttls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(email)

    async def send(self, message: OutboundMessage) -> None:
        email = build_email(message)
        try:
            await asyncio.to_thread(self._send_blocking, email)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(
                "SMTP delivery failed",
                recipient=message.recipient,
                subject=message.subject,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise DeliveryFailure(f"SMTP delivery failed: {e}", recipient=message.recipient) from e

        logger.info("Message delivered", recipient=message.recipient, subject=message.subject)


# Singleton instance for application use
smtp_transport = SmtpTransport()
