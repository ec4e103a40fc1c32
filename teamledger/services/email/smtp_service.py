"""
Email Service over SMTP

DESIGN DECISION: Outgoing email goes through a plain SMTP relay because:
1. Every provider (Gmail, SES, Mailgun, a local relay) speaks it
2. No vendor SDK to keep in sync
3. Easy to disable entirely for local runs and tests

This service only delivers. Deciding WHO gets WHAT lives in the
notification dispatcher; composing messages lives in templates.py.

CRITICAL: send() raises EmailDeliveryError on failure. Callers that must
not fail (every workflow) go through the dispatcher, which catches it.

The SMTP conversation (with its retries) runs in a worker thread, so a
slow relay never stalls the event loop.
"""

import asyncio
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from teamledger.config import EmailSettings, get_settings


logger = structlog.get_logger(__name__)


class EmailDeliveryError(Exception):
    """The SMTP relay refused or could not be reached."""
    pass


class OutgoingEmail(BaseModel):
    """A composed, ready-to-send plain text email."""

    to: str = Field(..., min_length=3)
    subject: str = Field(..., min_length=1, max_length=200)
    text: str = Field(..., min_length=1)


class EmailService:
    """
    Sends OutgoingEmail messages through the configured SMTP relay.

    When SMTP is disabled in settings, messages are logged and dropped.
    """

    def __init__(self, settings: Optional[EmailSettings] = None):
        self._settings = settings or get_settings().email

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    def _build_message(self, email: OutgoingEmail) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._settings.from_address
        message["To"] = email.to
        message["Subject"] = email.subject
        message["Message-ID"] = make_msgid(domain="teamledger")
        message.set_content(email.text)
        return message

    def _open_connection(self) -> smtplib.SMTP:
        connection = smtplib.SMTP(
            self._settings.host,
            self._settings.port,
            timeout=self._settings.timeout_seconds,
        )
        if self._settings.use_tls:
            connection.starttls()
        if self._settings.username:
            connection.login(self._settings.username, self._settings.password)
        return connection

    @retry(
        retry=retry_if_exception_type((smtplib.SMTPServerDisconnected, ConnectionError, TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _deliver(self, message: EmailMessage) -> None:
        with self._open_connection() as connection:
            connection.send_message(message)

    async def send(self, email: OutgoingEmail) -> Optional[str]:
        """
        Deliver one email.

        Returns:
            The Message-ID, or None when sending is disabled

        Raises:
            EmailDeliveryError: If delivery failed after retries
        """
        if not self.enabled:
            logger.info("email_skipped", to=email.to, subject=email.subject)
            return None

        message = self._build_message(email)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(f"Failed to send email to {email.to}: {e}")

        logger.info("email_sent", to=email.to, message_id=message["Message-ID"])
        return message["Message-ID"]

    def verify_connection(self) -> bool:
        """Open and close a connection to check the relay settings."""
        if not self.enabled:
            return False
        try:
            with self._open_connection() as connection:
                connection.noop()
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("email_relay_unreachable", host=self._settings.host, error=str(e))
            return False
