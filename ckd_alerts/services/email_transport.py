"""
Email transports used by the notification dispatcher.
"""

import asyncio
import smtplib
import logging
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import make_msgid
from typing import List, Optional
from dataclasses import dataclass
from uuid import uuid4

from ..models.alerts import NotificationTransportError


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class OutgoingEmail:
    recipient: str
    subject: str
    html_body: str
    text_body: str


class EmailTransport(ABC):
    """Abstract base class for email delivery."""

    @abstractmethod
    async def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> SendResult:
        """Send one message. May return a failed result or raise NotificationTransportError."""


class ConsoleEmailTransport(EmailTransport):
    """Development transport that logs messages instead of sending them."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    async def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> SendResult:
        message_id = f"console-{uuid4()}"
        self.logger.info(f"[console email] to={recipient} subject={subject!r} id={message_id}\n{text_body}")
        return SendResult(success=True, message_id=message_id)


class RecordingEmailTransport(EmailTransport):
    """
    In-memory transport that records outgoing messages.

    Can be told to fail for specific recipients, to fail everything, or to
    stall for a number of seconds, which makes it useful for exercising the
    dispatcher's failure handling.
    """

    def __init__(self, fail_recipients: Optional[List[str]] = None, raise_on_failure: bool = False,
                 delay_seconds: float = 0.0):
        self.sent: List[OutgoingEmail] = []
        self.attempts: List[OutgoingEmail] = []
        self.fail_recipients = set(fail_recipients or [])
        self.fail_all = False
        self.raise_on_failure = raise_on_failure
        self.delay_seconds = delay_seconds

    async def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> SendResult:
        message = OutgoingEmail(recipient, subject, html_body, text_body)
        self.attempts.append(message)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        if self.fail_all or recipient in self.fail_recipients:
            if self.raise_on_failure:
                raise NotificationTransportError(f"Delivery to {recipient} refused")
            return SendResult(success=False, error=f"Delivery to {recipient} refused")

        self.sent.append(message)
        return SendResult(success=True, message_id=f"recorded-{len(self.sent)}")


class SmtpEmailTransport(EmailTransport):
    """SMTP delivery. The blocking smtplib session runs in a worker thread."""

    def __init__(self, host: str, port: int, sender: str, username: Optional[str] = None,
                 password: Optional[str] = None, use_tls: bool = True, timeout_seconds: float = 10.0):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout_seconds = timeout_seconds
        self.logger = logging.getLogger(__name__)

    def _build_message(self, recipient: str, subject: str, html_body: str, text_body: str) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['From'] = self.sender
        msg['To'] = recipient
        msg['Subject'] = subject
        msg['Message-ID'] = make_msgid(domain=self.sender.split('@')[-1])
        msg.attach(MIMEText(text_body, 'plain'))
        msg.attach(MIMEText(html_body, 'html'))
        return msg

    def _send_blocking(self, msg: MIMEMultipart):
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> SendResult:
        msg = self._build_message(recipient, subject, html_body, text_body)
        try:
            await asyncio.to_thread(self._send_blocking, msg)
        except (smtplib.SMTPException, OSError) as e:
            self.logger.error(f"SMTP delivery to {recipient} failed: {e}")
            raise NotificationTransportError(f"SMTP delivery failed: {e}") from e

        self.logger.info(f"Email sent to {recipient}: {subject}")
        return SendResult(success=True, message_id=msg['Message-ID'])


def build_email_transport(config) -> EmailTransport:
    """SMTP when a host is configured, console otherwise."""
    if config.smtp_host:
        return SmtpEmailTransport(
            host=config.smtp_host,
            port=config.smtp_port,
            sender=config.email_from,
            username=config.smtp_username,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
            timeout_seconds=config.email_timeout_seconds
        )
    logging.getLogger(__name__).warning("No SMTP host configured, using console email transport")
    return ConsoleEmailTransport()
