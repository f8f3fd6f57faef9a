# core/transport.py
"""
Outbound mail transports

A transport takes one Envelope and reports a TransportResult; it does not
retry. Retry, timeout and failure persistence belong to the dispatcher.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate
from typing import List, Optional

import aiosmtplib

logger = logging.getLogger(__name__)


@dataclass
class Envelope:
    """A fully rendered message addressed to one or more recipients"""
    sender: str
    recipients: List[str]
    subject: str
    html: Optional[str] = None
    text: Optional[str] = None


@dataclass
class TransportResult:
    success: bool
    id: Optional[str] = None
    error: Optional[str] = None


class MailTransport:
    """
    Interface every transport implements

    A transport reports rejection in its result, or raises
    TransientDeliveryFailure for errors worth another attempt.
    """

    def send(self, envelope: Envelope) -> TransportResult:
        raise NotImplementedError


class SMTPTransport(MailTransport):
    """
    SMTP delivery through aiosmtplib

    Port 465 uses implicit TLS, port 587 upgrades with STARTTLS.
    """

    def __init__(self, host: str, port: int = 465, username: Optional[str] = None,
                 password: Optional[str] = None, timeout: float = 20.0,
                 domain: str = 'localhost', validate_certs: bool = True):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout
        self.domain = domain
        self.validate_certs = validate_certs

    def send(self, envelope: Envelope) -> TransportResult:
        message = self._build_message(envelope)
        return asyncio.run(self._async_send(message, envelope.recipients))

    def _build_message(self, envelope: Envelope) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = envelope.subject
        msg['From'] = envelope.sender
        msg['To'] = ', '.join(envelope.recipients)
        msg['Date'] = formatdate(localtime=True)
        msg['Message-ID'] = f"<{uuid.uuid4()}@{self.domain}>"

        if envelope.text:
            msg.attach(MIMEText(envelope.text, 'plain', 'utf-8'))
        if envelope.html:
            msg.attach(MIMEText(envelope.html, 'html', 'utf-8'))
        return msg

    async def _async_send(self, msg: MIMEMultipart, recipients: List[str]) -> TransportResult:
        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            timeout=self.timeout,
            use_tls=self.port == 465,  # Implicit TLS for port 465
            start_tls=True if self.port == 587 else None,
            validate_certs=self.validate_certs,
        )

        try:
            await smtp.connect()

            if self.username and self.password:
                await smtp.login(self.username, self.password)

            await smtp.send_message(msg, recipients=recipients)
            await smtp.quit()

            return TransportResult(success=True, id=msg['Message-ID'])

        except aiosmtplib.SMTPResponseException as e:
            return TransportResult(success=False, error=f"{e.code} {e.message}")
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            return TransportResult(success=False, error=str(e) or e.__class__.__name__)
        finally:
            if smtp.is_connected:
                smtp.close()


class LoggingTransport(MailTransport):
    """Development transport: logs the envelope and reports success"""

    def send(self, envelope: Envelope) -> TransportResult:
        message_id = f"<{uuid.uuid4()}@localhost>"
        logger.info(f"[mail] {message_id} to={envelope.recipients} subject={envelope.subject!r}")
        return TransportResult(success=True, id=message_id)
