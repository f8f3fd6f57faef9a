# core/notification_dispatcher.py
"""
Notification Dispatcher
Sends one rendered message with bounded retry:
- at most `max_attempts` transport calls per send
- exponential backoff with full jitter between attempts
- a wall-clock budget covering every attempt and backoff; a transport call
  that outlives the budget counts as a failed attempt
- on exhaustion the message is persisted as a failed NotificationMessage
  for the recovery sweep, and a notification_failed audit event is recorded

`send` never raises: callers receive a boolean.
"""

import json
import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from email.utils import formataddr
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy.orm import sessionmaker

from core.audit_logger import AuditContext, AuditEventType, AuditLogger
from core.clock import Clock, utcnow
from core.database import session_scope
from core.database_models import DeliveryStatus, NotificationMessage
from core.errors import TransientDeliveryFailure, ValidationError
from core.template_engine import RenderedTemplate
from core.transport import Envelope, MailTransport, TransportResult

logger = logging.getLogger(__name__)


@dataclass
class Recipient:
    email: str
    name: Optional[str] = None


RecipientSpec = Union[str, Recipient, Dict[str, Any], tuple, Sequence[Any]]


@dataclass
class DeliveryOutcome:
    delivered: bool
    attempts: int
    last_error: Optional[str] = None
    transport_id: Optional[str] = None


def _format_one(recipient) -> str:
    if isinstance(recipient, str):
        email, name = recipient.strip(), None
    elif isinstance(recipient, Recipient):
        email, name = recipient.email, recipient.name
    elif isinstance(recipient, dict):
        email, name = recipient.get('email'), recipient.get('name')
    elif isinstance(recipient, tuple) and len(recipient) == 2:
        name, email = recipient
    else:
        raise ValidationError(f"Unsupported recipient: {recipient!r}")

    if not isinstance(email, str) or '@' not in email:
        raise ValidationError(f"Invalid recipient address: {email!r}")
    if name is not None and (not isinstance(name, str) or '@' in name):
        # A tuple is always (name, address); several addresses go in a list
        raise ValidationError(f"Invalid recipient name: {name!r}")
    return formataddr((name, email)) if name else email


def normalize_recipients(recipients: RecipientSpec) -> List[str]:
    """
    Accept a bare address, a display-name/address pair (Recipient, dict or
    (name, email) tuple), or a list of either, and return transport-ready
    address strings. A 2-tuple is never read as two addresses.
    """
    if isinstance(recipients, (str, Recipient, dict, tuple)):
        addresses = [_format_one(recipients)]
    elif isinstance(recipients, (list, set)):
        addresses = [_format_one(r) for r in recipients]
    else:
        raise ValidationError(f"Unsupported recipients: {recipients!r}")

    if not addresses:
        raise ValidationError("At least one recipient is required")
    return addresses


class NotificationDispatcher:
    """Formats and sends a single message with bounded retry"""

    def __init__(self, transport: MailTransport, session_factory: sessionmaker,
                 audit: Optional[AuditLogger] = None, max_attempts: int = 3,
                 send_timeout: float = 30.0, backoff_base: float = 0.5,
                 default_sender: Optional[str] = None, clock: Clock = utcnow,
                 sleep: Callable[[float], None] = time.sleep,
                 monotonic: Callable[[], float] = time.monotonic,
                 max_workers: int = 4):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.transport = transport
        self.session_factory = session_factory
        self.audit = audit
        self.max_attempts = max_attempts
        self.send_timeout = send_timeout
        self.backoff_base = backoff_base
        self.default_sender = default_sender
        self.clock = clock
        self.sleep = sleep
        self.monotonic = monotonic
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix='mail-transport')

    def send(self, recipients: RecipientSpec, template: RenderedTemplate, attempt: int = 1) -> bool:
        """
        Deliver `template` to `recipients`

        Args:
            recipients: Address, display-name/address pair, or list of either
            template: Rendered subject and bodies
            attempt: Number of the first attempt made by this call

        Returns:
            True once the transport reports success, False otherwise
        """
        try:
            addresses = normalize_recipients(recipients)
        except ValidationError as e:
            logger.error(f"Notification '{template.subject}' not sent: {e}")
            self._record_failure_event(template.kind, [str(recipients)], 0, str(e), None)
            return False

        envelope = Envelope(
            sender=template.sender or self.default_sender,
            recipients=addresses,
            subject=template.subject,
            html=template.html,
            text=template.text,
        )

        first_attempt = max(1, min(attempt, self.max_attempts))
        outcome = self.deliver(envelope, self.max_attempts, first_attempt)

        if outcome.delivered:
            logger.info(f"Email sent successfully to {addresses} ({outcome.transport_id})")
            return True

        message_id = self._persist_failure(envelope, template.kind, outcome)
        self._record_failure_event(template.kind, addresses, outcome.attempts,
                                   outcome.last_error, message_id)
        return False

    def deliver(self, envelope: Envelope, max_attempts: int, first_attempt: int = 1) -> DeliveryOutcome:
        """
        Run the bounded retry loop for one envelope

        `attempts` in the outcome is the number of the last attempt made.
        """
        deadline = self.monotonic() + self.send_timeout
        attempt = first_attempt
        last_error = None

        while attempt <= max_attempts:
            remaining = deadline - self.monotonic()
            if remaining <= 0:
                last_error = last_error or f"Send timed out after {self.send_timeout:.1f}s"
                break

            result = self._attempt(envelope, remaining)
            if result.success:
                return DeliveryOutcome(delivered=True, attempts=attempt, transport_id=result.id)

            last_error = result.error or 'Unknown error'
            logger.warning(f"Email sending failed (attempt {attempt}/{max_attempts}) "
                           f"to {envelope.recipients}: {last_error}")

            if attempt < max_attempts:
                delay = self._backoff(attempt)
                delay = min(delay, max(0.0, deadline - self.monotonic()))
                if delay > 0:
                    self.sleep(delay)
            attempt += 1

        return DeliveryOutcome(delivered=False, attempts=attempt - 1, last_error=last_error)

    def envelope_for(self, message: NotificationMessage) -> Envelope:
        """Rebuild the envelope of a persisted message"""
        return Envelope(
            sender=message.sender or self.default_sender,
            recipients=list(message.recipients),
            subject=message.subject,
            html=message.html_body,
            text=message.text_body,
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def _attempt(self, envelope: Envelope, timeout: float) -> TransportResult:
        future = self._executor.submit(self.transport.send, envelope)
        try:
            result = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            return TransportResult(success=False, error=f"Transport timed out after {timeout:.1f}s")
        except TransientDeliveryFailure as e:
            return TransportResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"Unexpected transport error: {e}", exc_info=True)
            return TransportResult(success=False, error=str(e) or e.__class__.__name__)

        if result is None:
            return TransportResult(success=False, error='Transport returned no result')
        return result

    def _backoff(self, attempt: int) -> float:
        """Full jitter: uniform(0, base * 2**(attempt-1))"""
        if self.backoff_base <= 0:
            return 0.0
        return random.uniform(0, self.backoff_base * (2 ** (attempt - 1)))

    def _persist_failure(self, envelope: Envelope, kind: str, outcome: DeliveryOutcome) -> Optional[str]:
        now = self.clock()
        message = NotificationMessage(
            recipients=envelope.recipients,
            sender=envelope.sender,
            subject=envelope.subject,
            html_body=envelope.html,
            text_body=envelope.text,
            template_kind=kind or 'other',
            attempt_count=outcome.attempts,
            last_attempt_at=now,
            last_error=outcome.last_error,
            status=DeliveryStatus.FAILED,
            created_at=now,
        )
        try:
            with session_scope(self.session_factory) as session:
                session.add(message)
        except Exception as e:
            logger.error("Failed to log email error: " + json.dumps({
                'recipients': envelope.recipients,
                'subject': envelope.subject,
                'template_kind': kind,
                'attempt_count': outcome.attempts,
                'error_message': outcome.last_error,
                'persist_error': str(e),
            }))
            return None

        logger.error(f"Email to {envelope.recipients} failed after {outcome.attempts} attempts, "
                     f"queued for recovery as {message.id}")
        return message.id

    def _record_failure_event(self, kind: str, recipients: List[str], attempts: int,
                              error: Optional[str], message_id: Optional[str]) -> None:
        if self.audit is None:
            return
        self.audit.record(AuditEventType.NOTIFICATION_FAILED, AuditContext(
            occurred_at=self.clock(),
            payload={
                'template_kind': kind,
                'recipients': recipients,
                'attempt_count': attempts,
                'error': error,
                'notification_id': message_id,
            },
        ))
