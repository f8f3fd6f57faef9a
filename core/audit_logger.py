# core/audit_logger.py
"""
Append-only audit trail for security-relevant events

Recording is fire-and-forget for the caller: a persistence failure is
written to the `audit.fallback` logger and never raised, so audit trouble
cannot mask the outcome of the action being audited.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from core.clock import Clock, utcnow
from core.database import session_scope
from core.database_models import AuditEvent

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger('audit.fallback')


class AuditEventType(Enum):
    """Audit event tags"""
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RATE_LIMITER_UNAVAILABLE = "rate_limiter_unavailable"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    INVITATION_SENT = "invitation_sent"
    INVITATION_VALIDATED = "invitation_validated"
    INVALID_INVITATION_ATTEMPT = "invalid_invitation_attempt"
    INVITATION_ACCEPTED = "invitation_accepted"
    NOTIFICATION_FAILED = "notification_failed"


@dataclass
class AuditContext:
    """Who, from where, and when an audited action happened"""
    source_address: str = 'system'
    client_agent: str = 'system'
    actor_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: Optional[datetime] = None

    def with_payload(self, **payload) -> 'AuditContext':
        """Copy with extra payload fields, keeping provenance and timestamp"""
        return AuditContext(
            source_address=self.source_address,
            client_agent=self.client_agent,
            actor_id=self.actor_id,
            payload={**self.payload, **payload},
            occurred_at=self.occurred_at,
        )


class AuditLogger:
    """Write-only recorder of AuditEvent rows"""

    def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def record(self, event_type: AuditEventType, context: Optional[AuditContext] = None) -> None:
        context = context or AuditContext()
        # Timestamp of the triggering action, not of persistence
        occurred_at = context.occurred_at or self.clock()

        event = AuditEvent(
            event_type=event_type.value,
            actor_id=context.actor_id,
            source_address=context.source_address,
            client_agent=context.client_agent,
            payload=context.payload,
            occurred_at=occurred_at,
            recorded_at=self.clock(),
        )

        try:
            with session_scope(self.session_factory) as session:
                session.add(event)
            logger.info(f"Audit event recorded: {event_type.value}")
        except Exception as e:
            fallback_logger.error(json.dumps({
                'event_type': event_type.value,
                'actor_id': context.actor_id,
                'source_address': context.source_address,
                'client_agent': context.client_agent,
                'payload': context.payload,
                'occurred_at': occurred_at.isoformat(),
                'persist_error': str(e),
            }, default=str))

    def count_recent(self, event_type: AuditEventType, source_address: str,
                     since: datetime) -> int:
        with session_scope(self.session_factory) as session:
            return session.execute(
                select(func.count(AuditEvent.id))
                .where(AuditEvent.event_type == event_type.value)
                .where(AuditEvent.source_address == source_address)
                .where(AuditEvent.occurred_at >= since)
            ).scalar_one()


class SuspiciousActivityMonitor:
    """Flags addresses that keep tripping the rate limiter"""

    def __init__(self, audit: AuditLogger, threshold: int = 10, lookback_hours: int = 24):
        self.audit = audit
        self.threshold = threshold
        self.lookback = timedelta(hours=lookback_hours)

    def inspect(self, context: AuditContext) -> bool:
        """Record a suspicious_activity event when the address is over threshold"""
        since = (context.occurred_at or self.audit.clock()) - self.lookback
        try:
            denials = self.audit.count_recent(AuditEventType.RATE_LIMIT_EXCEEDED,
                                              context.source_address, since)
        except Exception as e:
            logger.warning(f"Suspicious activity check skipped for {context.source_address}: {e}")
            return False

        if denials > self.threshold:
            self.audit.record(AuditEventType.SUSPICIOUS_ACTIVITY, context.with_payload(
                reason='Multiple rate limit violations',
                denials=denials,
            ))
            return True
        return False
