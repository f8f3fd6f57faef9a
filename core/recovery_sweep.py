# core/recovery_sweep.py
"""
Failed-delivery recovery sweep

Re-attempts failed notifications oldest first, in a bounded batch and
within a wall-clock budget so one slow run cannot overlap the next
trigger. Each row is claimed with a compare-and-swap before sending, and
its attempt count never passes the lifetime ceiling. Rows at the ceiling
stay failed for operators to handle.
"""

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import sessionmaker

from core.clock import Clock, utcnow
from core.database import session_scope
from core.database_models import DeliveryStatus, NotificationMessage
from core.notification_dispatcher import DeliveryOutcome, NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    examined: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0   # claimed by a concurrent sweep
    deferred: int = 0  # left for the next run when the time budget ran out


class FailedDeliverySweep:
    """Periodic redelivery of NotificationMessage rows with status failed"""

    def __init__(self, session_factory: sessionmaker, dispatcher: NotificationDispatcher,
                 max_attempts: int = 6, batch_size: int = 50, time_budget: float = 120.0,
                 claim_ttl: Optional[timedelta] = None, clock: Clock = utcnow,
                 monotonic: Callable[[], float] = time.monotonic):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.time_budget = time_budget
        # An in-flight claim older than this belongs to a sweep that died
        self.claim_ttl = claim_ttl or timedelta(seconds=time_budget + dispatcher.send_timeout)
        self.clock = clock
        self.monotonic = monotonic

    def sweep(self) -> SweepReport:
        report = SweepReport()
        deadline = self.monotonic() + self.time_budget
        candidates = self._candidates()

        for index, message in enumerate(candidates):
            if self.monotonic() >= deadline:
                report.deferred = len(candidates) - index
                logger.info(f"Recovery sweep time budget spent, {report.deferred} deferred")
                break

            report.examined += 1
            if not self._claim(message):
                report.skipped += 1
                continue

            budget = min(self.dispatcher.max_attempts, self.max_attempts - message.attempt_count)
            logger.info(f"Retrying email {message.id} to {message.recipients} "
                        f"(attempt {message.attempt_count + 1}, up to {budget} tries)")
            outcome = self.dispatcher.deliver(self.dispatcher.envelope_for(message), budget)
            self._finish(message, outcome)

            if outcome.delivered:
                report.delivered += 1
            else:
                report.failed += 1

        logger.info(f"Recovery sweep finished: {report}")
        return report

    def exhausted(self) -> List[NotificationMessage]:
        """Failed rows at the lifetime ceiling, for the operator dashboard"""
        with session_scope(self.session_factory) as session:
            return list(session.execute(
                select(NotificationMessage)
                .where(NotificationMessage.status == DeliveryStatus.FAILED)
                .where(NotificationMessage.attempt_count >= self.max_attempts)
                .order_by(NotificationMessage.last_attempt_at.asc())
            ).scalars())

    def _candidates(self) -> List[NotificationMessage]:
        stale_before = self.clock() - self.claim_ttl
        with session_scope(self.session_factory) as session:
            return list(session.execute(
                select(NotificationMessage)
                .where(NotificationMessage.attempt_count < self.max_attempts)
                .where(or_(
                    NotificationMessage.status == DeliveryStatus.FAILED,
                    and_(NotificationMessage.status == DeliveryStatus.PENDING,
                         NotificationMessage.last_attempt_at < stale_before),
                ))
                .order_by(NotificationMessage.last_attempt_at.asc())
                .limit(self.batch_size)
            ).scalars())

    def _claim(self, message: NotificationMessage) -> bool:
        """Mark the row in flight unless another sweep changed it since it was read"""
        if message.last_attempt_at is None:
            seen_last_attempt = NotificationMessage.last_attempt_at.is_(None)
        else:
            seen_last_attempt = NotificationMessage.last_attempt_at == message.last_attempt_at

        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(NotificationMessage)
                .where(NotificationMessage.id == message.id)
                .where(NotificationMessage.status == message.status)
                .where(NotificationMessage.attempt_count == message.attempt_count)
                .where(seen_last_attempt)
                .values(status=DeliveryStatus.PENDING, last_attempt_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1
        return claimed

    def _finish(self, message: NotificationMessage, outcome: DeliveryOutcome) -> None:
        now = self.clock()
        values = {
            'attempt_count': NotificationMessage.attempt_count + outcome.attempts,
            'last_attempt_at': now,
        }
        if outcome.delivered:
            values.update(status=DeliveryStatus.DELIVERED, delivered_at=now, last_error=None)
        else:
            values.update(status=DeliveryStatus.FAILED, last_error=outcome.last_error)

        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(NotificationMessage)
                .where(NotificationMessage.id == message.id)
                .where(NotificationMessage.status == DeliveryStatus.PENDING)
                .where(NotificationMessage.attempt_count == message.attempt_count)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            recorded = result.rowcount == 1
        if not recorded:
            logger.warning(f"Email {message.id} changed during redelivery, result not recorded")
