# core/rate_limiter.py
"""
Fixed-window admission control keyed by an arbitrary string

The window boundary is `now - (now mod window)`. A key is admitted while
its count in the current window is below `max_attempts`; each admission
increments the count through an atomic conditional update in the store,
so concurrent instances never push a count past the ceiling.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import redis
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from core.audit_logger import AuditContext, AuditEventType, AuditLogger
from core.clock import Clock, epoch_seconds, utcnow
from core.database import session_scope
from core.database_models import RateLimitRecord
from core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


@dataclass
class AdmissionDecision:
    """Outcome of a single check"""
    allowed: bool
    key: str
    limit: int
    window: int
    reset_in: int
    degraded: bool = False  # decided without the store


def window_boundary(now_epoch: int, window: int) -> int:
    return now_epoch - (now_epoch % window)


class SQLRateLimitStore:
    """Rate-limit records in the relational store"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def consume(self, key: str, window_start: int, window: int,
                max_attempts: int, now_epoch: int) -> bool:
        with session_scope(self.session_factory) as session:
            # Opportunistic garbage collection of fully elapsed windows
            session.execute(
                delete(RateLimitRecord).where(RateLimitRecord.expires_at <= now_epoch)
            )
            self._ensure_record(session, key, window_start, window)
            result = session.execute(
                update(RateLimitRecord)
                .where(RateLimitRecord.key == key)
                .where(RateLimitRecord.window_start == window_start)
                .where(RateLimitRecord.count < max_attempts)
                .values(count=RateLimitRecord.count + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def _ensure_record(self, session: Session, key: str, window_start: int, window: int):
        """Insert a zero-count record for the window unless one exists"""
        values = {
            'key': key,
            'window_start': window_start,
            'window_seconds': window,
            'expires_at': window_start + window,
            'count': 0,
        }
        dialect = session.get_bind().dialect.name

        if dialect == 'postgresql':
            session.execute(pg_insert(RateLimitRecord).values(**values).on_conflict_do_nothing(
                index_elements=['key', 'window_start']))
        elif dialect == 'sqlite':
            session.execute(sqlite_insert(RateLimitRecord).values(**values).on_conflict_do_nothing(
                index_elements=['key', 'window_start']))
        else:
            existing = session.execute(
                select(RateLimitRecord.id)
                .where(RateLimitRecord.key == key)
                .where(RateLimitRecord.window_start == window_start)
            ).first()
            if existing is None:
                session.add(RateLimitRecord(**values))
                session.flush()


class RedisRateLimitStore:
    """Rate-limit counters in redis, one key per window with a matching TTL"""

    def __init__(self, client: redis.Redis, prefix: str = 'rate_limit'):
        self.client = client
        self.prefix = prefix

    def consume(self, key: str, window_start: int, window: int,
                max_attempts: int, now_epoch: int) -> bool:
        redis_key = f"{self.prefix}:{key}:{window_start}"

        def _check_and_increment(pipe) -> bool:
            current = pipe.get(redis_key)
            count = int(current) if current is not None else 0
            if count >= max_attempts:
                return False
            pipe.multi()
            pipe.incr(redis_key)
            pipe.expire(redis_key, max(1, window_start + window - now_epoch))
            return True

        try:
            # WATCH/MULTI retries until no concurrent writer touched the key
            return self.client.transaction(_check_and_increment, redis_key,
                                           value_from_callable=True)
        except redis.RedisError as e:
            raise StoreUnavailable(f"Rate-limit store unreachable: {e}") from e


class RateLimiter:
    """
    Admission control over a pluggable store

    If the store is unreachable the limiter fails closed (denies) unless the
    call site opts out, and records the decision as a system audit event.
    """

    def __init__(self, store, audit: Optional[AuditLogger] = None,
                 clock: Clock = utcnow, fail_closed: bool = True):
        self.store = store
        self.audit = audit
        self.clock = clock
        self.fail_closed = fail_closed

    def check_and_consume(self, key: str, window: int, max_attempts: int,
                          fail_closed: Optional[bool] = None) -> bool:
        return self.evaluate(key, window, max_attempts, fail_closed).allowed

    def evaluate(self, key: str, window: int, max_attempts: int,
                 fail_closed: Optional[bool] = None) -> AdmissionDecision:
        if window <= 0:
            raise ValueError("window must be a positive number of seconds")

        now = self.clock()
        now_epoch = epoch_seconds(now)
        window_start = window_boundary(now_epoch, window)
        reset_in = window_start + window - now_epoch

        try:
            allowed = self.store.consume(key, window_start, window, max_attempts, now_epoch)
        except StoreUnavailable as e:
            closed = self.fail_closed if fail_closed is None else fail_closed
            logger.error(f"Rate-limit store unavailable for {key}, "
                         f"{'denying' if closed else 'admitting'} request: {e}")
            if self.audit is not None:
                self.audit.record(AuditEventType.RATE_LIMITER_UNAVAILABLE, AuditContext(
                    occurred_at=now,
                    payload={'key': key, 'decision': 'deny' if closed else 'allow', 'error': str(e)},
                ))
            return AdmissionDecision(allowed=not closed, key=key, limit=max_attempts,
                                     window=window, reset_in=reset_in, degraded=True)

        if not allowed:
            logger.warning(f"Rate limit exceeded for {key} ({max_attempts}/{window}s)")
        return AdmissionDecision(allowed=allowed, key=key, limit=max_attempts,
                                 window=window, reset_in=reset_in)
