# core/services.py
"""
Wiring of the subsystem's components from configuration
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping, Optional

import redis
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from core.accounts import AccountDirectory
from core.audit_logger import AuditLogger, SuspiciousActivityMonitor
from core.clock import Clock, utcnow
from core.database import create_session_factory, create_store_engine, init_db
from core.notification_dispatcher import NotificationDispatcher
from core.rate_limiter import RateLimiter, RedisRateLimitStore, SQLRateLimitStore
from core.recovery_sweep import FailedDeliverySweep
from core.template_engine import NotificationTemplateEngine, default_sender
from core.token_manager import InvitationTokenManager
from core.transport import LoggingTransport, MailTransport, SMTPTransport

logger = logging.getLogger(__name__)


@dataclass
class OnboardingServices:
    engine: Engine
    session_factory: sessionmaker
    audit: AuditLogger
    suspicious_activity: SuspiciousActivityMonitor
    rate_limiter: RateLimiter
    accounts: AccountDirectory
    tokens: InvitationTokenManager
    templates: NotificationTemplateEngine
    dispatcher: NotificationDispatcher
    recovery: FailedDeliverySweep
    config: Mapping[str, Any]

    def rate_limit(self, scope: str):
        """(max_attempts, window_seconds) for an endpoint scope"""
        return self.config['RATE_LIMITS'][scope]

    def shutdown(self) -> None:
        self.dispatcher.shutdown()
        self.engine.dispose()


def build_transport(config: Mapping[str, Any]) -> MailTransport:
    if not config.get('SMTP_HOST'):
        logger.warning("SMTP_HOST not set, outbound mail will only be logged")
        return LoggingTransport()

    return SMTPTransport(
        host=config['SMTP_HOST'],
        port=int(config.get('SMTP_PORT', 465)),
        username=config.get('SMTP_USER'),
        password=config.get('SMTP_PASS'),
        timeout=float(config.get('SMTP_TIMEOUT', 20.0)),
    )


def build_services(config: Mapping[str, Any], engine: Optional[Engine] = None,
                   transport: Optional[MailTransport] = None,
                   redis_client: Optional[redis.Redis] = None,
                   clock: Clock = utcnow) -> OnboardingServices:
    """
    Build every component from a configuration mapping

    Args:
        config: Flask-style configuration mapping
        engine: Existing store engine (created from DATABASE_URL when omitted)
        transport: Outbound transport (SMTP or logging transport when omitted)
        redis_client: Client for the redis rate-limit backend
        clock: Clock shared by every component
    """
    if engine is None:
        engine = create_store_engine(
            config['DATABASE_URL'],
            pool_size=config.get('DB_POOL_SIZE', 10),
            max_overflow=config.get('DB_MAX_OVERFLOW', 20),
        )
    if config.get('CREATE_TABLES'):
        init_db(engine)

    session_factory = create_session_factory(engine)
    audit = AuditLogger(session_factory, clock=clock)

    backend = config.get('RATE_LIMIT_BACKEND', 'sql')
    if backend == 'redis':
        client = redis_client or redis.Redis.from_url(
            config['REDIS_URL'], decode_responses=True, socket_connect_timeout=5, socket_timeout=5)
        limit_store = RedisRateLimitStore(client)
    elif backend == 'sql':
        limit_store = SQLRateLimitStore(session_factory)
    else:
        raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {backend}")

    accounts = AccountDirectory(session_factory, clock=clock)
    sender = default_sender(config.get('EMAIL_FROM_NAME', 'Ireland Pay'),
                            config.get('SMTP_FROM', 'notifications@agent-agreement-nexus.com'))
    dispatcher = NotificationDispatcher(
        transport or build_transport(config),
        session_factory,
        audit=audit,
        max_attempts=config.get('NOTIFICATION_MAX_ATTEMPTS', 3),
        send_timeout=config.get('NOTIFICATION_SEND_TIMEOUT', 30.0),
        backoff_base=config.get('NOTIFICATION_BACKOFF_BASE', 0.5),
        default_sender=sender,
        clock=clock,
    )

    services = OnboardingServices(
        engine=engine,
        session_factory=session_factory,
        audit=audit,
        suspicious_activity=SuspiciousActivityMonitor(
            audit,
            threshold=config.get('SUSPICIOUS_DENIAL_THRESHOLD', 10),
            lookback_hours=config.get('SUSPICIOUS_LOOKBACK_HOURS', 24),
        ),
        rate_limiter=RateLimiter(limit_store, audit=audit, clock=clock,
                                 fail_closed=config.get('RATE_LIMIT_FAIL_CLOSED', True)),
        accounts=accounts,
        tokens=InvitationTokenManager(
            session_factory, audit, accounts, clock=clock,
            default_ttl=timedelta(days=config.get('INVITATION_TTL_DAYS', 7)),
        ),
        templates=NotificationTemplateEngine(
            company_name=config.get('COMPANY_NAME', 'Ireland Pay'),
            default_sender=sender,
        ),
        dispatcher=dispatcher,
        recovery=FailedDeliverySweep(
            session_factory, dispatcher,
            max_attempts=config.get('NOTIFICATION_RECOVERY_MAX_ATTEMPTS', 6),
            batch_size=config.get('RECOVERY_BATCH_SIZE', 50),
            time_budget=config.get('RECOVERY_TIME_BUDGET', 120.0),
            clock=clock,
        ),
        config=config,
    )
    logger.info(f"Onboarding services ready (rate-limit backend: {backend})")
    return services
