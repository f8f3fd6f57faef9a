"""
Pytest fixtures for the onboarding notification service.

Provides:
- An in-memory store with the schema created
- A controllable clock
- A scripted mail transport
- Component and Flask application fixtures
"""

import threading
from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from sqlalchemy import select

from app import create_app
from core.accounts import AccountDirectory
from core.audit_logger import AuditLogger
from core.database import create_session_factory, create_store_engine, init_db, session_scope
from core.database_models import AuditEvent
from core.notification_dispatcher import NotificationDispatcher
from core.token_manager import InvitationTokenManager
from core.transport import Envelope, MailTransport, TransportResult


class FakeClock:
    """Naive UTC clock that only moves when told to"""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedTransport(MailTransport):
    """
    Transport whose outcomes are scripted per call.

    Each script entry is True (delivered), False (rejected), an exception
    instance (raised) or 'hang' (blocks until released). Once the script
    runs out every call uses `default`.
    """

    def __init__(self, script: Optional[list] = None, default=True):
        self.script = list(script or [])
        self.default = default
        self.sent: List[Envelope] = []
        self.released = threading.Event()

    def send(self, envelope: Envelope) -> TransportResult:
        self.sent.append(envelope)
        outcome = self.script.pop(0) if self.script else self.default

        if outcome == 'hang':
            self.released.wait(5)
            return TransportResult(success=False, error='released')
        if isinstance(outcome, Exception):
            raise outcome
        if outcome:
            return TransportResult(success=True, id=f"<{len(self.sent)}@test>")
        return TransportResult(success=False, error='550 mailbox unavailable')

    @property
    def calls(self) -> int:
        return len(self.sent)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    engine = create_store_engine('sqlite://')
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def audit(session_factory, clock):
    return AuditLogger(session_factory, clock=clock)


@pytest.fixture
def accounts(session_factory, clock):
    return AccountDirectory(session_factory, clock=clock)


@pytest.fixture
def tokens(session_factory, audit, accounts, clock):
    return InvitationTokenManager(session_factory, audit, accounts, clock=clock)


@pytest.fixture
def transport():
    transport = ScriptedTransport()
    yield transport
    transport.released.set()


@pytest.fixture
def dispatcher(transport, session_factory, audit, clock):
    dispatcher = NotificationDispatcher(
        transport, session_factory, audit=audit, max_attempts=3,
        send_timeout=5.0, backoff_base=0.0, default_sender='Onboarding <noreply@example.com>',
        clock=clock, sleep=lambda seconds: None,
    )
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def app(transport, clock):
    app = create_app('testing', transport=transport, clock=clock)
    yield app
    app.onboarding.shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def audit_events():
    """Return a reader of persisted audit events, optionally filtered by type"""
    def read(session_factory, event_type: Optional[str] = None) -> List[AuditEvent]:
        query = select(AuditEvent).order_by(AuditEvent.recorded_at)
        if event_type is not None:
            query = query.where(AuditEvent.event_type == event_type)
        with session_scope(session_factory) as session:
            return list(session.execute(query).scalars())
    return read


@pytest.fixture
def make_transport():
    """Factory for extra scripted transports, released at teardown"""
    created = []

    def make(script: Optional[list] = None, default=True) -> ScriptedTransport:
        transport = ScriptedTransport(script, default)
        created.append(transport)
        return transport

    yield make
    for transport in created:
        transport.released.set()
