from datetime import datetime
import uuid
from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, Text, ForeignKey, Index, UniqueConstraint, func
)

from sqlalchemy.orm import declarative_base, relationship

from core.clock import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class InvitationStatus:
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    EXPIRED = 'expired'


class DeliveryStatus:
    PENDING = 'pending'
    DELIVERED = 'delivered'
    FAILED = 'failed'


class RateLimitRecord(Base):
    __tablename__ = 'rate_limits'
    __table_args__ = (
        UniqueConstraint('key', 'window_start', name='uq_rate_limits_key_window'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(255), nullable=False, index=True)
    window_start = Column(Integer, nullable=False)  # epoch seconds, truncated to the window
    window_seconds = Column(Integer, nullable=False)
    expires_at = Column(Integer, nullable=False, index=True)  # window_start + window_seconds
    count = Column(Integer, nullable=False, default=1)


class AuditEvent(Base):
    __tablename__ = 'audit_events'
    __table_args__ = (
        Index('ix_audit_events_source_type_time', 'source_address', 'event_type', 'occurred_at'),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_type = Column(String(64), nullable=False)
    actor_id = Column(String(36))
    source_address = Column(String(255), nullable=False, default='system')
    client_agent = Column(String(512), nullable=False, default='system')
    payload = Column(JSON, nullable=False, default=dict)
    occurred_at = Column(DateTime, nullable=False)  # stamped when the action happened
    recorded_at = Column(DateTime, nullable=False, default=utcnow)


class Invitation(Base):
    __tablename__ = 'invitations'

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, index=True)
    token = Column(String(128), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=InvitationStatus.PENDING)
    expires_at = Column(DateTime, nullable=False)
    created_by = Column(String(36))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    accepted_at = Column(DateTime)
    accepted_by_user_id = Column(String(36))

    def effective_status(self, now: datetime) -> str:
        """Expiry is evaluated at read time; rows are only marked expired when reissued"""
        if self.status == InvitationStatus.PENDING and now >= self.expires_at:
            return InvitationStatus.EXPIRED
        return self.status


# At most one pending invitation per address, case-insensitively
Index(
    'uq_invitations_pending_email',
    func.lower(Invitation.__table__.c.email),
    unique=True,
    sqlite_where=Invitation.__table__.c.status == InvitationStatus.PENDING,
    postgresql_where=Invitation.__table__.c.status == InvitationStatus.PENDING,
)


class NotificationMessage(Base):
    __tablename__ = 'notification_messages'
    __table_args__ = (
        Index('ix_notification_messages_status_last_attempt', 'status', 'last_attempt_at'),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    recipients = Column(JSON, nullable=False)  # list of formatted addresses
    sender = Column(String(255))
    subject = Column(String(255), nullable=False)
    html_body = Column(Text)
    text_body = Column(Text)
    template_kind = Column(String(50), nullable=False, default='other')
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime)
    last_error = Column(Text)
    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    delivered_at = Column(DateTime)


class Account(Base):
    __tablename__ = 'accounts'

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    password_salt = Column(String(64), nullable=False)
    email_confirmed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    profile = relationship("Profile", back_populates="account", uselist=False,
                           cascade="all, delete-orphan")


class Profile(Base):
    __tablename__ = 'profiles'

    id = Column(String(36), ForeignKey('accounts.id', ondelete='CASCADE'), primary_key=True)
    email = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False, default='sales_agent')
    first_name = Column(String(100), nullable=False, default='')
    last_name = Column(String(100), nullable=False, default='')
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    account = relationship("Account", back_populates="profile")
