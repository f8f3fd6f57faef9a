# core/token_manager.py
"""
Invitation token lifecycle

    pending --accept(token, email) before expires_at--> accepted
    pending --(now >= expires_at)--> expired   (evaluated at read time,
                                                 stored when reissued)

Validation is a single query carrying every condition, and acceptance is a
single conditional UPDATE, so two concurrent redemptions of the same token
cannot both succeed. Callers always see the same generic InvalidOrExpired
error; the precise reason only goes into the audit payload.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from core.accounts import AccountDirectory
from core.audit_logger import AuditContext, AuditEventType, AuditLogger
from core.clock import Clock, utcnow
from core.database import session_scope
from core.database_models import Invitation, InvitationStatus
from core.errors import AlreadyRegistered, Conflict, InvalidOrExpired, StoreUnavailable
from core.security import generate_token

logger = logging.getLogger(__name__)


class InvitationTokenManager:
    """Issues, validates and retires single-use invitation tokens"""

    def __init__(self, session_factory: sessionmaker, audit: AuditLogger,
                 accounts: AccountDirectory, clock: Clock = utcnow,
                 default_ttl: timedelta = timedelta(days=7)):
        self.session_factory = session_factory
        self.audit = audit
        self.accounts = accounts
        self.clock = clock
        self.default_ttl = default_ttl

    def issue(self, email: str, ttl: Optional[timedelta] = None,
              created_by: Optional[str] = None,
              context: Optional[AuditContext] = None) -> Invitation:
        """
        Create a pending invitation for `email`

        Lapsed pending invitations for the address are marked expired in the
        same transaction as the insert. The partial unique index on pending
        addresses decides between concurrent issuers.

        Raises:
            AlreadyRegistered: an account exists for the address
            Conflict: an unexpired, unaccepted invitation exists for the address
        """
        now = self.clock()
        context = self._context(context, now, created_by)
        ttl = ttl or self.default_ttl

        try:
            if self.accounts.exists(email):
                raise AlreadyRegistered()

            try:
                with session_scope(self.session_factory) as session:
                    session.execute(
                        update(Invitation)
                        .where(func.lower(Invitation.email) == email.lower())
                        .where(Invitation.status == InvitationStatus.PENDING)
                        .where(Invitation.expires_at <= now)
                        .values(status=InvitationStatus.EXPIRED)
                        .execution_options(synchronize_session=False)
                    )
                    if self._active_invitation(session, email, now) is not None:
                        raise Conflict()

                    invitation = Invitation(
                        email=email,
                        token=generate_token(),
                        status=InvitationStatus.PENDING,
                        expires_at=now + ttl,
                        created_by=created_by,
                        created_at=now,
                    )
                    session.add(invitation)
            except IntegrityError as e:
                logger.info(f"Concurrent invitation for the same address lost the insert: {e.orig}")
                raise Conflict() from e
        except (AlreadyRegistered, Conflict, StoreUnavailable) as e:
            self.audit.record(AuditEventType.INVITATION_SENT, context.with_payload(
                email=email, success=False, error=str(e)))
            raise

        self.audit.record(AuditEventType.INVITATION_SENT, context.with_payload(
            email=email, success=True, invitationId=invitation.id))
        logger.info(f"Invitation {invitation.id} issued, expires {invitation.expires_at.isoformat()}")
        return invitation

    def check(self, token: str, email: str) -> Invitation:
        """
        Return the pending, unexpired invitation matching (token, email)
        without recording an audit event

        Raises:
            InvalidOrExpired: carrying the precise reason for the caller's audit record
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            invitation = session.execute(
                select(Invitation)
                .where(Invitation.token == token)
                .where(Invitation.email == email)
                .where(Invitation.status == InvitationStatus.PENDING)
                .where(Invitation.expires_at > now)
            ).scalar_one_or_none()

            if invitation is None:
                raise InvalidOrExpired(reason=self._failure_reason(session, token, email, now))
        return invitation

    def validate(self, token: str, email: str,
                 context: Optional[AuditContext] = None) -> Invitation:
        """Return the pending, unexpired invitation matching (token, email)"""
        context = self._context(context, self.clock())

        try:
            invitation = self.check(token, email)
        except (InvalidOrExpired, StoreUnavailable) as e:
            self.audit.record(AuditEventType.INVALID_INVITATION_ATTEMPT, context.with_payload(
                email=email, success=False, error=getattr(e, 'reason', None) or str(e)))
            raise

        self.audit.record(AuditEventType.INVITATION_VALIDATED, context.with_payload(
            email=email, success=True, invitationId=invitation.id))
        return invitation

    def accept(self, token: str, email: str, user_id: str,
               context: Optional[AuditContext] = None) -> Invitation:
        """Flip a pending, unexpired invitation to accepted exactly once"""
        now = self.clock()
        context = self._context(context, now, user_id)

        try:
            with session_scope(self.session_factory) as session:
                result = session.execute(
                    update(Invitation)
                    .where(Invitation.token == token)
                    .where(Invitation.email == email)
                    .where(Invitation.status == InvitationStatus.PENDING)
                    .where(Invitation.expires_at > now)
                    .values(status=InvitationStatus.ACCEPTED,
                            accepted_at=now,
                            accepted_by_user_id=user_id)
                    .execution_options(synchronize_session=False)
                )

                invitation = None
                reason = None
                if result.rowcount == 1:
                    invitation = session.execute(
                        select(Invitation).where(Invitation.token == token)
                    ).scalar_one()
                else:
                    reason = self._failure_reason(session, token, email, now)
        except StoreUnavailable as e:
            self.audit.record(AuditEventType.INVITATION_ACCEPTED, context.with_payload(
                email=email, success=False, error=str(e)))
            raise

        if invitation is None:
            self.audit.record(AuditEventType.INVITATION_ACCEPTED, context.with_payload(
                email=email, success=False, error=reason))
            raise InvalidOrExpired(reason=reason)

        self.audit.record(AuditEventType.INVITATION_ACCEPTED, context.with_payload(
            email=email, success=True, invitationId=invitation.id))
        logger.info(f"Invitation {invitation.id} accepted by {user_id}")
        return invitation

    def get(self, invitation_id: str) -> Optional[Invitation]:
        with session_scope(self.session_factory) as session:
            return session.get(Invitation, invitation_id)

    def _active_invitation(self, session: Session, email: str, now: datetime) -> Optional[Invitation]:
        return session.execute(
            select(Invitation)
            .where(func.lower(Invitation.email) == email.lower())
            .where(Invitation.status == InvitationStatus.PENDING)
            .where(Invitation.expires_at > now)
            .limit(1)
        ).scalar_one_or_none()

    def _failure_reason(self, session: Session, token: str, email: str, now: datetime) -> str:
        """Why a lookup failed; recorded for operators, never returned to clients"""
        invitation = session.execute(
            select(Invitation).where(Invitation.token == token)
        ).scalar_one_or_none()

        if invitation is None:
            return 'token_not_found'
        if invitation.email != email:
            return 'email_mismatch'
        status = invitation.effective_status(now)
        if status == InvitationStatus.ACCEPTED:
            return 'already_accepted'
        if status == InvitationStatus.EXPIRED:
            return 'expired'
        return 'unknown'

    def _context(self, context: Optional[AuditContext], now: datetime,
                 actor_id: Optional[str] = None) -> AuditContext:
        context = context or AuditContext()
        if context.occurred_at is None or (actor_id and context.actor_id is None):
            context = AuditContext(
                source_address=context.source_address,
                client_agent=context.client_agent,
                actor_id=context.actor_id or actor_id,
                payload=dict(context.payload),
                occurred_at=context.occurred_at or now,
            )
        return context
