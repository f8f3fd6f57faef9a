# core/accounts.py
"""
Account directory: the downstream identity records created when an
invitation is redeemed
"""

import logging
from dataclasses import dataclass

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from core.clock import Clock, utcnow
from core.database import session_scope
from core.database_models import Account, Profile
from core.errors import AccountProvisioningError, AlreadyRegistered, StoreUnavailable
from core.security import hash_password

logger = logging.getLogger(__name__)


@dataclass
class AccountRecord:
    id: str
    email: str
    role: str = 'sales_agent'


class AccountDirectory:
    """SQL-backed account and profile records"""

    def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def exists(self, email: str) -> bool:
        with session_scope(self.session_factory) as session:
            count = session.execute(
                select(func.count(Account.id)).where(func.lower(Account.email) == email.lower())
            ).scalar_one()
        return count > 0

    def create_account(self, email: str, password: str) -> AccountRecord:
        """
        Raises:
            AlreadyRegistered: the address is taken, including by a concurrent caller
            StoreUnavailable: the store could not be reached
        """
        hashed, salt = hash_password(password)
        account = Account(
            email=email,
            password_hash=hashed,
            password_salt=salt,
            email_confirmed_at=self.clock(),
            created_at=self.clock(),
        )
        try:
            with session_scope(self.session_factory) as session:
                session.add(account)
        except IntegrityError as e:
            # e.orig carries the constraint name only, never the bound parameters
            logger.warning(f"Account insert rejected: {e.orig}")
            raise AlreadyRegistered() from e

        logger.info(f"Account {account.id} created")
        return AccountRecord(id=account.id, email=account.email)

    def create_profile(self, account: AccountRecord, role: str = 'sales_agent') -> AccountRecord:
        try:
            with session_scope(self.session_factory) as session:
                session.add(Profile(
                    id=account.id,
                    email=account.email,
                    role=role,
                    created_at=self.clock(),
                ))
        except IntegrityError as e:
            logger.error(f"Profile insert for {account.id} rejected: {e.orig}")
            raise AccountProvisioningError('Failed to create user profile') from e
        except StoreUnavailable as e:
            logger.error(f"Profile insert for {account.id} failed: store unavailable")
            raise AccountProvisioningError('Failed to create user profile') from e

        return AccountRecord(id=account.id, email=account.email, role=role)

    def delete_account(self, account_id: str) -> None:
        with session_scope(self.session_factory) as session:
            session.execute(delete(Profile).where(Profile.id == account_id))
            session.execute(delete(Account).where(Account.id == account_id))
        logger.info(f"Account {account_id} deleted")
