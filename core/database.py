# core/database.py
"""
Engine and session plumbing for the durable store
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.database_models import Base
from core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


def create_store_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20,
                        echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine for the durable store

    In-memory SQLite shares one connection across threads so every session
    sees the same database.
    """
    engine_options: Dict[str, Any] = {'echo': echo, 'future': True}

    if database_url in ('sqlite://', 'sqlite:///:memory:'):
        engine_options.update({
            'poolclass': StaticPool,
            'connect_args': {'check_same_thread': False},
        })
    elif database_url.startswith('sqlite'):
        engine_options['connect_args'] = {'check_same_thread': False, 'timeout': 30}
    else:
        engine_options.update({
            'pool_size': pool_size,
            'max_overflow': max_overflow,
            'pool_pre_ping': True,
            'pool_recycle': 3600,
        })

    engine = create_engine(database_url, **engine_options)
    logger.info(f"Store engine created: {database_url.split('@')[-1]}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_db(engine: Engine) -> None:
    """Create tables (migrations own this in production)"""
    Base.metadata.create_all(engine)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Transactional scope: commit on success, roll back on error

    Constraint violations propagate as IntegrityError for the caller to map
    onto a domain error. Other store-level failures surface as
    StoreUnavailable so callers can choose between failing closed and
    degrading.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except IntegrityError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreUnavailable(str(e)) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_store(engine: Engine) -> bool:
    """Connectivity probe for health checks"""
    try:
        with engine.connect() as conn:
            conn.execute(text('SELECT 1'))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Store health check failed: {e}")
        return False
