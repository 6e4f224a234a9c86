import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import LedgerError, StorageError
from .models import Base

logger = logging.getLogger(__name__)


def make_engine(url, echo=False):
    connect_args = {}
    if url.startswith("sqlite"):
        # Flask serves requests from worker threads; give writers time to
        # queue on the database lock instead of failing immediately.
        connect_args = {"check_same_thread": False, "timeout": 15}
    return create_engine(url, echo=echo, future=True, connect_args=connect_args)


def make_session_factory(engine, create_tables=True):
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory):
    """
    One database transaction per ledger operation.

    Commits when the block finishes, rolls back on any error so that no
    partial cross-record write is ever visible. Driver errors surface as
    StorageError.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except LedgerError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Storage failure, transaction rolled back")
        raise StorageError(f"Storage failure: {e.__class__.__name__}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
