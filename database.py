"""Database engine, session factory and the scoped unit of work."""
import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import settings
from errors import LibraryError, PersistenceError
from models import Base

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def _enable_sqlite_write_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write and never lets a reader upgrade
    # under contention; take the write lock up front so writers queue on the busy timeout.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: Optional[str] = None, busy_timeout: Optional[float] = None) -> Engine:
    url = url or settings.database_url
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=settings.db_echo,
            connect_args={
                "check_same_thread": False,
                "timeout": busy_timeout if busy_timeout is not None else settings.db_busy_timeout,
            },
        )
        _enable_sqlite_write_transactions(engine)
        return engine
    return create_engine(url, echo=settings.db_echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine, checkfirst=True)


@contextmanager
def unit_of_work(session_factory: SessionFactory) -> Iterator[Session]:
    """Run a block in one transaction.

    Commits when the block finishes, rolls back on any exception.  Library
    errors propagate unchanged; driver errors are re-raised as
    ``PersistenceError`` so callers can tell a rejected request from an
    infrastructure failure.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except LibraryError:
        _rollback(session)
        raise
    except SQLAlchemyError as exc:
        logger.error("Transaction failed, rolling back", exc_info=True)
        _rollback(session)
        raise PersistenceError(f"Database operation failed: {exc.__class__.__name__}") from exc
    except Exception:
        _rollback(session)
        raise
    finally:
        session.close()


def _rollback(session: Session) -> None:
    try:
        session.rollback()
    except SQLAlchemyError as exc:
        raise PersistenceError("Rollback failed") from exc
