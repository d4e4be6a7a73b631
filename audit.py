import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from database import SessionFactory
from errors import LibraryError, PersistenceError
from models import AuditEntry

logger = logging.getLogger(__name__)

UNKNOWN_ACTOR = "SYSTEM_UNKNOWN"


@dataclass(frozen=True)
class Principal:
    """The caller an operation is performed on behalf of."""

    user_id: Optional[int] = None
    username: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.username:
            return self.username
        if self.user_id is not None:
            return f"user#{self.user_id}"
        return UNKNOWN_ACTOR


class AuditSink(Protocol):
    def record(self, actor: Optional[Principal], operation: str) -> None:
        ...


class LoggingAuditSink:
    def __init__(self, name: str = "library.audit") -> None:
        self.logger = logging.getLogger(name)

    def record(self, actor: Optional[Principal], operation: str) -> None:
        username = actor.display_name if actor else UNKNOWN_ACTOR
        self.logger.info("[%s] %s", username, operation)


class DatabaseAuditSink:
    """Writes one ``sys_logs`` row per operation in its own short session.

    A failed write is logged and dropped: the audited operation has already
    committed and must not be reported as failed.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    def record(self, actor: Optional[Principal], operation: str) -> None:
        username = actor.display_name if actor else UNKNOWN_ACTOR
        session = self.session_factory()
        try:
            session.add(AuditEntry(username=username, operation=operation[:500], op_time=datetime.now()))
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("Failed to write audit log entry %r: %s", operation, exc)
        finally:
            session.close()


class AuditedService:
    """Base for services that report every operation to an audit sink.

    Success and rejection are both recorded, after the operation's
    transaction has finished.  A failing sink is logged and never changes
    the operation's outcome.
    """

    audit_sink: Optional[AuditSink] = None

    @property
    def _logger(self) -> logging.Logger:
        return logging.getLogger(type(self).__module__)

    def _record(self, actor: Optional[Principal], operation: str) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.record(actor, operation)
        except Exception:
            self._logger.exception("Audit sink failed for %r", operation)

    @contextmanager
    def _audited(self, actor: Optional[Principal], description: str) -> Iterator[None]:
        try:
            yield
        except PersistenceError as exc:
            self._logger.error("%s failed: %s", description, exc.message)
            self._record(actor, f"FAILED {description}: {exc.message}")
            raise
        except LibraryError as exc:
            self._logger.warning("%s rejected: %s", description, exc.message)
            self._record(actor, f"FAILED {description}: {exc.message}")
            raise
        self._logger.info("%s", description)
        self._record(actor, description)


def build_audit_sink(kind: str, session_factory: SessionFactory) -> AuditSink:
    if kind == "log":
        return LoggingAuditSink()
    if kind == "database":
        return DatabaseAuditSink(session_factory)
    raise ValueError(f"Unknown audit sink: {kind}")
