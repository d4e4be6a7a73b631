from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from admin import AdminService
from config import Settings
from database import create_db_engine, create_session_factory, init_db
from lifecycle import LifecycleService
from models import Book, Loan


class RecordingAuditSink:
    def __init__(self):
        self.entries = []

    def record(self, actor, operation):
        self.entries.append((actor, operation))

    @property
    def operations(self):
        return [operation for _, operation in self.entries]


class FakeClock:
    def __init__(self, start=datetime(2024, 3, 1, 9, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def engine(tmp_path):
    # Each test gets its own database file
    db_file = tmp_path / "library.db"
    engine = create_db_engine(f"sqlite:///{db_file}", busy_timeout=30)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(test_mode=False, loan_period_days=30, fine_per_unit=1.0, release_book_on_fine=False)


@pytest.fixture
def service(session_factory, audit, clock, settings):
    return LifecycleService(session_factory, audit_sink=audit, clock=clock, settings=settings)


@pytest.fixture
def admin(session_factory, audit):
    return AdminService(session_factory, audit_sink=audit)


@pytest.fixture
def make_user(admin):
    counter = {"n": 0}

    def _make(username=None, role="user"):
        counter["n"] += 1
        return admin.add_user(username or f"reader{counter['n']}", "secret-pass", role)

    return _make


@pytest.fixture
def make_book(service):
    def _make(title="Ulysses", author="James Joyce"):
        return service.add_book(title, author)

    return _make


@pytest.fixture
def db(session_factory):
    """Small read helpers for asserting on persisted state."""

    class _Reader:
        def book(self, book_id):
            with session_factory() as session:
                return session.get(Book, book_id)

        def loan(self, loan_id):
            with session_factory() as session:
                return session.get(Loan, loan_id)

        def loans_for_book(self, book_id):
            with session_factory() as session:
                return list(session.scalars(select(Loan).where(Loan.book_id == book_id).order_by(Loan.id)))

        def active_loans(self, book_id):
            return [loan for loan in self.loans_for_book(book_id) if loan.is_active]

        def book_count(self):
            with session_factory() as session:
                return session.scalar(select(func.count()).select_from(Book))

    return _Reader()
