"""Loan lifecycle state machine.

Each public method is one unit of work against ``books`` and
``borrow_records``: it runs inside ``unit_of_work`` so every step commits or
rolls back together, and every precondition is checked by the affected-row
count of a conditional update rather than by reading the row first.  The
audit sink is called after the transaction has finished, whatever its
outcome.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from sqlalchemy.exc import IntegrityError

from audit import AuditedService, AuditSink, Principal
from config import Settings, settings as default_settings
from database import SessionFactory, unit_of_work
from errors import (
    BookNotAvailable,
    BookNotBorrowed,
    BookNotFound,
    HasDependentRecords,
    LibraryError,
    LoanAlreadyClosed,
    LoanNotFound,
    NoActiveLoan,
    NoOutstandingFine,
    NotBorrowerOrAlreadyReturned,
    UserNotFound,
    ValidationError,
)
from models import Book, Loan, LossResolution, Resolution
from stores import BookStore, LoanStore

logger = logging.getLogger(__name__)


@dataclass
class LossOutcome:
    loan: Loan
    resolution: LossResolution
    replacement: Optional[Book] = None


@dataclass
class OverdueAssessment:
    loan_id: int
    due_time: datetime
    overdue_units: int
    suggested_fine: float

    @property
    def is_overdue(self) -> bool:
        return self.overdue_units > 0


def parse_amount(value: Any, field: str = "amount") -> float:
    """Accept a positive number or numeric string, as typed by an operator."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    if isinstance(value, str):
        value = value.strip()
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}", field=field) from None
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError(f"{field} must be greater than 0", field=field)
    return amount


def parse_loss_resolution(value: Union[LossResolution, str]) -> LossResolution:
    if isinstance(value, LossResolution):
        return value
    for member in LossResolution:
        if isinstance(value, str) and value.strip().lower() in (member.value.lower(), member.name.lower()):
            return member
    raise ValidationError(f"Unknown loss resolution {value!r}", field="resolution_type")


def require_text(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field} must not be empty", field=field)
    return value.strip()


def is_foreign_key_violation(exc: IntegrityError) -> bool:
    return "foreign key" in str(exc.orig).lower()


class LifecycleService(AuditedService):
    def __init__(
        self,
        session_factory: SessionFactory,
        audit_sink: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = datetime.now,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory
        self.audit_sink = audit_sink
        self.clock = clock
        self.settings = settings or default_settings

    # ---- lifecycle

    def borrow(self, book_id: int, user_id: int, actor: Optional[Principal] = None) -> Loan:
        with self._audited(actor, f"Borrow book {book_id} by user {user_id}"):
            now = self.clock()
            with unit_of_work(self.session_factory) as session:
                books, loans = BookStore(session), LoanStore(session)
                if books.mark_borrowed(book_id) == 0:
                    if not books.exists(book_id):
                        raise BookNotFound(book_id)
                    raise BookNotAvailable(book_id)
                try:
                    loan = loans.open(book_id, user_id, now)
                except IntegrityError as exc:
                    if is_foreign_key_violation(exc):
                        raise UserNotFound(user_id) from exc
                    raise BookNotAvailable(book_id) from exc
        return loan

    def return_book(self, book_id: int, user_id: int, actor: Optional[Principal] = None) -> Loan:
        with self._audited(actor, f"Return book {book_id} by user {user_id}"):
            now = self.clock()
            with unit_of_work(self.session_factory) as session:
                books, loans = BookStore(session), LoanStore(session)
                loan_id = loans.active_id(book_id, user_id)
                if loan_id is None or loans.close_by_id(loan_id, now) == 0:
                    raise NotBorrowerOrAlreadyReturned(book_id, user_id)
                # The loan row decides whether the return happened; the book may already have moved on.
                if books.mark_available(book_id) == 0:
                    logger.debug("Book %s was not in borrowed state on return", book_id)
                loan = loans.get(loan_id, refresh=True)
        return loan

    def assess_overdue_fine(self, loan_id: int, fine_amount: Any, actor: Optional[Principal] = None) -> Loan:
        with self._audited(actor, f"Assess overdue fine {fine_amount} on loan {loan_id}"):
            amount = parse_amount(fine_amount, "fine_amount")
            now = self.clock()
            with unit_of_work(self.session_factory) as session:
                books, loans = BookStore(session), LoanStore(session)
                if loans.close_by_id(loan_id, now, amount, Resolution.OVERDUE_FINE) == 0:
                    if not loans.exists(loan_id):
                        raise LoanNotFound(loan_id)
                    raise LoanAlreadyClosed(loan_id)
                loan = loans.get(loan_id, refresh=True)
                if self.settings.release_book_on_fine:
                    books.mark_available(loan.book_id)
        return loan

    def resolve_loss(
        self,
        book_id: int,
        resolution_type: Union[LossResolution, str],
        amount: Any = 0.0,
        actor: Optional[Principal] = None,
    ) -> LossOutcome:
        with self._audited(actor, f"Resolve loss of book {book_id} ({resolution_type})"):
            resolution = parse_loss_resolution(resolution_type)
            if resolution is LossResolution.FINE:
                fine = parse_amount(amount, "amount")
            now = self.clock()
            with unit_of_work(self.session_factory) as session:
                books, loans = BookStore(session), LoanStore(session)
                if resolution is LossResolution.FINE:
                    if books.mark_lost(book_id) == 0:
                        raise self._not_borrowed(books, book_id)
                    loan = self._close_active(loans, book_id, now, fine, Resolution.LOSS_FINE)
                    replacement = None
                else:
                    original = books.get(book_id)
                    if original is None:
                        raise BookNotFound(book_id)
                    if books.mark_deleted(book_id) == 0:
                        raise BookNotBorrowed(book_id, original.status)
                    replacement = books.add(original.title, original.author)
                    loan = self._close_active(loans, book_id, now, 0.0, Resolution.LOSS_REPLACEMENT)
        return LossOutcome(loan=loan, resolution=resolution, replacement=replacement)

    def pay_fine(self, loan_id: int, actor: Optional[Principal] = None) -> Loan:
        with self._audited(actor, f"Pay fine on loan {loan_id}"):
            with unit_of_work(self.session_factory) as session:
                loans = LoanStore(session)
                if loans.mark_fine_paid(loan_id) == 0:
                    if not loans.exists(loan_id):
                        raise LoanNotFound(loan_id)
                    raise NoOutstandingFine(loan_id)
                loan = loans.get(loan_id, refresh=True)
        return loan

    def suggest_overdue_fine(self, loan_id: int, now: Optional[datetime] = None) -> OverdueAssessment:
        now = now or self.clock()
        period: timedelta = self.settings.loan_period
        with unit_of_work(self.session_factory) as session:
            loan = LoanStore(session).get(loan_id)
            if loan is None:
                raise LoanNotFound(loan_id)
            units = loan.overdue_units(period, self.settings.overdue_unit, now)
            return OverdueAssessment(
                loan_id=loan.id,
                due_time=loan.due_time(period),
                overdue_units=units,
                suggested_fine=units * self.settings.fine_per_unit,
            )

    @staticmethod
    def _close_active(loans: LoanStore, book_id: int, now: datetime, fine: float, resolution: Resolution) -> Loan:
        loan_id = loans.active_id(book_id)
        if loan_id is None or loans.close_by_id(loan_id, now, fine, resolution) == 0:
            raise NoActiveLoan(book_id)
        return loans.get(loan_id, refresh=True)

    @staticmethod
    def _not_borrowed(books: BookStore, book_id: int) -> LibraryError:
        book = books.get(book_id)
        if book is None:
            return BookNotFound(book_id)
        return BookNotBorrowed(book_id, book.status)

    # ---- catalogue

    def add_book(self, title: str, author: str, actor: Optional[Principal] = None) -> Book:
        with self._audited(actor, f"Add book {title!r}"):
            title, author = require_text(title, "title"), require_text(author, "author")
            with unit_of_work(self.session_factory) as session:
                book = BookStore(session).add(title, author)
        return book

    def update_book(self, book_id: int, title: str, author: str, actor: Optional[Principal] = None) -> Book:
        with self._audited(actor, f"Update book {book_id}"):
            title, author = require_text(title, "title"), require_text(author, "author")
            with unit_of_work(self.session_factory) as session:
                books = BookStore(session)
                if books.update_details(book_id, title, author) == 0:
                    raise BookNotFound(book_id)
                book = books.get(book_id, refresh=True)
        return book

    def delete_book(self, book_id: int, actor: Optional[Principal] = None) -> None:
        with self._audited(actor, f"Delete book {book_id}"):
            with unit_of_work(self.session_factory) as session:
                try:
                    deleted = BookStore(session).delete(book_id)
                except IntegrityError as exc:
                    raise HasDependentRecords("book", book_id) from exc
                if deleted == 0:
                    raise BookNotFound(book_id)
