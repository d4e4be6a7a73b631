"""Row-level access to books, borrow records and users.

Every state-changing method issues a single conditional statement whose
WHERE clause carries the precondition, and returns the affected-row count.
Callers treat ``0`` as "the precondition did not hold".  A read such as
``LoanStore.active_id`` only locates the row to update; the guarded
statement still decides whether the write happens.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from models import Book, BookStatus, Loan, Resolution, Role, User


def _rowcount(session: Session, statement) -> int:
    result = session.execute(statement.execution_options(synchronize_session=False))
    return result.rowcount


class BookStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, book_id: int, refresh: bool = False) -> Optional[Book]:
        stmt = select(Book).where(Book.id == book_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        return self.session.scalars(stmt).first()

    def exists(self, book_id: int) -> bool:
        return self.session.scalar(select(func.count()).select_from(Book).where(Book.id == book_id)) > 0

    def add(self, title: str, author: str) -> Book:
        book = Book(title=title, author=author, status=BookStatus.AVAILABLE)
        self.session.add(book)
        self.session.flush()
        return book

    def transition(self, book_id: int, from_status: BookStatus, to_status: BookStatus) -> int:
        stmt = (
            update(Book)
            .where(Book.id == book_id, Book.status == from_status)
            .values(status=to_status)
        )
        return _rowcount(self.session, stmt)

    def mark_borrowed(self, book_id: int) -> int:
        return self.transition(book_id, BookStatus.AVAILABLE, BookStatus.BORROWED)

    def mark_available(self, book_id: int) -> int:
        return self.transition(book_id, BookStatus.BORROWED, BookStatus.AVAILABLE)

    def mark_lost(self, book_id: int) -> int:
        return self.transition(book_id, BookStatus.BORROWED, BookStatus.LOST)

    def mark_deleted(self, book_id: int) -> int:
        return self.transition(book_id, BookStatus.BORROWED, BookStatus.DELETED)

    def update_details(self, book_id: int, title: str, author: str) -> int:
        stmt = (
            update(Book)
            .where(Book.id == book_id, Book.status != BookStatus.DELETED)
            .values(title=title, author=author)
        )
        return _rowcount(self.session, stmt)

    def delete(self, book_id: int) -> int:
        # Raises IntegrityError while borrow records still reference the book.
        return _rowcount(self.session, delete(Book).where(Book.id == book_id))


class LoanStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, loan_id: int, refresh: bool = False) -> Optional[Loan]:
        stmt = select(Loan).where(Loan.id == loan_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        return self.session.scalars(stmt).first()

    def exists(self, loan_id: int) -> bool:
        return self.session.scalar(select(func.count()).select_from(Loan).where(Loan.id == loan_id)) > 0

    def open(self, book_id: int, user_id: int, borrow_time: datetime) -> Loan:
        loan = Loan(
            book_id=book_id,
            user_id=user_id,
            borrow_time=borrow_time,
            return_time=None,
            fine_amount=0.0,
            fine_paid=False,
        )
        self.session.add(loan)
        self.session.flush()
        return loan

    def active_id(self, book_id: int, user_id: Optional[int] = None) -> Optional[int]:
        """Id of the open loan on ``book_id``, restricted to ``user_id`` when given."""
        stmt = select(Loan.id).where(Loan.book_id == book_id, Loan.return_time.is_(None))
        if user_id is not None:
            stmt = stmt.where(Loan.user_id == user_id)
        return self.session.scalars(stmt.order_by(Loan.id)).first()

    def close_by_id(
        self,
        loan_id: int,
        when: datetime,
        fine_amount: Optional[float] = None,
        resolution: Optional[Resolution] = None,
    ) -> int:
        values = {"return_time": when}
        if fine_amount is not None:
            values["fine_amount"] = fine_amount
        if resolution is not None:
            values["resolution"] = resolution
        stmt = update(Loan).where(Loan.id == loan_id, Loan.return_time.is_(None)).values(**values)
        return _rowcount(self.session, stmt)

    def mark_fine_paid(self, loan_id: int) -> int:
        stmt = (
            update(Loan)
            .where(
                Loan.id == loan_id,
                Loan.return_time.is_not(None),
                Loan.fine_amount > 0,
                Loan.fine_paid.is_(False),
            )
            .values(fine_paid=True)
        )
        return _rowcount(self.session, stmt)

    def count_outstanding_for_user(self, user_id: int) -> int:
        """Active loans plus closed loans with an unpaid fine."""
        stmt = (
            select(func.count())
            .select_from(Loan)
            .where(
                Loan.user_id == user_id,
                or_(
                    Loan.return_time.is_(None),
                    (Loan.fine_amount > 0) & Loan.fine_paid.is_(False),
                ),
            )
        )
        return self.session.scalar(stmt)


class UserStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int, refresh: bool = False) -> Optional[User]:
        stmt = select(User).where(User.id == user_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        return self.session.scalars(stmt).first()

    def add(self, username: str, password: str, role: Role) -> User:
        user = User(username=username, password=password, role=role, is_active=True)
        self.session.add(user)
        self.session.flush()
        return user

    def update_credentials(self, user_id: int, username: str, password: str) -> int:
        stmt = update(User).where(User.id == user_id).values(username=username, password=password)
        return _rowcount(self.session, stmt)

    def set_active(self, user_id: int, is_active: bool) -> int:
        stmt = update(User).where(User.id == user_id).values(is_active=is_active)
        return _rowcount(self.session, stmt)

    def delete(self, user_id: int) -> int:
        return _rowcount(self.session, delete(User).where(User.id == user_id))
