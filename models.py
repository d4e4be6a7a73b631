import enum
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Enum, Float, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class BookStatus(enum.Enum):
    AVAILABLE = "可借阅"
    BORROWED = "已借出"
    LOST = "遗失"
    DELETED = "已删除"

    @property
    def label(self) -> str:
        return self.value


class Resolution(enum.Enum):
    OVERDUE_FINE = "超期罚款处理"
    LOSS_FINE = "遗失罚款"
    LOSS_REPLACEMENT = "新书替换(旧书已删/新书已上架)"

    @property
    def label(self) -> str:
        return self.value


class LossResolution(enum.Enum):
    FINE = "Fine"
    REPLACEMENT = "Replacement"


class Role(enum.Enum):
    ADMIN = "admin"
    USER = "user"


def _labels(enum_cls):
    # Persist the external label, not the member name.
    return [member.value for member in enum_cls]


class Book(Base):
    __tablename__ = "books"
    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    status = Column(
        Enum(BookStatus, values_callable=_labels, native_enum=False, length=32, validate_strings=True),
        nullable=False,
        default=BookStatus.AVAILABLE,
    )

    def __repr__(self) -> str:
        return f"<Book id={self.id} title={self.title!r} status={self.status.name if self.status else None}>"


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(64), nullable=False, unique=True)
    password = Column(String(255), nullable=False)
    role = Column(
        Enum(Role, values_callable=_labels, native_enum=False, length=16),
        nullable=False,
        default=Role.USER,
    )
    is_active = Column(Boolean, nullable=False, default=True)

    loans = relationship("Loan", back_populates="user")


class Loan(Base):
    __tablename__ = "borrow_records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    borrow_time = Column(DateTime, nullable=False)
    return_time = Column(DateTime, nullable=True)
    fine_amount = Column(Float, nullable=False, default=0.0)
    fine_paid = Column(Boolean, nullable=False, default=False)
    resolution = Column(
        Enum(Resolution, values_callable=_labels, native_enum=False, length=64, validate_strings=True),
        nullable=True,
    )

    book = relationship("Book")
    user = relationship("User", back_populates="loans")

    @property
    def is_active(self) -> bool:
        return self.return_time is None

    @property
    def is_returned(self) -> bool:
        return self.return_time is not None

    @property
    def has_unpaid_fine(self) -> bool:
        return (self.fine_amount or 0) > 0 and not self.fine_paid

    def due_time(self, loan_period: timedelta) -> datetime:
        return self.borrow_time + loan_period

    def is_overdue(self, loan_period: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return self.is_active and now > self.due_time(loan_period)

    def overdue_units(self, loan_period: timedelta, unit: timedelta, now: Optional[datetime] = None) -> int:
        """Whole units (days, or minutes in test mode) past the due time; 0 when not overdue."""
        if not self.is_overdue(loan_period, now):
            return 0
        now = now or datetime.now()
        return (now - self.due_time(loan_period)) // unit

    def __repr__(self) -> str:
        return f"<Loan id={self.id} book_id={self.book_id} user_id={self.user_id} active={self.is_active}>"


# At most one open loan per book. Only created where the backend supports partial indexes.
Index(
    "uq_active_loan_per_book",
    Loan.book_id,
    unique=True,
    sqlite_where=text("return_time IS NULL"),
    postgresql_where=text("return_time IS NULL"),
).ddl_if(dialect=("sqlite", "postgresql"))


class AuditEntry(Base):
    __tablename__ = "sys_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(64), nullable=False)
    operation = Column(String(500), nullable=False)
    op_time = Column(DateTime, nullable=False, default=datetime.now)
