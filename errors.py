"""Exceptions raised by the loan lifecycle and administrative operations.

Every failure surfaced to a caller is a ``LibraryError``.  The four direct
subclasses let callers tell an invalid request (``ValidationError``,
``BusinessRuleViolation``, ``NotFoundError``) apart from an infrastructure
failure (``PersistenceError``).
"""
from typing import Any, Optional


class LibraryError(Exception):
    """Base library exception."""

    error_code = "LIBRARY_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(LibraryError):
    """Malformed input."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else {})


class BusinessRuleViolation(LibraryError):
    """A precondition encoded in a conditional update did not hold."""

    error_code = "BUSINESS_RULE"


class NotFoundError(LibraryError):
    """Referenced id does not exist at all."""

    error_code = "NOT_FOUND"
    resource = "Resource"

    def __init__(self, resource_id: Any):
        super().__init__(
            f"{self.resource} with id {resource_id} not found",
            details={"resource": self.resource, "id": resource_id},
        )


class PersistenceError(LibraryError):
    """Connectivity, commit or rollback failure."""

    error_code = "PERSISTENCE_ERROR"


# Not found


class BookNotFound(NotFoundError):
    resource = "Book"


class LoanNotFound(NotFoundError):
    resource = "Loan"


class UserNotFound(NotFoundError):
    resource = "User"


# Business rules


class BookNotAvailable(BusinessRuleViolation):
    error_code = "BOOK_NOT_AVAILABLE"

    def __init__(self, book_id: int):
        super().__init__(
            f"Book {book_id} is already borrowed or cannot be lent",
            details={"book_id": book_id},
        )


class NotBorrowerOrAlreadyReturned(BusinessRuleViolation):
    error_code = "NOT_BORROWER_OR_ALREADY_RETURNED"

    def __init__(self, book_id: int, user_id: int):
        super().__init__(
            f"User {user_id} is not the borrower of book {book_id}, or it was already returned",
            details={"book_id": book_id, "user_id": user_id},
        )


class NoActiveLoan(BusinessRuleViolation):
    error_code = "NO_ACTIVE_LOAN"

    def __init__(self, book_id: int):
        super().__init__(
            f"No active loan found for book {book_id}",
            details={"book_id": book_id},
        )


class BookNotBorrowed(BusinessRuleViolation):
    error_code = "BOOK_NOT_BORROWED"

    def __init__(self, book_id: int, status: Any = None):
        label = getattr(status, "label", status)
        super().__init__(
            f"Only a borrowed book can be resolved as lost (book {book_id} is {label})",
            details={"book_id": book_id, "status": label},
        )


class LoanAlreadyClosed(BusinessRuleViolation):
    error_code = "LOAN_ALREADY_CLOSED"

    def __init__(self, loan_id: int):
        super().__init__(
            f"Loan {loan_id} is already closed",
            details={"loan_id": loan_id},
        )


class NoOutstandingFine(BusinessRuleViolation):
    error_code = "NO_OUTSTANDING_FINE"

    def __init__(self, loan_id: int):
        super().__init__(
            f"Loan {loan_id} has no unpaid fine",
            details={"loan_id": loan_id},
        )


class AlreadyExists(BusinessRuleViolation):
    error_code = "ALREADY_EXISTS"

    def __init__(self, resource: str, key: Any):
        super().__init__(
            f"{resource} '{key}' already exists",
            details={"resource": resource, "key": key},
        )


class HasDependentRecords(BusinessRuleViolation):
    error_code = "HAS_DEPENDENT_RECORDS"

    def __init__(self, resource: str, resource_id: Any, reason: str = "it has borrow records"):
        super().__init__(
            f"Cannot delete {resource} {resource_id}: {reason}",
            details={"resource": resource, "id": resource_id},
        )
