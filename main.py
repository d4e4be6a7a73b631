from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from admin import AdminService
from audit import Principal, build_audit_sink
from config import settings, setup_logging
from database import create_db_engine, create_session_factory, init_db
from errors import BusinessRuleViolation, LibraryError, NotFoundError, PersistenceError, ValidationError
from lifecycle import LifecycleService
from models import Book, Loan, User

logger = setup_logging()

engine = create_db_engine()
SessionLocal = create_session_factory(engine)
audit_sink = build_audit_sink(settings.audit_sink, SessionLocal)
lifecycle_service = LifecycleService(SessionLocal, audit_sink)
admin_service = AdminService(SessionLocal, audit_sink)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(engine)
    logger.info("Library service started (%s)", settings.mode_description)
    try:
        yield
    finally:
        engine.dispose()


app = FastAPI(title="Library Loan Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_lifecycle() -> LifecycleService:
    return lifecycle_service


def get_admin() -> AdminService:
    return admin_service


def get_actor(
    x_user_id: Optional[int] = Header(default=None),
    x_username: Optional[str] = Header(default=None),
) -> Optional[Principal]:
    if x_user_id is None and not x_username:
        return None
    return Principal(user_id=x_user_id, username=x_username)


def book_to_dict(book: Book) -> dict:
    return {"id": book.id, "title": book.title, "author": book.author, "status": book.status.label}


def loan_to_dict(loan: Loan) -> dict:
    return jsonable_encoder(
        {
            "id": loan.id,
            "book_id": loan.book_id,
            "user_id": loan.user_id,
            "borrow_time": loan.borrow_time,
            "return_time": loan.return_time,
            "is_returned": loan.is_returned,
            "fine_amount": loan.fine_amount,
            "fine_paid": loan.fine_paid,
            "has_unpaid_fine": loan.has_unpaid_fine,
            "resolution": loan.resolution.label if loan.resolution else None,
        }
    )


def user_to_dict(user: User) -> dict:
    return {"id": user.id, "username": user.username, "role": user.role.value, "is_active": user.is_active}


def ok(message: str, **payload) -> JSONResponse:
    return JSONResponse(status_code=200, content={"status_code": 200, "message": message, **payload})


# Books

@app.post("/books")
def create_book(
    title: str,
    author: str,
    service: LifecycleService = Depends(get_lifecycle),
    actor: Optional[Principal] = Depends(get_actor),
):
    book = service.add_book(title, author, actor=actor)
    return ok("Book created", book=book_to_dict(book))


@app.put("/books/{book_id}")
def update_book(
    book_id: int,
    title: str,
    author: str,
    service: LifecycleService = Depends(get_lifecycle),
    actor: Optional[Principal] = Depends(get_actor),
):
    book = service.update_book(book_id, title, author, actor=actor)
    return ok("Book updated", book=book_to_dict(book))


@app.delete("/books/{book_id}")
def delete_book(
    book_id: int,
    service: LifecycleService = Depends(get_lifecycle),
    actor: Optional[Principal] = Depends(get_actor),
):
    service.delete_book(book_id, actor=actor)
    return ok("Book deleted")


@app.post("/books/{book_id}/loss")
def resolve_loss(
    book_id: int,
    resolution_type: str,
    amount: str = "0",
    service: LifecycleService = Depends(get_lifecycle),
    actor: Optional[Principal] = Depends(get_actor),
):
    outcome = service.resolve_loss(book_id, resolution_type, amount, actor=actor)
    replacement = book_to_dict(outcome.replacement) if outcome.replacement else None
    return ok("Loss resolved", loan=loan_to_dict(outcome.loan), replacement=replacement)


# Borrowing

@app.post("/borrowings")
def borrow_book(
    user_id: int,
    book_id: int,
    service: LifecycleService = Depends(get_lifecycle),
    actor: Optional[Principal] = Depends(get_actor),
):
    loan = service.borrow(book_id, user_id, actor=actor)
    return ok("Book borrowed", borrowing_id=loan.id, loan=loan_to_dict(loan))


@app.post("/returns")
def return_book(
    user_id: int,
    book_id: int,
    service: LifecycleService = Depends(get_lifecycle),
    actor: Optional[Principal] = Depends(get_actor),
):
    loan = service.return_book(book_id, user_id, actor=actor)
    return ok("Book returned", loan=loan_to_dict(loan))


@app.post("/borrowings/{loan_id}/overdue-fine")
def assess_overdue_fine(
    loan_id: int,
    fine_amount: str,
    service: LifecycleService = Depends(get_lifecycle),
    actor: Optional[Principal] = Depends(get_actor),
):
    loan = service.assess_overdue_fine(loan_id, fine_amount, actor=actor)
    return ok("Overdue fine recorded", loan=loan_to_dict(loan))


@app.get("/borrowings/{loan_id}/suggested-fine")
def suggested_fine(loan_id: int, service: LifecycleService = Depends(get_lifecycle)):
    assessment = service.suggest_overdue_fine(loan_id)
    return ok(
        "Overdue" if assessment.is_overdue else "Not overdue",
        loan_id=assessment.loan_id,
        due_time=assessment.due_time.isoformat(),
        overdue_units=assessment.overdue_units,
        suggested_fine=assessment.suggested_fine,
    )


@app.post("/borrowings/{loan_id}/payment")
def pay_fine(
    loan_id: int,
    service: LifecycleService = Depends(get_lifecycle),
    actor: Optional[Principal] = Depends(get_actor),
):
    loan = service.pay_fine(loan_id, actor=actor)
    return ok("Fine paid", loan=loan_to_dict(loan))


# Users

@app.post("/users")
def create_user(
    username: str,
    password: str,
    role: str = "user",
    service: AdminService = Depends(get_admin),
    actor: Optional[Principal] = Depends(get_actor),
):
    user = service.add_user(username, password, role, actor=actor)
    return ok("User created", user=user_to_dict(user))


@app.put("/users/{user_id}")
def update_user(
    user_id: int,
    username: str,
    password: str,
    service: AdminService = Depends(get_admin),
    actor: Optional[Principal] = Depends(get_actor),
):
    user = service.update_credentials(user_id, username, password, actor=actor)
    return ok("User updated", user=user_to_dict(user))


@app.put("/users/{user_id}/status")
def set_user_status(
    user_id: int,
    is_active: bool,
    service: AdminService = Depends(get_admin),
    actor: Optional[Principal] = Depends(get_actor),
):
    user = service.set_user_active(user_id, is_active, actor=actor)
    return ok("User status updated", user=user_to_dict(user))


@app.delete("/users/{user_id}")
def delete_user(
    user_id: int,
    service: AdminService = Depends(get_admin),
    actor: Optional[Principal] = Depends(get_actor),
):
    service.delete_user(user_id, actor=actor)
    return ok("User deleted")


# Error Handling

def status_for(exc: LibraryError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (ValidationError, BusinessRuleViolation)):
        return 400
    if isinstance(exc, PersistenceError):
        return 503
    return 500


@app.exception_handler(LibraryError)
def library_exception_handler(request, exc: LibraryError):
    return get_default_error_response(
        status_code=status_for(exc),
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details,
    )


@app.exception_handler(Exception)
def exception_handler(request, exc):
    logger.exception("Unhandled error on %s", request.url.path)
    return get_default_error_response()


def get_default_error_response(status_code=500, message="Internal Server Error", **extra):
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"status_code": status_code, "message": message, **extra}),
    )
