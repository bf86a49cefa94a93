import logging
from decimal import Decimal
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from circulation import fines, inventory, loans, members, payments, reservations
from circulation.config import settings
from circulation.db import engine, get_db, init_db
from circulation.errors import CirculationError, StorageError, UnauthorizedError
from circulation.identity import Caller, Role
from circulation.models import Book, Fine, Loan, Payment, Reservation

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.on_event("startup")
def on_startup():
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    init_db(engine)


# ---------------------------------------------------------------- envelopes


def ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"success": True, "data": data, "error": None}
    )


def fail(message: str, code: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "data": None, "error": {"message": message, "code": code}},
    )


@app.exception_handler(CirculationError)
def on_circulation_error(_request: Request, exc: CirculationError):
    logger.info("[API] handled error code=%s message=%s", exc.code, exc.message)
    return fail(exc.message, exc.code, exc.status_code)


@app.exception_handler(StorageError)
def on_storage_error(_request: Request, exc: StorageError):
    logger.error("[API] storage unavailable: %s", exc)
    return fail("Storage unavailable", "storage_unavailable", 503)


@app.exception_handler(DBAPIError)
def on_driver_error(_request: Request, exc: DBAPIError):
    # Reads outside transaction() surface the raw driver error
    logger.error("[DB] storage failure: %r", exc)
    return fail("Storage unavailable", "storage_unavailable", 503)


@app.exception_handler(RequestValidationError)
def on_validation_error(_request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid input"))
    return fail(message, "invalid_input", 400)


# ----------------------------------------------------------------- identity


def get_caller(
    x_user_id: Optional[int] = Header(None),
    x_role: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Caller:
    """Identity placed on the request by the auth gateway in front of us."""
    if x_user_id is None or not x_role:
        raise UnauthorizedError("Unauthorized")
    try:
        role = Role(x_role.strip().capitalize())
    except ValueError:
        raise UnauthorizedError("Unauthorized")
    return members.resolve_caller(db, user_id=x_user_id, role=role)


# -------------------------------------------------------------- serializers


def money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(fines.to_money(value))


def iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def book_out(b: Book) -> dict:
    return {
        "isbn": b.isbn,
        "title": b.title,
        "author": b.author,
        "copiesTotal": b.copies_total,
        "copiesAvailable": b.copies_available,
    }


def loan_out(loan: Loan) -> dict:
    return {
        "loanId": loan.loan_id,
        "isbn": loan.isbn,
        "memberId": loan.member_id,
        "borrowDate": iso(loan.borrow_date),
        "dueDate": iso(loan.due_date),
        "returnDate": iso(loan.return_date),
    }


def fine_out(f: Fine) -> dict:
    return {
        "fineId": f.fine_id,
        "loanId": f.loan_id,
        "memberId": f.member_id,
        "isbn": f.isbn,
        "originalAmount": money(f.original_amount),
        "remainingAmount": money(f.remaining_amount),
        "reason": f.reason,
        "fineDate": iso(f.fine_date),
        "paymentStatus": f.payment_status.value,
    }


def reservation_out(r: Reservation) -> dict:
    return {
        "reservationId": r.reservation_id,
        "isbn": r.isbn,
        "memberId": r.member_id,
        "reservationDate": iso(r.reservation_date),
        "status": r.status.value,
    }


def payment_out(p: Payment) -> dict:
    return {
        "paymentId": p.payment_id,
        "memberId": p.member_id,
        "amount": money(p.amount),
        "appliedAt": iso(p.applied_at),
        "payerId": p.payer_id,
        "allocations": [
            {
                "fineId": a.fine_id,
                "appliedAmount": money(a.applied_amount),
                "remainingBefore": money(a.remaining_before),
                "remainingAfter": money(a.remaining_after),
            }
            for a in p.allocations
        ],
    }


# ----------------------------------------------------------- request bodies


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BorrowIn(_Body):
    isbn: str = Field(min_length=1)
    member_id: Optional[int] = Field(None, alias="memberId")


class ReturnIn(_Body):
    loan_id: int = Field(alias="loanId")


class ExtendIn(_Body):
    days: Optional[int] = Field(None, gt=0)


class PayFineIn(_Body):
    amount: Optional[Decimal] = Field(None, gt=0)


class PayBulkIn(_Body):
    amount: Decimal = Field(gt=0)
    member_id: Optional[int] = Field(None, alias="memberId")


class ReduceFineIn(_Body):
    amount: Decimal = Field(gt=0)


class StatusIn(_Body):
    status: str


class ManualFineIn(_Body):
    member_id: int = Field(alias="memberId")
    loan_id: int = Field(alias="loanId")
    amount: Decimal = Field(gt=0)
    reason: Optional[str] = None


class ReserveIn(_Body):
    isbn: str = Field(min_length=1)
    member_id: Optional[int] = Field(None, alias="memberId")


class MemberIn(_Body):
    user_id: int = Field(alias="userId")
    name: str = Field(min_length=1)
    email: Optional[str] = None


class CopiesIn(_Body):
    copies_total: int = Field(alias="copiesTotal", ge=1)


# -------------------------------------------------------------------- books


@app.get("/healthz")
def health():
    return {"ok": True}


@app.get("/books")
def api_list_books(db: Session = Depends(get_db)):
    return ok([book_out(b) for b in inventory.list_books(db)])


@app.post("/books/seed")
def seed_books(db: Session = Depends(get_db)):
    if not inventory.list_books(db):
        inventory.register_book(db, title="Dune", author="Frank Herbert", isbn="9780441013593", copies=3)
        inventory.register_book(db, title="The Odyssey", author="Homer", isbn="9780140449136", copies=2)
        inventory.register_book(db, title="Walden", author="Henry David Thoreau", isbn="9780143037743", copies=1)
    return ok({"seeded": True})


@app.post("/members")
def api_register_member(
    body: MemberIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    members.require_admin(caller)
    member = members.register_member(db, user_id=body.user_id, name=body.name, email=body.email)
    return ok(
        {"memberId": member.member_id, "userId": member.user_id, "name": member.name, "email": member.email},
        201,
    )


@app.patch("/books/{isbn}/copies")
def api_set_copies(
    isbn: str, body: CopiesIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    members.require_admin(caller)
    book = inventory.set_total_copies(db, inventory.normalize_isbn(isbn), body.copies_total)
    return ok(book_out(book))


# -------------------------------------------------------------------- loans


@app.post("/loans/borrow")
def api_borrow(body: BorrowIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    loan = loans.borrow_book(db, caller, body.isbn, body.member_id)
    return ok(loan_out(loan), 201)


@app.post("/loans/return")
def api_return(body: ReturnIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    result = loans.return_loan(db, caller, body.loan_id)
    return ok(
        {
            "loan": loan_out(result.loan),
            "fine": fine_out(result.fine) if result.fine is not None else None,
        }
    )


@app.patch("/loans/{loan_id}/extend")
def api_extend(
    loan_id: int,
    body: Optional[ExtendIn] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    loan = loans.extend_loan(db, caller, loan_id, body.days if body else None)
    return ok(loan_out(loan))


@app.get("/loans/me")
def api_my_loans(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok([loan_out(l) for l in loans.list_loans(db, caller)])


@app.get("/loans/member/{member_id}")
def api_member_loans(
    member_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    members.require_admin(caller)
    return ok([loan_out(l) for l in loans.list_loans(db, caller, member_id)])


# -------------------------------------------------------------------- fines


@app.get("/fines")
def api_all_fines(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    members.require_admin(caller)
    return ok([fine_out(f) for f in fines.list_fines(db, caller)])


@app.get("/fines/me")
def api_my_fines(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok([fine_out(f) for f in fines.list_fines(db, caller)])


@app.post("/fines")
def api_manual_fine(
    body: ManualFineIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    fine = fines.assess_manual_fine(
        db,
        caller,
        member_id=body.member_id,
        loan_id=body.loan_id,
        amount=body.amount,
        reason=body.reason,
    )
    return ok(fine_out(fine), 201)


@app.post("/fines/pay")
def api_pay_bulk(body: PayBulkIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    result = fines.pay_bulk(db, caller, body.amount, body.member_id)
    return ok(
        {
            "fines": [fine_out(f) for f in result.fines],
            "allocations": [a.to_dict() for a in result.allocations],
            "leftover": money(result.leftover),
        }
    )


@app.patch("/fines/{fine_id}/pay")
def api_pay_fine(
    fine_id: int,
    body: Optional[PayFineIn] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    result = fines.pay_fine(db, caller, fine_id, body.amount if body else None)
    return ok({"fine": fine_out(result.fine), "applied": money(result.applied)})


@app.put("/fines/{fine_id}/reduce")
def api_reduce_fine(
    fine_id: int, body: ReduceFineIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(fine_out(fines.reduce_fine(db, caller, fine_id, body.amount)))


@app.patch("/fines/{fine_id}/status")
def api_fine_status(
    fine_id: int, body: StatusIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(fine_out(fines.set_fine_status(db, caller, fine_id, body.status)))


@app.get("/payments/me")
def api_my_payments(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    member = members.require_own_member(db, caller)
    return ok([payment_out(p) for p in payments.list_payments(db, member.member_id)])


# ------------------------------------------------------------- reservations


@app.post("/reservations")
def api_reserve(body: ReserveIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    reservation = reservations.reserve_book(db, caller, body.isbn, body.member_id)
    return ok(reservation_out(reservation), 201)


@app.patch("/reservations/{reservation_id}/cancel")
def api_cancel_reservation(
    reservation_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(reservation_out(reservations.cancel_reservation(db, caller, reservation_id)))


@app.patch("/reservations/{reservation_id}/status")
def api_reservation_status(
    reservation_id: int, body: StatusIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    reservation = reservations.set_reservation_status(db, caller, reservation_id, body.status)
    return ok(reservation_out(reservation))


@app.get("/reservations/me")
def api_my_reservations(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok([reservation_out(r) for r in reservations.list_reservations(db, caller)])
