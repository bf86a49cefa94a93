import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from circulation.config import Settings, settings as default_settings
from circulation.db import transaction
from circulation.errors import AlreadyReturnedError, InvalidInputError, NotFoundError
from circulation.fines import assess_overdue_fine
from circulation.identity import Caller
from circulation.inventory import normalize_isbn, put_back_copy, require_book, take_copy
from circulation.members import (
    ensure_owner,
    get_member,
    require_admin,
    require_own_member,
    resolve_target_member,
)
from circulation.models import Fine, Loan, Reservation, ReservationStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReturnResult:
    loan: Loan
    fine: Optional[Fine] = None


def open_loan(
    db: Session,
    *,
    member_id: int,
    isbn: str,
    now: datetime,
    settings: Settings = default_settings,
) -> Loan:
    """Take a copy off the shelf and create the loan for it.

    Runs in the caller's transaction; raises OutOfStockError before anything is
    written when no copy is available.
    """
    take_copy(db, isbn)
    loan = Loan(
        isbn=isbn,
        member_id=member_id,
        borrow_date=now,
        due_date=now + timedelta(days=settings.loan_period_days),
        return_date=None,
    )
    db.add(loan)
    db.flush()
    return loan


def borrow_book(
    db: Session,
    caller: Caller,
    isbn: str,
    target_member_id: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
    settings: Settings = default_settings,
) -> Loan:
    now = now or utcnow()
    isbn = normalize_isbn(isbn, settings)

    with transaction(db):
        member = resolve_target_member(db, caller, target_member_id)
        require_book(db, isbn)
        loan = open_loan(db, member_id=member.member_id, isbn=isbn, now=now, settings=settings)

        # A borrow satisfies the member's pending hold on the same book
        fulfilled = db.execute(
            update(Reservation)
            .where(
                Reservation.member_id == member.member_id,
                Reservation.isbn == isbn,
                Reservation.status == ReservationStatus.PENDING,
            )
            .values(status=ReservationStatus.FULFILLED)
            .execution_options(synchronize_session=False)
        ).rowcount

    db.refresh(loan)
    logger.info(
        "[BORROW] loan=%s member=%s isbn=%s due=%s fulfilled_reservations=%s",
        loan.loan_id,
        loan.member_id,
        isbn,
        loan.due_date.isoformat(),
        fulfilled,
    )
    return loan


def return_loan(
    db: Session,
    caller: Caller,
    loan_id: int,
    *,
    now: Optional[datetime] = None,
    settings: Settings = default_settings,
) -> ReturnResult:
    now = now or utcnow()

    with transaction(db):
        loan = db.get(Loan, loan_id, populate_existing=True)
        if loan is None:
            raise NotFoundError("Loan not found")
        ensure_owner(caller, loan.member_id, "loans")

        # Only the request that flips return_date from NULL gets to go on
        closed = db.execute(
            update(Loan)
            .where(Loan.loan_id == loan_id, Loan.return_date.is_(None))
            .values(return_date=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if closed != 1:
            raise AlreadyReturnedError("Loan already returned")
        db.refresh(loan)

        put_back_copy(db, loan.isbn)
        fine = assess_overdue_fine(db, loan, now, settings)

    db.refresh(loan)
    logger.info(
        "[RETURN] loan=%s member=%s isbn=%s fine=%s",
        loan.loan_id,
        loan.member_id,
        loan.isbn,
        fine.fine_id if fine is not None else None,
    )
    return ReturnResult(loan=loan, fine=fine)


def extend_loan(
    db: Session,
    caller: Caller,
    loan_id: int,
    days: Optional[int] = None,
    *,
    settings: Settings = default_settings,
) -> Loan:
    require_admin(caller)
    days = settings.default_extend_days if days is None else days
    if days <= 0:
        raise InvalidInputError("Extension days must be greater than 0")

    with transaction(db):
        loan = db.get(Loan, loan_id, populate_existing=True)
        if loan is None:
            raise NotFoundError("Loan not found")
        if not loan.is_open:
            raise AlreadyReturnedError("Cannot extend a returned loan")
        loan.due_date = loan.due_date + timedelta(days=days)

    db.refresh(loan)
    logger.info("[BORROW] extended loan=%s by=%sd due=%s", loan_id, days, loan.due_date.isoformat())
    return loan


def list_loans(db: Session, caller: Caller, member_id: Optional[int] = None) -> List[Loan]:
    if caller.is_admin and member_id is not None:
        if get_member(db, member_id) is None:
            raise NotFoundError("Member not found")
    else:
        member_id = require_own_member(db, caller).member_id
    stmt = (
        select(Loan)
        .where(Loan.member_id == member_id)
        .order_by(Loan.borrow_date.desc(), Loan.loan_id.desc())
    )
    return list(db.scalars(stmt))
