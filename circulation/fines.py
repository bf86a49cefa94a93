"""Fine ledger: overdue assessment, payment allocation and admin overrides.

Amounts are ``Decimal`` rounded to cents. ``remaining_amount`` only ever goes
down, and ``payment_status`` is recomputed in the same write that changes it.
Fine rows are read ``FOR UPDATE`` and written with a version check, so a
payment is always computed against the remaining value current at write time.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from circulation.config import Settings, settings as default_settings
from circulation.db import transaction
from circulation.errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError
from circulation.identity import Caller
from circulation.members import (
    ensure_owner,
    get_member,
    require_admin,
    require_own_member,
    resolve_target_member,
)
from circulation.models import Fine, FineStatus, Loan, Payment, utcnow
from circulation.payments import Allocation, record_payment

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Amount = Union[Decimal, int, float, str]


def to_money(value: Amount) -> Decimal:
    # str() first so floats like 0.1 do not drag binary noise into the ledger
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class FinePayment:
    fine: Fine
    applied: Decimal
    payment: Payment


@dataclass
class BulkPayment:
    fines: List[Fine]
    allocations: List[Allocation]
    leftover: Decimal
    payment: Payment


# ---------------------------------------------------------------- assessment


def overdue_days(due_date: datetime, returned_at: datetime) -> int:
    """Whole days late, any started day counting as a full one."""
    seconds = (returned_at - due_date).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def get_fine_for_loan(db: Session, loan_id: int) -> Optional[Fine]:
    return db.scalars(select(Fine).where(Fine.loan_id == loan_id)).first()


def assess_overdue_fine(
    db: Session,
    loan: Loan,
    returned_at: datetime,
    settings: Settings = default_settings,
) -> Optional[Fine]:
    """Insert the overdue fine for a closed loan, or fetch the one already there.

    Runs inside the caller's transaction. The unique ``loan_id`` constraint
    decides races; the loser reads back the winner's row.
    """
    days = overdue_days(loan.due_date, returned_at)
    if days <= 0:
        return None

    existing = get_fine_for_loan(db, loan.loan_id)
    if existing is not None:
        return existing

    amount = to_money(days * settings.daily_fine_rate)
    fine = Fine(
        loan_id=loan.loan_id,
        member_id=loan.member_id,
        isbn=loan.isbn,
        original_amount=amount,
        remaining_amount=amount,
        reason="overdue",
        fine_date=returned_at,
        payment_status=FineStatus.OPEN,
    )
    try:
        with db.begin_nested():
            db.add(fine)
    except IntegrityError:
        logger.info("[FINE] fine for loan=%s created concurrently, reusing it", loan.loan_id)
        return get_fine_for_loan(db, loan.loan_id)

    logger.info(
        "[FINE] assessed fine=%s loan=%s member=%s days=%s amount=%s",
        fine.fine_id,
        loan.loan_id,
        loan.member_id,
        days,
        amount,
    )
    return fine


def assess_manual_fine(
    db: Session,
    caller: Caller,
    *,
    member_id: int,
    loan_id: int,
    amount: Amount,
    reason: Optional[str] = None,
) -> Fine:
    """Admin-issued fine against one of the member's loans."""
    require_admin(caller)
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidInputError("Fine amount must be greater than 0")

    try:
        with transaction(db):
            if get_member(db, member_id) is None:
                raise NotFoundError("Member not found")
            loan = db.get(Loan, loan_id)
            if loan is None:
                raise NotFoundError("Loan not found")
            if loan.member_id != member_id:
                raise ForbiddenError("Loan does not belong to member")
            fine = Fine(
                loan_id=loan_id,
                member_id=member_id,
                isbn=loan.isbn,
                original_amount=amount,
                remaining_amount=amount,
                reason=reason or "overdue",
                fine_date=utcnow(),
                payment_status=FineStatus.OPEN,
            )
            db.add(fine)
    except IntegrityError:
        raise ConflictError("Loan already has a fine")
    db.refresh(fine)
    logger.info("[FINE] manual fine=%s loan=%s amount=%s", fine.fine_id, loan_id, amount)
    return fine


# ------------------------------------------------------------------ payments


def _lock_fine(db: Session, fine_id: int) -> Fine:
    stmt = (
        select(Fine)
        .where(Fine.fine_id == fine_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    fine = db.scalars(stmt).first()
    if fine is None:
        raise NotFoundError("Fine not found")
    return fine


def _apply_payment(fine: Fine, amount: Optional[Amount]) -> Allocation:
    """Take up to ``amount`` (everything owed when None) off an open fine."""
    before = to_money(fine.remaining_amount)
    if fine.payment_status != FineStatus.OPEN:
        applied = ZERO
    else:
        requested = before if amount is None else max(ZERO, to_money(amount))
        applied = min(before, requested)

    after = to_money(before - applied)
    if applied > 0:
        if after <= 0:
            fine.remaining_amount = ZERO
            fine.payment_status = FineStatus.PAID
            after = ZERO
        else:
            fine.remaining_amount = after
            fine.payment_status = FineStatus.OPEN
    return Allocation(
        fine_id=fine.fine_id,
        applied_amount=applied,
        remaining_before=before,
        remaining_after=after,
    )


def pay_fine(
    db: Session, caller: Caller, fine_id: int, amount: Optional[Amount] = None
) -> FinePayment:
    """Pay one fine, in full when ``amount`` is omitted.

    The ledger tolerates non-positive amounts (nothing is applied); the API
    layer rejects them before they get here.
    """
    try:
        with transaction(db):
            fine = _lock_fine(db, fine_id)
            ensure_owner(caller, fine.member_id, "fines")
            allocation = _apply_payment(fine, amount)
            db.flush()
            payment = record_payment(
                db,
                member_id=fine.member_id,
                payer_id=caller.user_id,
                allocations=[allocation],
                total_amount=allocation.applied_amount,
            )
    except StaleDataError:
        raise ConflictError("Fine was updated concurrently, please retry")

    logger.info(
        "[PAY] fine=%s applied=%s remaining=%s status=%s",
        fine_id,
        allocation.applied_amount,
        allocation.remaining_after,
        fine.payment_status.value,
    )
    return FinePayment(fine=fine, applied=allocation.applied_amount, payment=payment)


def _open_fines_for_update(db: Session, member_id: int, settings: Settings) -> List[Fine]:
    if settings.bulk_payment_order == "oldest_first":
        ordering = (Fine.fine_date.asc(), Fine.fine_id.asc())
    elif settings.bulk_payment_order == "newest_first":
        ordering = (Fine.fine_date.desc(), Fine.fine_id.asc())
    else:
        raise ValueError(f"Unknown BULK_PAYMENT_ORDER: {settings.bulk_payment_order!r}")

    stmt = (
        select(Fine)
        .where(Fine.member_id == member_id, Fine.payment_status == FineStatus.OPEN)
        .order_by(*ordering)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(db.scalars(stmt))


def pay_bulk(
    db: Session,
    caller: Caller,
    amount: Amount,
    target_member_id: Optional[int] = None,
    settings: Settings = default_settings,
) -> BulkPayment:
    """Spread one payment over a member's open fines, oldest debt first.

    ``fines`` holds the fines that were open when the payment started, in the
    order they were settled. Whatever cannot be applied comes back as
    ``leftover``.
    """
    requested = to_money(amount)
    if requested <= 0:
        raise InvalidInputError("Amount must be greater than 0")

    try:
        with transaction(db):
            member = resolve_target_member(db, caller, target_member_id)
            left = requested
            allocations: List[Allocation] = []
            open_fines = _open_fines_for_update(db, member.member_id, settings)
            for fine in open_fines:
                if left <= 0:
                    break
                if fine.remaining_amount <= 0:
                    continue
                allocation = _apply_payment(fine, left)
                allocations.append(allocation)
                left = to_money(left - allocation.applied_amount)
            db.flush()
            payment = record_payment(
                db,
                member_id=member.member_id,
                payer_id=caller.user_id,
                allocations=allocations,
                total_amount=to_money(requested - left),
            )
            member_id = member.member_id
    except StaleDataError:
        raise ConflictError("Fines were updated concurrently, please retry")

    logger.info(
        "[PAY] bulk member=%s requested=%s applied=%s leftover=%s fines=%s",
        member_id,
        requested,
        to_money(requested - left),
        left,
        [a.fine_id for a in allocations],
    )
    return BulkPayment(
        fines=open_fines,
        allocations=allocations,
        leftover=left,
        payment=payment,
    )


# ------------------------------------------------------------ admin overrides


def reduce_fine(db: Session, caller: Caller, fine_id: int, amount: Amount) -> Fine:
    """Write a fine down without taking money; reaching zero waives it."""
    require_admin(caller)
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidInputError("Reduction amount must be greater than 0")

    try:
        with transaction(db):
            fine = _lock_fine(db, fine_id)
            before = to_money(fine.remaining_amount)
            remaining = max(ZERO, to_money(before - amount))
            if remaining != before:
                fine.remaining_amount = remaining
                if remaining == 0 and fine.payment_status != FineStatus.PAID:
                    fine.payment_status = FineStatus.WAIVED
    except StaleDataError:
        raise ConflictError("Fine was updated concurrently, please retry")

    logger.info("[FINE] reduced fine=%s by=%s remaining=%s", fine_id, amount, remaining)
    return fine


def set_fine_status(db: Session, caller: Caller, fine_id: int, status: Union[FineStatus, str]) -> Fine:
    """Administrative override of ``payment_status``.

    ``paid`` clears whatever is still owed; ``open`` needs something owed.
    """
    require_admin(caller)
    try:
        status = FineStatus(status)
    except ValueError:
        raise InvalidInputError(f"Invalid fine status: {status!r}")

    try:
        with transaction(db):
            fine = _lock_fine(db, fine_id)
            if status == FineStatus.OPEN and fine.remaining_amount <= 0:
                raise InvalidInputError("Cannot reopen a fine with nothing owed")
            if status == FineStatus.PAID and fine.remaining_amount > 0:
                fine.remaining_amount = ZERO
            fine.payment_status = status
    except StaleDataError:
        raise ConflictError("Fine was updated concurrently, please retry")

    logger.info("[FINE] status override fine=%s status=%s", fine_id, status.value)
    return fine


# ------------------------------------------------------------------- queries


def _fines_of(db: Session, member_id: int) -> List[Fine]:
    stmt = (
        select(Fine)
        .where(Fine.member_id == member_id)
        .order_by(Fine.fine_date.desc(), Fine.fine_id.desc())
    )
    return list(db.scalars(stmt))


def list_fines(db: Session, caller: Caller, member_id: Optional[int] = None) -> List[Fine]:
    """A member's own fines; admins may name a member or see every fine."""
    if not caller.is_admin:
        return _fines_of(db, require_own_member(db, caller).member_id)
    if member_id is not None:
        if get_member(db, member_id) is None:
            raise NotFoundError("Member not found")
        return _fines_of(db, member_id)
    return list(db.scalars(select(Fine).order_by(Fine.fine_date.desc(), Fine.fine_id.desc())))
