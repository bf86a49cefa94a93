"""Reservation status machine.

    Pending ──> Ready ──> Fulfilled
       │          │
       ├──────────┴─────> Cancelled
       └────────────────> Fulfilled

Fulfilled and Cancelled are terminal. Moving to Fulfilled takes a copy off the
shelf and opens a loan in the same transaction as the status write.
"""
import logging
from typing import Dict, FrozenSet, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from circulation.config import Settings, settings as default_settings
from circulation.db import transaction
from circulation.errors import (
    ConflictError,
    DuplicateReservationError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
)
from circulation.identity import Caller
from circulation.inventory import normalize_isbn, require_book
from circulation.loans import open_loan
from circulation.members import (
    ensure_owner,
    get_member,
    require_admin,
    require_own_member,
    resolve_target_member,
)
from circulation.models import (
    ACTIVE_RESERVATION_STATUSES,
    Reservation,
    ReservationStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[ReservationStatus, FrozenSet[ReservationStatus]] = {
    ReservationStatus.PENDING: frozenset(
        {ReservationStatus.READY, ReservationStatus.FULFILLED, ReservationStatus.CANCELLED}
    ),
    ReservationStatus.READY: frozenset({ReservationStatus.FULFILLED, ReservationStatus.CANCELLED}),
    ReservationStatus.FULFILLED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
}


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in TRANSITIONS[current]


def _check_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move reservation from {current.value} to {target.value}"
        )


def _get_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = db.get(Reservation, reservation_id, populate_existing=True)
    if reservation is None:
        raise NotFoundError("Reservation not found")
    return reservation


def _write_status(db: Session, reservation: Reservation, target: ReservationStatus) -> None:
    # Conditional on the status we validated against
    changed = db.execute(
        update(Reservation)
        .where(
            Reservation.reservation_id == reservation.reservation_id,
            Reservation.status == reservation.status,
        )
        .values(status=target)
        .execution_options(synchronize_session=False)
    ).rowcount
    if changed != 1:
        raise ConflictError("Reservation was updated concurrently, please retry")


def reserve_book(
    db: Session,
    caller: Caller,
    isbn: str,
    target_member_id: Optional[int] = None,
    *,
    settings: Settings = default_settings,
) -> Reservation:
    isbn = normalize_isbn(isbn, settings)
    try:
        with transaction(db):
            member = resolve_target_member(db, caller, target_member_id)
            require_book(db, isbn)
            active = db.scalars(
                select(Reservation.reservation_id).where(
                    Reservation.member_id == member.member_id,
                    Reservation.isbn == isbn,
                    Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
                )
            ).first()
            if active is not None:
                raise DuplicateReservationError("An active reservation already exists for this book")

            reservation = Reservation(
                isbn=isbn,
                member_id=member.member_id,
                reservation_date=utcnow(),
                status=ReservationStatus.PENDING,
            )
            db.add(reservation)
    except IntegrityError:
        # Lost the race to the partial unique index
        raise DuplicateReservationError("An active reservation already exists for this book")

    db.refresh(reservation)
    logger.info(
        "[RESERVE] reservation=%s member=%s isbn=%s",
        reservation.reservation_id,
        reservation.member_id,
        isbn,
    )
    return reservation


def cancel_reservation(db: Session, caller: Caller, reservation_id: int) -> Reservation:
    with transaction(db):
        reservation = _get_reservation(db, reservation_id)
        ensure_owner(caller, reservation.member_id, "reservations")
        _check_transition(reservation.status, ReservationStatus.CANCELLED)
        _write_status(db, reservation, ReservationStatus.CANCELLED)

    db.refresh(reservation)
    logger.info("[RESERVE] cancelled reservation=%s", reservation_id)
    return reservation


def set_reservation_status(
    db: Session,
    caller: Caller,
    reservation_id: int,
    status: Union[ReservationStatus, str],
    *,
    settings: Settings = default_settings,
) -> Reservation:
    """Admin status change. Fulfilling materializes a loan or fails as a whole."""
    require_admin(caller)
    try:
        target = ReservationStatus(status)
    except ValueError:
        raise InvalidInputError(f"Invalid reservation status: {status!r}")

    loan_id = None
    with transaction(db):
        reservation = _get_reservation(db, reservation_id)
        previous = reservation.status
        _check_transition(previous, target)
        if target == ReservationStatus.FULFILLED:
            loan = open_loan(
                db,
                member_id=reservation.member_id,
                isbn=reservation.isbn,
                now=utcnow(),
                settings=settings,
            )
            loan_id = loan.loan_id
        _write_status(db, reservation, target)

    db.refresh(reservation)
    logger.info(
        "[RESERVE] reservation=%s %s -> %s loan=%s",
        reservation_id,
        previous.value,
        target.value,
        loan_id,
    )
    return reservation


def list_reservations(
    db: Session, caller: Caller, member_id: Optional[int] = None
) -> List[Reservation]:
    if caller.is_admin and member_id is not None:
        if get_member(db, member_id) is None:
            raise NotFoundError("Member not found")
    else:
        member_id = require_own_member(db, caller).member_id
    stmt = (
        select(Reservation)
        .where(Reservation.member_id == member_id)
        .order_by(Reservation.reservation_date.desc(), Reservation.reservation_id.desc())
    )
    return list(db.scalars(stmt))
