from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

Money = Numeric(10, 2, asdecimal=True)


def utcnow() -> datetime:
    # Stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    ...


class ReservationStatus(str, enum.Enum):
    PENDING = "Pending"
    READY = "Ready"
    FULFILLED = "Fulfilled"
    CANCELLED = "Cancelled"


ACTIVE_RESERVATION_STATUSES = (ReservationStatus.PENDING, ReservationStatus.READY)


class FineStatus(str, enum.Enum):
    OPEN = "open"
    PAID = "paid"
    WAIVED = "waived"


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Member(Base):
    __tablename__ = "members"

    member_id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(320), unique=True)

    loans: Mapped[List["Loan"]] = relationship(back_populates="member")
    reservations: Mapped[List["Reservation"]] = relationship(back_populates="member")
    fines: Mapped[List["Fine"]] = relationship(back_populates="member")


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("copies_total >= 1", name="ck_books_total_positive"),
        CheckConstraint(
            "copies_available >= 0 AND copies_available <= copies_total",
            name="ck_books_available_in_range",
        ),
    )

    isbn: Mapped[str] = mapped_column(String(32), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), index=True)
    author: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    copies_total: Mapped[int] = mapped_column(Integer, default=1)
    copies_available: Mapped[int] = mapped_column(Integer, default=1)

    loans: Mapped[List["Loan"]] = relationship(back_populates="book")
    reservations: Mapped[List["Reservation"]] = relationship(back_populates="book")


class Loan(Base):
    __tablename__ = "loans"

    loan_id: Mapped[int] = mapped_column(primary_key=True)
    isbn: Mapped[str] = mapped_column(ForeignKey("books.isbn"), index=True)
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.member_id", ondelete="CASCADE"), index=True
    )
    borrow_date: Mapped[datetime] = mapped_column(DateTime)
    due_date: Mapped[datetime] = mapped_column(DateTime)
    return_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    book: Mapped["Book"] = relationship(back_populates="loans")
    member: Mapped["Member"] = relationship(back_populates="loans")

    @property
    def is_open(self) -> bool:
        return self.return_date is None


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        # At most one active hold per member and book
        Index(
            "uq_reservations_active_member_isbn",
            "member_id",
            "isbn",
            unique=True,
            sqlite_where=text("status IN ('Pending', 'Ready')"),
            postgresql_where=text("status IN ('Pending', 'Ready')"),
        ),
    )

    reservation_id: Mapped[int] = mapped_column(primary_key=True)
    isbn: Mapped[str] = mapped_column(ForeignKey("books.isbn"), index=True)
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.member_id", ondelete="CASCADE"), index=True
    )
    reservation_date: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(
            ReservationStatus,
            native_enum=False,
            length=16,
            values_callable=_values,
            validate_strings=True,
        ),
        default=ReservationStatus.PENDING,
    )

    book: Mapped["Book"] = relationship(back_populates="reservations")
    member: Mapped["Member"] = relationship(back_populates="reservations")


class Fine(Base):
    __tablename__ = "fines"
    __table_args__ = (
        CheckConstraint("remaining_amount >= 0", name="ck_fines_remaining_non_negative"),
    )

    fine_id: Mapped[int] = mapped_column(primary_key=True)
    loan_id: Mapped[int] = mapped_column(
        ForeignKey("loans.loan_id", ondelete="CASCADE"), unique=True
    )
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.member_id", ondelete="CASCADE"), index=True
    )
    isbn: Mapped[Optional[str]] = mapped_column(String(32))
    original_amount: Mapped[Decimal] = mapped_column(Money)
    remaining_amount: Mapped[Decimal] = mapped_column(Money)
    reason: Mapped[str] = mapped_column(String(255), default="overdue")
    fine_date: Mapped[datetime] = mapped_column(DateTime)
    payment_status: Mapped[FineStatus] = mapped_column(
        Enum(
            FineStatus,
            native_enum=False,
            length=16,
            values_callable=_values,
            validate_strings=True,
        ),
        default=FineStatus.OPEN,
    )
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    member: Mapped["Member"] = relationship(back_populates="fines")

    # Every UPDATE is issued as "... WHERE version_id = <read version>"
    __mapper_args__ = {"version_id_col": version_id}


class Payment(Base):
    __tablename__ = "payments"

    payment_id: Mapped[int] = mapped_column(primary_key=True)
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.member_id", ondelete="CASCADE"), index=True
    )
    amount: Mapped[Decimal] = mapped_column(Money)
    applied_at: Mapped[datetime] = mapped_column(DateTime)
    payer_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    allocations: Mapped[List["PaymentAllocation"]] = relationship(
        back_populates="payment",
        order_by="PaymentAllocation.position",
        cascade="all, delete-orphan",
    )


class PaymentAllocation(Base):
    __tablename__ = "payment_allocations"

    id: Mapped[int] = mapped_column(primary_key=True)
    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.payment_id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer)
    fine_id: Mapped[int] = mapped_column(ForeignKey("fines.fine_id"), index=True)
    applied_amount: Mapped[Decimal] = mapped_column(Money)
    remaining_before: Mapped[Decimal] = mapped_column(Money)
    remaining_after: Mapped[Decimal] = mapped_column(Money)

    payment: Mapped["Payment"] = relationship(back_populates="allocations")
