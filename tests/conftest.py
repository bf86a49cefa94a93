from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from circulation.config import Settings
from circulation.db import init_db, make_engine
from circulation.identity import Caller, Role
from circulation.inventory import register_book
from circulation.members import register_member
from circulation.models import Fine, FineStatus, Loan


@pytest.fixture
def engine(tmp_path):
    # A file database per test so threads can share it
    engine = make_engine(f"sqlite:///{tmp_path / 'circulation.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def policy():
    return Settings(
        loan_period_days=14,
        default_extend_days=7,
        daily_fine_rate=Decimal("1.00"),
        bulk_payment_order="oldest_first",
        isbn_length=13,
    )


@pytest.fixture
def admin():
    return Caller(user_id=9000, role=Role.ADMIN)


@pytest.fixture
def make_member(db):
    counter = {"n": 0}

    def _make(name=None):
        counter["n"] += 1
        n = counter["n"]
        member = register_member(db, user_id=100 + n, name=name or f"member{n}", email=f"member{n}@example.com")
        caller = Caller(user_id=member.user_id, role=Role.MEMBER, member_id=member.member_id)
        return member, caller

    return _make


@pytest.fixture
def make_book(db):
    counter = {"n": 0}

    def _make(copies=1, title=None, isbn=None):
        counter["n"] += 1
        isbn = isbn or f"978000000{counter['n']:04d}"
        return register_book(db, title=title or f"Book {counter['n']}", isbn=isbn, copies=copies)

    return _make


@pytest.fixture
def make_fine(db, make_book):
    """Insert a closed loan and an open fine dated ``fine_date``."""

    def _make(member, amount, fine_date: datetime):
        book = make_book()
        loan = Loan(
            isbn=book.isbn,
            member_id=member.member_id,
            borrow_date=fine_date,
            due_date=fine_date,
            return_date=fine_date,
        )
        db.add(loan)
        db.flush()
        fine = Fine(
            loan_id=loan.loan_id,
            member_id=member.member_id,
            isbn=book.isbn,
            original_amount=Decimal(amount),
            remaining_amount=Decimal(amount),
            reason="overdue",
            fine_date=fine_date,
            payment_status=FineStatus.OPEN,
        )
        db.add(fine)
        db.commit()
        return fine

    return _make


@pytest.fixture
def failing_flush(db):
    """Make every flush on ``db`` fail the way a dropped connection does."""

    def _fail(session, flush_context, instances):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    @contextmanager
    def _failing():
        event.listen(db, "before_flush", _fail)
        try:
            yield
        finally:
            event.remove(db, "before_flush", _fail)

    return _failing
