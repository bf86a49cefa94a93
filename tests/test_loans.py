import threading
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from circulation.errors import (
    AlreadyReturnedError,
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
    OutOfStockError,
    StorageError,
)
from circulation.fines import overdue_days
from circulation.identity import Caller, Role
from circulation.inventory import get_book
from circulation.loans import borrow_book, extend_loan, list_loans, return_loan
from circulation.models import Fine, Loan, ReservationStatus
from circulation.reservations import reserve_book


def test_borrow_last_copy_then_out_of_stock_then_return(db, make_book, make_member, policy):
    book = make_book(copies=1)
    _, alice = make_member()
    _, bob = make_member()

    loan = borrow_book(db, alice, book.isbn, settings=policy)
    assert loan.return_date is None
    assert get_book(db, book.isbn).copies_available == 0

    with pytest.raises(OutOfStockError):
        borrow_book(db, bob, book.isbn, settings=policy)
    assert db.scalar(select(func.count()).select_from(Loan)) == 1

    result = return_loan(db, alice, loan.loan_id, settings=policy)
    assert result.loan.return_date is not None
    assert result.fine is None
    assert get_book(db, book.isbn).copies_available == 1


def test_borrow_sets_due_date_from_loan_period(db, make_book, make_member, policy):
    book = make_book()
    _, caller = make_member()
    now = datetime(2024, 3, 10, 9, 30)

    loan = borrow_book(db, caller, book.isbn, now=now, settings=policy)

    assert loan.borrow_date == now
    assert loan.due_date == now + timedelta(days=14)


def test_borrow_normalizes_isbn(db, make_book, make_member, policy):
    book = make_book(isbn="9780441013593")
    _, caller = make_member()

    loan = borrow_book(db, caller, "978-0-441-01359-3", settings=policy)

    assert loan.isbn == book.isbn


def test_borrow_unknown_book_or_bad_isbn(db, make_member, policy):
    _, caller = make_member()

    with pytest.raises(NotFoundError):
        borrow_book(db, caller, "9789999999999", settings=policy)
    with pytest.raises(InvalidInputError):
        borrow_book(db, caller, "12-34", settings=policy)


def test_member_borrows_for_self_even_when_naming_someone_else(db, make_book, make_member, policy):
    book = make_book()
    alice, alice_caller = make_member()
    bob, _ = make_member()

    loan = borrow_book(db, alice_caller, book.isbn, target_member_id=bob.member_id, settings=policy)

    assert loan.member_id == alice.member_id


def test_admin_borrows_on_behalf_of_member(db, make_book, make_member, admin, policy):
    book = make_book()
    member, _ = make_member()

    with pytest.raises(InvalidInputError):
        borrow_book(db, admin, book.isbn, settings=policy)
    with pytest.raises(NotFoundError):
        borrow_book(db, admin, book.isbn, target_member_id=4242, settings=policy)

    loan = borrow_book(db, admin, book.isbn, target_member_id=member.member_id, settings=policy)
    assert loan.member_id == member.member_id


def test_caller_without_member_profile_cannot_borrow(db, make_book, policy):
    book = make_book()
    stranger = Caller(user_id=555, role=Role.MEMBER)

    with pytest.raises(NotFoundError):
        borrow_book(db, stranger, book.isbn, settings=policy)
    assert get_book(db, book.isbn).copies_available == 1


def test_borrow_fulfills_pending_reservation(db, make_book, make_member, policy):
    book = make_book(copies=2)
    _, caller = make_member()
    reservation = reserve_book(db, caller, book.isbn, settings=policy)

    borrow_book(db, caller, book.isbn, settings=policy)

    db.refresh(reservation)
    assert reservation.status == ReservationStatus.FULFILLED


def test_borrow_leaves_other_members_reservations_alone(db, make_book, make_member, policy):
    book = make_book(copies=2)
    _, alice = make_member()
    _, bob = make_member()
    bobs = reserve_book(db, bob, book.isbn, settings=policy)

    borrow_book(db, alice, book.isbn, settings=policy)

    db.refresh(bobs)
    assert bobs.status == ReservationStatus.PENDING


def test_overdue_return_creates_fine(db, make_book, make_member, policy):
    book = make_book()
    _, caller = make_member()
    loan = borrow_book(db, caller, book.isbn, now=datetime(2023, 12, 27), settings=policy)
    assert loan.due_date == datetime(2024, 1, 10)

    result = return_loan(db, caller, loan.loan_id, now=datetime(2024, 1, 15), settings=policy)

    assert result.fine is not None
    assert result.fine.original_amount == Decimal("5.00")
    assert result.fine.remaining_amount == Decimal("5.00")
    assert result.fine.payment_status.value == "open"
    assert result.fine.reason == "overdue"
    assert result.fine.loan_id == loan.loan_id


def test_partial_day_late_counts_as_full_day(db, make_book, make_member, policy):
    book = make_book()
    _, caller = make_member()
    loan = borrow_book(db, caller, book.isbn, now=datetime(2024, 1, 1, 12, 0), settings=policy)

    result = return_loan(db, caller, loan.loan_id, now=loan.due_date + timedelta(hours=1), settings=policy)

    assert result.fine.original_amount == Decimal("1.00")


def test_fine_uses_configured_daily_rate(db, make_book, make_member, policy):
    policy.daily_fine_rate = Decimal("0.25")
    book = make_book()
    _, caller = make_member()
    loan = borrow_book(db, caller, book.isbn, now=datetime(2024, 1, 1), settings=policy)

    result = return_loan(db, caller, loan.loan_id, now=loan.due_date + timedelta(days=3), settings=policy)

    assert result.fine.original_amount == Decimal("0.75")


def test_overdue_days():
    due = datetime(2024, 1, 10)
    assert overdue_days(due, datetime(2024, 1, 15)) == 5
    assert overdue_days(due, datetime(2024, 1, 9)) == 0
    assert overdue_days(due, due) == 0
    assert overdue_days(due, due + timedelta(seconds=1)) == 1


def test_double_return_yields_one_fine(db, make_book, make_member, policy):
    book = make_book()
    _, caller = make_member()
    loan = borrow_book(db, caller, book.isbn, now=datetime(2024, 1, 1), settings=policy)
    late = loan.due_date + timedelta(days=2)

    return_loan(db, caller, loan.loan_id, now=late, settings=policy)
    with pytest.raises(AlreadyReturnedError):
        return_loan(db, caller, loan.loan_id, now=late + timedelta(days=1), settings=policy)

    assert db.scalar(select(func.count()).select_from(Fine)) == 1
    assert get_book(db, book.isbn).copies_available == 1


def test_member_cannot_return_someone_elses_loan(db, make_book, make_member, admin, policy):
    book = make_book()
    _, alice = make_member()
    _, bob = make_member()
    loan = borrow_book(db, alice, book.isbn, settings=policy)

    with pytest.raises(ForbiddenError):
        return_loan(db, bob, loan.loan_id, settings=policy)
    assert get_book(db, book.isbn).copies_available == 0

    result = return_loan(db, admin, loan.loan_id, settings=policy)
    assert result.loan.return_date is not None


def test_return_unknown_loan(db, make_member, policy):
    _, caller = make_member()
    with pytest.raises(NotFoundError):
        return_loan(db, caller, 12345, settings=policy)


def test_extend_loan(db, make_book, make_member, admin, policy):
    book = make_book()
    _, caller = make_member()
    loan = borrow_book(db, caller, book.isbn, now=datetime(2024, 1, 1), settings=policy)

    extended = extend_loan(db, admin, loan.loan_id, 3, settings=policy)
    assert extended.due_date == datetime(2024, 1, 18)

    extended = extend_loan(db, admin, loan.loan_id, settings=policy)
    assert extended.due_date == datetime(2024, 1, 25)
    assert get_book(db, book.isbn).copies_available == 0


def test_extend_loan_rules(db, make_book, make_member, admin, policy):
    book = make_book()
    _, caller = make_member()
    loan = borrow_book(db, caller, book.isbn, settings=policy)

    with pytest.raises(ForbiddenError):
        extend_loan(db, caller, loan.loan_id, 3, settings=policy)
    with pytest.raises(InvalidInputError):
        extend_loan(db, admin, loan.loan_id, 0, settings=policy)
    with pytest.raises(NotFoundError):
        extend_loan(db, admin, 999, 3, settings=policy)

    return_loan(db, caller, loan.loan_id, settings=policy)
    with pytest.raises(AlreadyReturnedError):
        extend_loan(db, admin, loan.loan_id, 3, settings=policy)


def test_list_loans(db, make_book, make_member, admin, policy):
    book = make_book(copies=3)
    alice, alice_caller = make_member()
    _, bob_caller = make_member()
    first = borrow_book(db, alice_caller, book.isbn, now=datetime(2024, 1, 1), settings=policy)
    second = borrow_book(db, alice_caller, book.isbn, now=datetime(2024, 2, 1), settings=policy)
    borrow_book(db, bob_caller, book.isbn, settings=policy)

    mine = list_loans(db, alice_caller)
    assert [l.loan_id for l in mine] == [second.loan_id, first.loan_id]
    assert [l.loan_id for l in list_loans(db, admin, alice.member_id)] == [second.loan_id, first.loan_id]


def test_failed_loan_insert_rolls_back_the_copy(db, make_book, make_member, failing_flush, policy):
    book = make_book(copies=1)
    _, caller = make_member()

    with failing_flush():
        with pytest.raises(StorageError):
            borrow_book(db, caller, book.isbn, settings=policy)

    assert get_book(db, book.isbn).copies_available == 1
    assert db.scalar(select(func.count()).select_from(Loan)) == 0
    # The shelf is usable again once storage recovers
    assert borrow_book(db, caller, book.isbn, settings=policy).return_date is None


def test_failed_fine_insert_rolls_back_the_return(db, make_book, make_member, failing_flush, policy):
    book = make_book(copies=1)
    _, caller = make_member()
    loan = borrow_book(db, caller, book.isbn, now=datetime(2024, 1, 1), settings=policy)
    loan_id = loan.loan_id
    late = loan.due_date + timedelta(days=3)

    with failing_flush():
        with pytest.raises(StorageError):
            return_loan(db, caller, loan_id, now=late, settings=policy)

    assert db.get(Loan, loan_id).return_date is None
    assert get_book(db, book.isbn).copies_available == 0
    assert db.scalar(select(func.count()).select_from(Fine)) == 0

    result = return_loan(db, caller, loan_id, now=late, settings=policy)
    assert result.fine.original_amount == Decimal("3.00")


def test_concurrent_borrows_never_oversell(db, session_factory, make_book, make_member, admin, policy):
    copies, attempts = 3, 8
    book = make_book(copies=copies)
    member_ids = [make_member()[0].member_id for _ in range(attempts)]
    isbn = book.isbn
    # Release the fixture session's transaction so worker threads can write
    db.commit()

    barrier = threading.Barrier(attempts)
    outcomes = []
    lock = threading.Lock()

    def worker(member_id):
        with session_factory() as session:
            barrier.wait()
            try:
                borrow_book(session, admin, isbn, member_id, settings=policy)
                outcome = "loan"
            except OutOfStockError:
                outcome = "out_of_stock"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(m,)) for m in member_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("loan") == copies
    assert outcomes.count("out_of_stock") == attempts - copies
    assert db.scalar(select(func.count()).select_from(Loan)) == copies
    assert get_book(db, isbn).copies_available == 0
