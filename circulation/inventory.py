"""Inventory store: books and their copy counters.

Copy counters only ever move through ``adjust_copies``, a single conditional
UPDATE whose WHERE clause carries the ``0 <= available <= total`` guard. There
is no read-then-write window for a concurrent request to slip into.
"""
import logging
import re
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from circulation.config import Settings, settings as default_settings
from circulation.db import transaction
from circulation.errors import ConflictError, InvalidInputError, NotFoundError, OutOfStockError
from circulation.models import Book

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def normalize_isbn(raw: Optional[str], settings: Settings = default_settings) -> str:
    isbn = _NON_DIGITS.sub("", raw or "")
    if len(isbn) != settings.isbn_length:
        raise InvalidInputError(f"ISBN must have {settings.isbn_length} digits: {raw!r}")
    return isbn


def get_book(db: Session, isbn: str) -> Optional[Book]:
    return db.get(Book, isbn)


def require_book(db: Session, isbn: str) -> Book:
    book = get_book(db, isbn)
    if book is None:
        raise NotFoundError("Book not found")
    return book


def list_books(db: Session) -> List[Book]:
    return list(db.scalars(select(Book).order_by(Book.title)))


def register_book(
    db: Session,
    *,
    title: str,
    isbn: str,
    author: Optional[str] = None,
    copies: int = 1,
    settings: Settings = default_settings,
) -> Book:
    isbn = normalize_isbn(isbn, settings)
    if copies < 1:
        raise InvalidInputError("A book needs at least one copy")
    if get_book(db, isbn):
        raise ConflictError("ISBN already exists in the catalog")

    book = Book(
        title=title,
        author=author,
        isbn=isbn,
        copies_total=copies,
        copies_available=copies,
    )
    try:
        with transaction(db):
            db.add(book)
    except IntegrityError:
        raise ConflictError("ISBN already exists in the catalog")
    db.refresh(book)
    logger.info("[INVENTORY] registered isbn=%s copies=%s", isbn, copies)
    return book


def adjust_copies(db: Session, isbn: str, delta: int) -> bool:
    """Move ``copies_available`` by ``delta`` if the result stays in range.

    Returns False (nothing written) when the guard rejects the change. Runs in
    the caller's transaction.
    """
    stmt = (
        update(Book)
        .where(Book.isbn == isbn)
        .where(Book.copies_available + delta >= 0)
        .where(Book.copies_available + delta <= Book.copies_total)
        .values(copies_available=Book.copies_available + delta)
        .execution_options(synchronize_session=False)
    )
    changed = db.execute(stmt).rowcount == 1
    # A loaded Book would otherwise keep reporting the pre-update count
    book = db.identity_map.get(db.identity_key(Book, isbn))
    if book is not None:
        db.expire(book, ["copies_available"])
    return changed


def take_copy(db: Session, isbn: str) -> None:
    """Check one copy out, or raise OutOfStockError."""
    if not adjust_copies(db, isbn, -1):
        logger.info("[INVENTORY] out of stock isbn=%s", isbn)
        raise OutOfStockError("No copies available to borrow")


def put_back_copy(db: Session, isbn: str) -> bool:
    if adjust_copies(db, isbn, 1):
        return True
    # Every copy is already on the shelf (e.g. total lowered by an admin edit)
    logger.warning("[INVENTORY] return would exceed total copies isbn=%s; counter left as is", isbn)
    return False


def set_total_copies(db: Session, isbn: str, copies_total: int) -> Book:
    """Admin catalog edit: change the total, shifting available by the same delta."""
    if copies_total < 1:
        raise InvalidInputError("A book needs at least one copy")
    with transaction(db):
        book = require_book(db, isbn)
        delta = copies_total - book.copies_total
        stmt = (
            update(Book)
            .where(Book.isbn == isbn)
            .where(Book.copies_total == book.copies_total)
            .where(Book.copies_available + delta >= 0)
            .values(
                copies_total=copies_total,
                copies_available=Book.copies_available + delta,
            )
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount != 1:
            raise ConflictError("Cannot lower total copies below the number on loan")
    db.refresh(book)
    logger.info("[INVENTORY] total copies isbn=%s total=%s", isbn, copies_total)
    return book
