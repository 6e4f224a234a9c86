"""
Available-copy counter for books.

Every mutation is one conditional UPDATE so the check and the write happen
in the database together: two requests racing for the last copy cannot both
succeed, the loser sees a zero rowcount and gets OutOfStock.
"""

import logging

from sqlalchemy import select, update

from .errors import BookNotFound, OutOfStock, ValidationError
from .models import Book

logger = logging.getLogger(__name__)


def _current_copies(session, book_id):
    return session.execute(
        select(Book.available_copies).where(Book.id == book_id)
    ).scalar_one_or_none()


def reserve_copies(session, book: Book, quantity: int = 1) -> Book:
    """Take `quantity` copies off the shelf or fail with OutOfStock."""
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    result = session.execute(
        update(Book)
        .where(Book.id == book.id, Book.available_copies >= quantity)
        .values(available_copies=Book.available_copies - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        available = _current_copies(session, book.id)
        if available is None:
            raise BookNotFound()
        logger.warning(
            "Reservation rejected book=%s wanted=%s available=%s",
            book.id,
            quantity,
            available,
        )
        if quantity == 1:
            raise OutOfStock("No available copies of the book")
        raise OutOfStock("Not enough copies available for purchase")

    session.refresh(book)
    return book


def reserve_copy(session, book: Book) -> Book:
    return reserve_copies(session, book, 1)


def release_copy(session, book: Book) -> Book:
    """
    Put one copy back. The counter never goes above total_copies; a release
    that would overflow is logged and skipped.
    """
    result = session.execute(
        update(Book)
        .where(Book.id == book.id, Book.available_copies < Book.total_copies)
        .values(available_copies=Book.available_copies + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        if _current_copies(session, book.id) is None:
            raise BookNotFound()
        logger.warning(
            "Release skipped for book=%s, already at total_copies", book.id
        )

    session.refresh(book)
    return book
