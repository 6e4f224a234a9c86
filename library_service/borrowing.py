"""
Borrow/return engine.

A borrow moves one way only: borrowed -> returned. The borrow price is
quoted up front from the number of days until the expected return date;
on return the loan is settled either with a late fine or, when it comes
back early, with a proportional discount on the quoted price.
"""

import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from .availability import release_copy, reserve_copy
from .clock import SystemClock
from .db import session_scope
from .errors import (
    AlreadyReturned,
    BookNotFound,
    BorrowLimitExceeded,
    BorrowNotFound,
    DuplicateBorrow,
    InvalidDate,
    OutOfStock,
    UserNotFound,
    ValidationError,
)
from .models import Book, Borrow, User

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)
CENTS = Decimal("0.01")


def round2(amount) -> Decimal:
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_return_date(value, now: datetime) -> datetime:
    """
    Accept a datetime, a date or an ISO-8601 string and return a naive UTC
    datetime strictly after `now`.
    """
    if value is None or value == "":
        raise InvalidDate("Expected return date is required")

    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise InvalidDate(f"Invalid expected return date: {value!r}")
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time())
    elif not isinstance(value, datetime):
        raise InvalidDate(f"Invalid expected return date: {value!r}")

    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)

    if value <= now:
        raise InvalidDate("Expected return date must be in the future")
    return value


def borrow_days(start: datetime, end: datetime) -> int:
    """Whole days between two instants, any started day counts."""
    return math.ceil((end - start) / ONE_DAY)


def quote_borrow_price(now: datetime, expected_return_date: datetime, borrow_price) -> Decimal:
    return round2(borrow_days(now, expected_return_date) * Decimal(borrow_price or 0))


def compute_fine(expected_return_date: datetime, return_date: datetime, borrow_fine) -> Decimal:
    """Calendar days late times the per-day fine. Zero on or before the due day."""
    if return_date <= expected_return_date:
        return round2(0)
    overdue_days = max(0, (return_date.date() - expected_return_date.date()).days)
    return round2(overdue_days * Decimal(borrow_fine or 0))


def compute_refund(
    borrowed_date: datetime,
    expected_return_date: datetime,
    return_date: datetime,
    total_borrow_price,
) -> Decimal:
    """Share of the quoted price for the whole days the book came back early."""
    total_borrow_price = Decimal(total_borrow_price or 0)
    if return_date >= expected_return_date:
        return round2(0)

    total_days = borrow_days(borrowed_date, expected_return_date)
    if total_days <= 0:
        return round2(0)

    unused_days = math.floor((expected_return_date - return_date) / ONE_DAY)
    daily_rate = total_borrow_price / total_days
    return round2(min(total_borrow_price, unused_days * daily_rate))


class BorrowService:
    def __init__(self, session_factory, clock=None, max_active_borrows: int = 5):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.max_active_borrows = max_active_borrows

    def _open_borrow_count(self, session, user_id, book_id=None):
        q = select(func.count(Borrow.id)).where(
            Borrow.user_id == user_id, Borrow.status == "borrowed"
        )
        if book_id is not None:
            q = q.where(Borrow.book_id == book_id)
        return session.execute(q).scalar_one()

    def borrow(self, user_id, book_id, expected_return_date) -> Borrow:
        if not user_id or not book_id or not expected_return_date:
            raise ValidationError(
                "User ID, Book ID, and Expected Return Date are required"
            )

        now = self.clock.now()
        expected = parse_return_date(expected_return_date, now)

        with session_scope(self.session_factory) as session:
            user = session.execute(
                select(User).where(User.id == user_id)
            ).scalar_one_or_none()
            if not user:
                raise UserNotFound()

            book = session.execute(
                select(Book).where(Book.id == book_id)
            ).scalar_one_or_none()
            if not book:
                raise BookNotFound()

            if book.available_copies <= 0:
                raise OutOfStock("No available copies of the book")

            if self._open_borrow_count(session, user.id, book.id):
                raise DuplicateBorrow()

            if (
                user.role == "user"
                and self.max_active_borrows
                and self._open_borrow_count(session, user.id) >= self.max_active_borrows
            ):
                raise BorrowLimitExceeded(
                    f"You cannot borrow more than {self.max_active_borrows} books at a time"
                )

            total_borrow_price = quote_borrow_price(now, expected, book.borrow_price)

            reserve_copy(session, book)
            borrow = Borrow(
                user_id=user.id,
                book_id=book.id,
                borrowed_date=now,
                expected_return_date=expected,
                status="borrowed",
                total_borrow_price=total_borrow_price,
                total_price=book.price or 0,
                total_borrowed_fine=0,
            )
            session.add(borrow)
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateBorrow() from e

            logger.info(
                "Borrow %s created user=%s book=%s due=%s price=%s",
                borrow.id,
                user.id,
                book.id,
                expected.isoformat(),
                total_borrow_price,
            )
            return borrow

    def return_book(self, borrow_id) -> Borrow:
        with session_scope(self.session_factory) as session:
            borrow = session.execute(
                select(Borrow).where(Borrow.id == borrow_id).with_for_update()
            ).scalar_one_or_none()
            if not borrow:
                raise BorrowNotFound()

            if borrow.status == "returned":
                raise AlreadyReturned()

            book = session.execute(
                select(Book).where(Book.id == borrow.book_id).with_for_update()
            ).scalar_one_or_none()
            if not book:
                raise BookNotFound()

            now = self.clock.now()
            fine = compute_fine(borrow.expected_return_date, now, book.borrow_fine)
            refund = compute_refund(
                borrow.borrowed_date,
                borrow.expected_return_date,
                now,
                borrow.total_borrow_price,
            )
            settled_price = max(
                round2(0), round2(Decimal(borrow.total_borrow_price) - refund)
            )

            # Close only if still open, a concurrent return loses here.
            result = session.execute(
                update(Borrow)
                .where(Borrow.id == borrow.id, Borrow.status == "borrowed")
                .values(
                    status="returned",
                    return_date=now,
                    total_borrowed_fine=fine,
                    total_borrow_price=settled_price,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise AlreadyReturned()
            session.refresh(borrow)

            release_copy(session, book)

            logger.info(
                "Borrow %s returned book=%s fine=%s refund=%s",
                borrow.id,
                book.id,
                fine,
                refund,
            )
            return borrow

    def list_borrows(self, user_id=None, status: Optional[str] = None) -> List[Borrow]:
        with session_scope(self.session_factory) as session:
            q = select(Borrow).order_by(Borrow.borrowed_date.desc(), Borrow.id.desc())
            if user_id is not None:
                q = q.where(Borrow.user_id == user_id)
            if status:
                q = q.where(Borrow.status == status)
            return session.execute(q).scalars().all()
