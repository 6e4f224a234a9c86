import threading
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from library_service.borrowing import (
    borrow_days,
    compute_fine,
    compute_refund,
    parse_return_date,
)
from library_service.errors import (
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

from .conftest import NOW


# ----------------- pricing rules -----------------

def test_borrow_days_rounds_partial_days_up():
    assert borrow_days(NOW, NOW + timedelta(days=10)) == 10
    assert borrow_days(NOW, NOW + timedelta(days=2, hours=1)) == 3


def test_fine_three_days_late():
    due = NOW
    assert compute_fine(due, due + timedelta(days=3), Decimal("2")) == Decimal("6.00")


def test_no_fine_on_due_day():
    assert compute_fine(NOW, NOW, Decimal("2")) == Decimal("0")
    # later the same calendar day is not a late day yet
    assert compute_fine(NOW, NOW + timedelta(hours=5), Decimal("2")) == Decimal("0")


def test_refund_is_proportional():
    borrowed = NOW
    due = NOW + timedelta(days=10)
    returned = due - timedelta(days=2)
    assert compute_refund(borrowed, due, returned, Decimal("100")) == Decimal("20.00")


def test_no_refund_on_or_after_due_date():
    due = NOW + timedelta(days=10)
    assert compute_refund(NOW, due, due, Decimal("100")) == Decimal("0")
    assert compute_refund(NOW, due, due + timedelta(days=1), Decimal("100")) == Decimal("0")


def test_parse_return_date_accepts_common_forms():
    assert parse_return_date("2026-03-10T12:00:00", NOW) == datetime(2026, 3, 10, 12, 0)
    assert parse_return_date("2026-03-10T12:00:00Z", NOW) == datetime(2026, 3, 10, 12, 0)
    assert parse_return_date(date(2026, 3, 10), NOW) == datetime(2026, 3, 10)


@pytest.mark.parametrize("value", ["not a date", "2026-02-01", NOW, 42, ""])
def test_parse_return_date_rejects_bad_or_past(value):
    with pytest.raises(InvalidDate):
        parse_return_date(value, NOW)


# ----------------- borrow -----------------

def test_borrow_quotes_price_and_takes_a_copy(ledger, make_book, make_user):
    book = make_book(total_copies=2, borrow_price="10.00")
    user = make_user()

    borrow = ledger.borrow(user.id, book.id, NOW + timedelta(days=7))

    assert borrow.status == "borrowed"
    assert borrow.borrowed_date == NOW
    assert borrow.total_borrow_price == Decimal("70.00")
    assert borrow.total_price == Decimal("50.00")
    assert borrow.return_date is None
    assert ledger.catalog.get_book(book.id).available_copies == 1


def test_borrow_requires_all_fields(ledger):
    with pytest.raises(ValidationError):
        ledger.borrow(None, 1, NOW + timedelta(days=1))


def test_borrow_rejects_past_date(ledger, make_book, make_user):
    book = make_book()
    user = make_user()
    with pytest.raises(InvalidDate):
        ledger.borrow(user.id, book.id, NOW - timedelta(days=1))
    assert ledger.catalog.get_book(book.id).available_copies == 3


def test_borrow_unknown_user_or_book(ledger, make_book, make_user):
    book = make_book()
    user = make_user()
    due = NOW + timedelta(days=3)
    with pytest.raises(UserNotFound):
        ledger.borrow(999, book.id, due)
    with pytest.raises(BookNotFound):
        ledger.borrow(user.id, 999, due)


def test_borrow_out_of_stock(ledger, make_book, make_user):
    book = make_book(total_copies=1)
    first, second = make_user(), make_user()
    due = NOW + timedelta(days=3)

    ledger.borrow(first.id, book.id, due)
    with pytest.raises(OutOfStock):
        ledger.borrow(second.id, book.id, due)
    assert ledger.catalog.get_book(book.id).available_copies == 0


def test_duplicate_open_borrow(ledger, make_book, make_user):
    book = make_book()
    user = make_user()
    due = NOW + timedelta(days=3)

    ledger.borrow(user.id, book.id, due)
    with pytest.raises(DuplicateBorrow):
        ledger.borrow(user.id, book.id, due)
    assert ledger.catalog.get_book(book.id).available_copies == 2


def test_borrow_again_after_return(ledger, make_book, make_user):
    book = make_book()
    user = make_user()
    due = NOW + timedelta(days=3)

    first = ledger.borrow(user.id, book.id, due)
    ledger.return_book(first.id)
    second = ledger.borrow(user.id, book.id, due)
    assert second.id != first.id


def test_borrow_limit_for_regular_users(ledger, make_book, make_user):
    user = make_user()
    due = NOW + timedelta(days=3)
    for i in range(5):
        ledger.borrow(user.id, make_book(title=f"Book {i}").id, due)

    extra = make_book(title="One too many")
    with pytest.raises(BorrowLimitExceeded):
        ledger.borrow(user.id, extra.id, due)
    assert ledger.catalog.get_book(extra.id).available_copies == 3


def test_admins_have_no_borrow_limit(ledger, make_book, make_user):
    admin = make_user(role="admin")
    due = NOW + timedelta(days=3)
    for i in range(6):
        ledger.borrow(admin.id, make_book(title=f"Book {i}").id, due)
    assert len(ledger.borrows.list_borrows(user_id=admin.id, status="borrowed")) == 6


def test_concurrent_borrow_of_last_copy(ledger, make_book, make_user):
    book = make_book(total_copies=1)
    users = [make_user(), make_user()]
    due = NOW + timedelta(days=7)
    barrier = threading.Barrier(len(users))
    outcomes = []

    def attempt(user):
        barrier.wait()
        try:
            ledger.borrow(user.id, book.id, due)
            outcomes.append("borrowed")
        except OutOfStock:
            outcomes.append("out_of_stock")

    threads = [threading.Thread(target=attempt, args=(u,)) for u in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["borrowed", "out_of_stock"]
    assert ledger.catalog.get_book(book.id).available_copies == 0


# ----------------- return -----------------

def test_return_on_due_date_has_no_fine_or_refund(ledger, make_book, make_user, clock):
    book = make_book(borrow_price="10.00", borrow_fine="2.00")
    user = make_user()
    borrow = ledger.borrow(user.id, book.id, NOW + timedelta(days=10))

    clock.set(borrow.expected_return_date)
    returned = ledger.return_book(borrow.id)

    assert returned.status == "returned"
    assert returned.total_borrowed_fine == Decimal("0")
    assert returned.total_borrow_price == Decimal("100.00")
    assert returned.total_price_paid == Decimal("100.00")


def test_return_three_days_late(ledger, make_book, make_user, clock):
    book = make_book(borrow_price="10.00", borrow_fine="2.00")
    user = make_user()
    borrow = ledger.borrow(user.id, book.id, NOW + timedelta(days=10))

    clock.set(borrow.expected_return_date + timedelta(days=3))
    returned = ledger.return_book(borrow.id)

    assert returned.total_borrowed_fine == Decimal("6.00")
    assert returned.total_borrow_price == Decimal("100.00")
    assert returned.total_price_paid == Decimal("106.00")


def test_return_two_days_early(ledger, make_book, make_user, clock):
    book = make_book(borrow_price="10.00", borrow_fine="2.00")
    user = make_user()
    borrow = ledger.borrow(user.id, book.id, NOW + timedelta(days=10))

    clock.set(borrow.expected_return_date - timedelta(days=2))
    returned = ledger.return_book(borrow.id)

    assert returned.total_borrowed_fine == Decimal("0")
    assert returned.total_borrow_price == Decimal("80.00")


def test_return_restores_copies(ledger, make_book, make_user, clock):
    book = make_book(total_copies=2)
    user = make_user()
    borrow = ledger.borrow(user.id, book.id, NOW + timedelta(days=5))
    assert ledger.catalog.get_book(book.id).available_copies == 1

    clock.advance(days=1)
    returned = ledger.return_book(borrow.id)

    assert returned.return_date >= returned.borrowed_date
    assert ledger.catalog.get_book(book.id).available_copies == 2


def test_return_twice(ledger, make_book, make_user):
    book = make_book()
    user = make_user()
    borrow = ledger.borrow(user.id, book.id, NOW + timedelta(days=5))
    ledger.return_book(borrow.id)

    with pytest.raises(AlreadyReturned):
        ledger.return_book(borrow.id)
    assert ledger.catalog.get_book(book.id).available_copies == 3


def test_return_unknown_borrow(ledger):
    with pytest.raises(BorrowNotFound):
        ledger.return_book(12345)


def test_list_borrows_filters(ledger, make_book, make_user):
    user = make_user()
    other = make_user()
    due = NOW + timedelta(days=5)
    kept = ledger.borrow(user.id, make_book().id, due)
    returned = ledger.borrow(user.id, make_book().id, due)
    ledger.borrow(other.id, make_book().id, due)
    ledger.return_book(returned.id)

    open_ids = [b.id for b in ledger.borrows.list_borrows(user_id=user.id, status="borrowed")]
    assert open_ids == [kept.id]
    assert len(ledger.borrows.list_borrows()) == 3
