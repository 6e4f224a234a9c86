from datetime import timedelta
from decimal import Decimal

import pytest

from library_service.errors import (
    BookNotFound,
    BusinessRuleViolation,
    DuplicateIsbn,
    UserNotFound,
    ValidationError,
)

from .conftest import NOW


def test_add_book_normalizes_isbn(ledger):
    book = ledger.catalog.add_book(
        "Effective Java", "Joshua Bloch", "978-0134685991", total_copies=4, price="45.5"
    )
    assert book.isbn == "9780134685991"
    assert book.available_copies == 4
    assert book.price == Decimal("45.50")

    with pytest.raises(DuplicateIsbn):
        ledger.catalog.add_book("Copy", "Someone", "9780134685991")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"title": "", "author": "A", "isbn": "9780134685991"},
        {"title": "T", "author": "A", "isbn": "not-an-isbn"},
        {"title": "T", "author": "A", "isbn": "9780134685991", "price": "-1"},
        {"title": "T", "author": "A", "isbn": "9780134685991", "total_copies": "many"},
    ],
)
def test_add_book_validation(ledger, kwargs):
    with pytest.raises(ValidationError):
        ledger.catalog.add_book(**kwargs)


def test_set_total_copies_keeps_copies_out(ledger, make_book, make_user):
    book = make_book(total_copies=3)
    user = make_user()
    ledger.borrow(user.id, book.id, NOW + timedelta(days=2))

    grown = ledger.catalog.set_total_copies(book.id, 5)
    assert (grown.total_copies, grown.available_copies) == (5, 4)

    shrunk = ledger.catalog.set_total_copies(book.id, 1)
    assert (shrunk.total_copies, shrunk.available_copies) == (1, 0)

    with pytest.raises(BusinessRuleViolation):
        ledger.catalog.set_total_copies(book.id, 0)
    with pytest.raises(BookNotFound):
        ledger.catalog.set_total_copies(999, 2)


def test_register_user(ledger, make_user):
    user = make_user(wallet_balance="25.00")
    assert ledger.catalog.get_user(user.id).wallet_balance == Decimal("25.00")

    with pytest.raises(ValidationError):
        ledger.catalog.register_user(user.user_name, "other@example.com", "Other")
    with pytest.raises(ValidationError):
        ledger.catalog.register_user("x", "x@example.com", "X", role="root")
    with pytest.raises(UserNotFound):
        ledger.catalog.get_user(999)


def test_update_book_fields(ledger, make_book):
    book = make_book(total_copies=2)

    updated = ledger.catalog.update_book(
        book.id,
        {
            "price": "80",
            "borrow_price": "4.5",
            "borrow_fine": "1",
            "isbn": "978-0-13-468599-1",
            "category": "Programming",
            "total_copies": 4,
        },
    )

    assert updated.price == Decimal("80.00")
    assert updated.borrow_price == Decimal("4.50")
    assert updated.borrow_fine == Decimal("1.00")
    assert updated.isbn == "9780134685991"
    assert updated.category_id is not None
    assert (updated.total_copies, updated.available_copies) == (4, 4)
    assert updated.title == "Clean Code"

    cleared = ledger.catalog.update_book(book.id, {"category": None})
    assert cleared.category_id is None


def test_update_book_validation(ledger, make_book):
    book = make_book()
    other = make_book()

    with pytest.raises(DuplicateIsbn):
        ledger.catalog.update_book(book.id, {"isbn": other.isbn})
    with pytest.raises(ValidationError):
        ledger.catalog.update_book(book.id, {"isbn": "123"})
    with pytest.raises(ValidationError):
        ledger.catalog.update_book(book.id, {"title": ""})
    with pytest.raises(ValidationError):
        ledger.catalog.update_book(book.id, {"price": "-5"})
    with pytest.raises(ValidationError):
        ledger.catalog.update_book(book.id, {"available_copies": 99})
    with pytest.raises(BookNotFound):
        ledger.catalog.update_book(999, {"title": "Nope"})

    # keeping its own ISBN is not a duplicate
    same = ledger.catalog.update_book(book.id, {"isbn": book.isbn, "title": "Renamed"})
    assert same.title == "Renamed"


def test_update_book_cannot_shrink_below_copies_out(ledger, make_book, make_user):
    book = make_book(total_copies=2)
    ledger.borrow(make_user().id, book.id, NOW + timedelta(days=2))
    ledger.borrow(make_user().id, book.id, NOW + timedelta(days=2))

    with pytest.raises(BusinessRuleViolation):
        ledger.catalog.update_book(book.id, {"total_copies": 1, "price": "99"})

    stored = ledger.catalog.get_book(book.id)
    assert (stored.total_copies, stored.available_copies) == (2, 0)
    assert stored.price == Decimal("50.00")


def test_delete_unreferenced_book(ledger, make_book):
    book = make_book()
    ledger.catalog.delete_book(book.id)

    with pytest.raises(BookNotFound):
        ledger.catalog.get_book(book.id)
    with pytest.raises(BookNotFound):
        ledger.catalog.delete_book(book.id)


def test_delete_refused_while_referenced(ledger, make_book, make_user):
    borrowed = make_book()
    on_plan = make_book(price="300.00")
    returned = make_book()
    user = make_user()

    ledger.borrow(user.id, borrowed.id, NOW + timedelta(days=2))
    ledger.purchase(user.id, on_plan.id, 1, payment_type="installment", installment_months=3)
    ledger.return_book(ledger.borrow(user.id, returned.id, NOW + timedelta(days=2)).id)

    for book in (borrowed, on_plan, returned):
        with pytest.raises(BusinessRuleViolation):
            ledger.catalog.delete_book(book.id)
        assert ledger.catalog.get_book(book.id).id == book.id
