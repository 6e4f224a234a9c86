import logging
import re
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .borrowing import round2
from .db import session_scope
from .errors import (
    BookNotFound,
    BusinessRuleViolation,
    DuplicateIsbn,
    UserNotFound,
    ValidationError,
)
from .models import Book, Borrow, Category, InstallmentPlan, Transaction, User
from .payments import whole_number

logger = logging.getLogger(__name__)

# ISBN-10 or ISBN-13, digits only, optional trailing X
ISBN_RE = re.compile(r"^(97(8|9))?\d{9}(\d|X)$")

EDITABLE_BOOK_FIELDS = (
    "title",
    "author",
    "isbn",
    "publisher",
    "description",
    "category",
    "total_copies",
    "price",
    "borrow_price",
    "borrow_fine",
)


def normalize_isbn(isbn: str) -> str:
    return (isbn or "").replace("-", "").replace(" ", "").upper()


def _amount(value, name) -> Decimal:
    try:
        amount = Decimal(str(value if value is not None else 0))
    except InvalidOperation:
        raise ValidationError(f"{name} must be a number")
    if amount < 0:
        raise ValidationError(f"{name} cannot be negative")
    return round2(amount)


def _copies(value) -> int:
    copies = whole_number(value, "total_copies")
    if copies < 0:
        raise ValidationError("total_copies cannot be negative")
    return copies


class CatalogService:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    # ----------------- books -----------------

    def add_book(
        self,
        title,
        author,
        isbn,
        total_copies=1,
        price=0,
        borrow_price=0,
        borrow_fine=0,
        category: Optional[str] = None,
        publisher=None,
        description=None,
    ) -> Book:
        if not title or not author or not isbn:
            raise ValidationError("Title, author, and ISBN are required")

        isbn = normalize_isbn(isbn)
        if not ISBN_RE.match(isbn):
            raise ValidationError("Invalid ISBN format")

        total_copies = _copies(total_copies)

        with session_scope(self.session_factory) as session:
            if session.execute(select(Book.id).where(Book.isbn == isbn)).first():
                raise DuplicateIsbn()

            book = Book(
                isbn=isbn,
                title=title,
                author=author,
                publisher=publisher,
                description=description,
                total_copies=total_copies,
                available_copies=total_copies,
                price=_amount(price, "price"),
                borrow_price=_amount(borrow_price, "borrow_price"),
                borrow_fine=_amount(borrow_fine, "borrow_fine"),
            )
            if category:
                book.category = self._category(session, category)
            session.add(book)
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateIsbn() from e

            logger.info("Created book %s isbn=%s copies=%s", book.id, isbn, total_copies)
            return book

    def _category(self, session, name) -> Category:
        category = session.execute(
            select(Category).where(Category.name == name)
        ).scalar_one_or_none()
        if not category:
            category = Category(name=name)
            session.add(category)
        return category

    def _locked_book(self, session, book_id) -> Book:
        book = session.execute(
            select(Book).where(Book.id == book_id).with_for_update()
        ).scalar_one_or_none()
        if not book:
            raise BookNotFound()
        return book

    def _resize(self, session, book, total_copies):
        """
        Copies out on loan or sold stay out, so available_copies moves by the
        same difference and the change is refused if it would go negative.
        """
        diff = total_copies - book.total_copies
        result = session.execute(
            update(Book)
            .where(Book.id == book.id, Book.available_copies + diff >= 0)
            .values(
                total_copies=total_copies,
                available_copies=Book.available_copies + diff,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise BusinessRuleViolation(
                "total_copies cannot be lower than the copies currently out"
            )

    def set_total_copies(self, book_id, total_copies) -> Book:
        """Change the number of owned copies."""
        total_copies = _copies(total_copies)
        with session_scope(self.session_factory) as session:
            book = self._locked_book(session, book_id)
            self._resize(session, book, total_copies)
            session.refresh(book)
            logger.info("Book %s total_copies set to %s", book.id, total_copies)
            return book

    def update_book(self, book_id, changes) -> Book:
        """
        Edit catalog fields of a book from a mapping of field -> value.
        Only the keys present are touched, and a None category clears it.
        A new ISBN goes through the same format and uniqueness checks as
        add_book.
        """
        changes = dict(changes)
        unknown = set(changes) - set(EDITABLE_BOOK_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}")
        fields = sorted(changes)

        for field in ("title", "author", "isbn"):
            if field in changes and not changes[field]:
                raise ValidationError(f"{field} cannot be empty")
        if "isbn" in changes:
            changes["isbn"] = normalize_isbn(changes["isbn"])
            if not ISBN_RE.match(changes["isbn"]):
                raise ValidationError("Invalid ISBN format")
        for field in ("price", "borrow_price", "borrow_fine"):
            if field in changes:
                changes[field] = _amount(changes[field], field)
        total_copies = changes.pop("total_copies", None)
        if total_copies is not None:
            total_copies = _copies(total_copies)

        with session_scope(self.session_factory) as session:
            book = self._locked_book(session, book_id)

            isbn = changes.get("isbn")
            if isbn and isbn != book.isbn:
                taken = session.execute(
                    select(Book.id).where(Book.isbn == isbn, Book.id != book.id)
                ).first()
                if taken:
                    raise DuplicateIsbn()

            if "category" in changes:
                name = changes.pop("category")
                book.category = self._category(session, name) if name else None
            for field, value in changes.items():
                setattr(book, field, value)
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateIsbn() from e

            if total_copies is not None:
                self._resize(session, book, total_copies)
                session.refresh(book)

            logger.info("Updated book %s fields=%s", book.id, fields)
            return book

    def delete_book(self, book_id):
        """
        Remove a book nobody references. Open borrows and active plans are
        refused, and so is any borrow or purchase history, which earnings
        reports still read.
        """
        with session_scope(self.session_factory) as session:
            book = self._locked_book(session, book_id)

            open_borrow = session.execute(
                select(Borrow.id).where(Borrow.book_id == book.id, Borrow.status == "borrowed")
            ).first()
            active_plan = session.execute(
                select(InstallmentPlan.id).where(
                    InstallmentPlan.book_id == book.id, InstallmentPlan.status == "active"
                )
            ).first()
            if open_borrow or active_plan:
                logger.warning("Refused to delete book %s: still borrowed or on a plan", book.id)
                raise BusinessRuleViolation(
                    "Book has open borrows or active installment plans"
                )

            history = (
                session.execute(select(Borrow.id).where(Borrow.book_id == book.id)).first()
                or session.execute(
                    select(Transaction.id).where(Transaction.book_id == book.id)
                ).first()
                or session.execute(
                    select(InstallmentPlan.id).where(InstallmentPlan.book_id == book.id)
                ).first()
            )
            if history:
                logger.warning("Refused to delete book %s: has history", book.id)
                raise BusinessRuleViolation("Book has borrow or purchase history")

            session.delete(book)
            logger.info("Deleted book %s isbn=%s", book.id, book.isbn)

    def get_book(self, book_id) -> Book:
        with session_scope(self.session_factory) as session:
            book = session.get(Book, book_id)
            if not book:
                raise BookNotFound()
            return book

    def list_books(self, title=None, author=None) -> List[Book]:
        with session_scope(self.session_factory) as session:
            q = select(Book).order_by(Book.id)
            if title:
                q = q.where(Book.title.ilike(f"%{title}%"))
            if author:
                q = q.where(Book.author.ilike(f"%{author}%"))
            return session.execute(q).scalars().all()

    # ----------------- users -----------------

    def register_user(self, user_name, email, full_name, wallet_balance=0, role="user") -> User:
        if not user_name or not email or not full_name:
            raise ValidationError("user_name, email and full_name are required")
        if role not in ("user", "admin"):
            raise ValidationError("role must be 'user' or 'admin'")

        with session_scope(self.session_factory) as session:
            existing = session.execute(
                select(User.id).where((User.user_name == user_name) | (User.email == email))
            ).first()
            if existing:
                raise ValidationError("User name or email already registered")

            user = User(
                user_name=user_name,
                email=email,
                full_name=full_name,
                role=role,
                wallet_balance=_amount(wallet_balance, "wallet_balance"),
            )
            session.add(user)
            session.flush()
            logger.info("Registered user %s (%s)", user.id, user_name)
            return user

    def get_user(self, user_id) -> User:
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if not user:
                raise UserNotFound()
            return user
