# library_service/models.py
from decimal import Decimal

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)

from .clock import utcnow

Base = declarative_base()

# Money columns: two decimal places, Decimal on the Python side
Money = Numeric(12, 2)

BORROW_STATUSES = ("borrowed", "returned")
TRANSACTION_STATUSES = ("pending", "success", "failed")
PAYMENT_TYPES = ("full", "installment")
PLAN_STATUSES = ("active", "completed", "defaulted", "cancelled")
PLAN_MONTHS = (3, 6, 12)


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return str(Decimal(value if value is not None else 0).quantize(Decimal("0.01")))


class Category(Base):
    __tablename__ = "category"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)


class Book(Base):
    __tablename__ = "book"
    __table_args__ = (
        CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="ck_book_available_copies",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    publisher = Column(String(255))
    description = Column(Text)
    category_id = Column(Integer, ForeignKey("category.id"))
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    price = Column(Money, nullable=False, default=0)
    borrow_price = Column(Money, nullable=False, default=0)
    borrow_fine = Column(Money, nullable=False, default=0)
    is_purchased = Column(Boolean, nullable=False, default=False)
    purchased_date = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    category = relationship("Category")

    def to_dict(self):
        return {
            "id": self.id,
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "category_id": self.category_id,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "price": _money(self.price),
            "borrow_price": _money(self.borrow_price),
            "borrow_fine": _money(self.borrow_fine),
            "is_purchased": self.is_purchased,
            "purchased_date": _iso(self.purchased_date),
        }


class User(Base):
    __tablename__ = "user"
    __table_args__ = (
        CheckConstraint("wallet_balance >= 0", name="ck_user_wallet_balance"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_name = Column(String(100), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    role = Column(Enum("user", "admin", name="user_role"), nullable=False, default="user")
    wallet_balance = Column(Money, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    borrows = relationship("Borrow", back_populates="user")
    transactions = relationship("Transaction", back_populates="user")

    def to_dict(self):
        return {
            "id": self.id,
            "user_name": self.user_name,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "wallet_balance": _money(self.wallet_balance),
        }


class Borrow(Base):
    __tablename__ = "borrow"
    __table_args__ = (
        # one open borrow per (user, book)
        Index(
            "uq_borrow_open_user_book",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("status = 'borrowed'"),
            postgresql_where=text("status = 'borrowed'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    borrowed_date = Column(DateTime, nullable=False, default=utcnow)
    expected_return_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime)
    status = Column(
        Enum(*BORROW_STATUSES, name="borrow_status"),
        nullable=False,
        default="borrowed",
    )
    total_borrow_price = Column(Money, nullable=False, default=0)
    total_price = Column(Money, nullable=False, default=0)
    total_borrowed_fine = Column(Money, nullable=False, default=0)

    user = relationship("User", back_populates="borrows")
    book = relationship("Book")

    @property
    def total_price_paid(self):
        return Decimal(self.total_borrow_price or 0) + Decimal(self.total_borrowed_fine or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "borrowed_by": self.user_id,
            "borrowed_book": self.book_id,
            "borrowed_date": _iso(self.borrowed_date),
            "expected_return_date": _iso(self.expected_return_date),
            "return_date": _iso(self.return_date),
            "status": self.status,
            "total_borrow_price": _money(self.total_borrow_price),
            "total_price": _money(self.total_price),
            "total_borrowed_fine": _money(self.total_borrowed_fine),
            "total_price_paid": _money(self.total_price_paid),
        }


class InstallmentPlan(Base):
    __tablename__ = "installment_plan"
    __table_args__ = (
        # one active plan per (user, book)
        Index(
            "uq_plan_active_user_book",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        CheckConstraint(
            "paid_installments <= total_installments",
            name="ck_plan_paid_installments",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    plan_type = Column(Integer, nullable=False)  # months: 3, 6 or 12
    total_amount = Column(Money, nullable=False)
    amount_per_installment = Column(Money, nullable=False)
    paid_installments = Column(Integer, nullable=False, default=0)
    total_installments = Column(Integer, nullable=False)
    start_date = Column(DateTime, nullable=False, default=utcnow)
    next_payment_date = Column(DateTime, nullable=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    status = Column(
        Enum(*PLAN_STATUSES, name="plan_status"),
        nullable=False,
        default="active",
    )
    last_payment_status = Column(
        Enum(*TRANSACTION_STATUSES, name="plan_last_payment_status"),
        nullable=False,
        default="pending",
    )

    payment_history = relationship(
        "InstallmentPayment",
        back_populates="plan",
        order_by="InstallmentPayment.payment_number",
    )

    @property
    def outstanding_installments(self):
        return self.total_installments - self.paid_installments

    def to_dict(self, with_history=True):
        data = {
            "id": self.id,
            "user": self.user_id,
            "book": self.book_id,
            "plan_type": f"{self.plan_type}months",
            "total_amount": _money(self.total_amount),
            "amount_per_installment": _money(self.amount_per_installment),
            "paid_installments": self.paid_installments,
            "total_installments": self.total_installments,
            "outstanding_installments": self.outstanding_installments,
            "start_date": _iso(self.start_date),
            "next_payment_date": _iso(self.next_payment_date),
            "is_completed": self.is_completed,
            "status": self.status,
            "last_payment_status": self.last_payment_status,
        }
        if with_history:
            data["payment_history"] = [p.to_dict() for p in self.payment_history]
        return data


class InstallmentPayment(Base):
    """
    One row of a plan's payment history.
    """
    __tablename__ = "installment_payment"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(Integer, ForeignKey("installment_plan.id"), nullable=False)
    payment_number = Column(Integer, nullable=False)
    amount = Column(Money, nullable=False)
    date = Column(DateTime, nullable=False, default=utcnow)
    status = Column(
        Enum("success", "failed", name="installment_payment_status"),
        nullable=False,
        default="success",
    )

    plan = relationship("InstallmentPlan", back_populates="payment_history")

    def to_dict(self):
        return {
            "payment_number": self.payment_number,
            "amount": _money(self.amount),
            "date": _iso(self.date),
            "status": self.status,
        }


class Transaction(Base):
    __tablename__ = "transaction"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    total_price = Column(Money, nullable=False)
    transaction_date = Column(DateTime, nullable=False, default=utcnow)
    status = Column(
        Enum(*TRANSACTION_STATUSES, name="transaction_status"),
        nullable=False,
        default="success",
    )
    payment_type = Column(
        Enum(*PAYMENT_TYPES, name="payment_type"),
        nullable=False,
        default="full",
    )
    installment_plan_id = Column(Integer, ForeignKey("installment_plan.id"))
    payment_number = Column(Integer)

    user = relationship("User", back_populates="transactions")
    book = relationship("Book")

    def to_dict(self):
        return {
            "id": self.id,
            "user": self.user_id,
            "book": self.book_id,
            "quantity": self.quantity,
            "total_price": _money(self.total_price),
            "transaction_date": _iso(self.transaction_date),
            "status": self.status,
            "payment_type": self.payment_type,
            "installment_plan": self.installment_plan_id,
            "payment_number": self.payment_number,
        }
