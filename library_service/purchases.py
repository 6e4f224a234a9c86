"""
Purchase engine.

A purchase is one database transaction: wallet debit, stock decrement and
the Transaction (plus InstallmentPlan for installment purchases) commit
together, or nothing does.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select

from .availability import reserve_copies
from .borrowing import round2
from .clock import SystemClock
from .db import session_scope
from .errors import (
    BookNotFound,
    InsufficientFunds,
    OutOfStock,
    TransactionNotFound,
    UserNotFound,
    ValidationError,
)
from .installments import DEFAULT_INTEREST_RATE, open_plan
from .models import Book, InstallmentPlan, Transaction, User
from .payments import FullPayment, InstallmentPayment, Payment, whole_number
from .wallet import debit_wallet

logger = logging.getLogger(__name__)


@dataclass
class PurchaseResult:
    transaction: Transaction
    book: Book
    user: User
    total_price: Decimal
    plan: Optional[InstallmentPlan] = None

    def to_dict(self):
        return {
            "transaction": self.transaction.to_dict(),
            "total_price": str(self.total_price),
            "installment_plan": self.plan.to_dict() if self.plan else None,
            "wallet_balance": self.user.to_dict()["wallet_balance"],
            "available_copies": self.book.available_copies,
        }


def _validate_quantity(quantity) -> int:
    quantity = whole_number(quantity, "Quantity")
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    return quantity


class PurchaseService:
    def __init__(self, session_factory, clock=None, interest_rate=DEFAULT_INTEREST_RATE):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.interest_rate = Decimal(interest_rate)

    def purchase(self, user_id, book_id, quantity=1, payment: Optional[Payment] = None) -> PurchaseResult:
        if not user_id or not book_id:
            raise ValidationError("All fields (userId, bookId, quantity) are required.")
        quantity = _validate_quantity(quantity)
        payment = payment or FullPayment()
        if not isinstance(payment, (FullPayment, InstallmentPayment)):
            raise ValidationError("Unsupported payment")

        now = self.clock.now()

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

            if book.available_copies < quantity:
                raise OutOfStock("Not enough copies available for purchase")

            total_price = round2(Decimal(book.price or 0) * quantity)
            plan = None

            if isinstance(payment, InstallmentPayment):
                plan, transaction = open_plan(
                    session,
                    user,
                    book,
                    total_price,
                    payment.months,
                    now,
                    interest_rate=self.interest_rate,
                    quantity=quantity,
                )
            else:
                if Decimal(user.wallet_balance) < total_price:
                    raise InsufficientFunds(
                        f"Insufficient wallet balance: {user.wallet_balance} available, "
                        f"{total_price} required"
                    )
                debit_wallet(session, user, total_price)
                transaction = Transaction(
                    user_id=user.id,
                    book_id=book.id,
                    quantity=quantity,
                    total_price=total_price,
                    transaction_date=now,
                    status="success",
                    payment_type="full",
                )
                session.add(transaction)

            reserve_copies(session, book, quantity)
            book.is_purchased = True
            book.purchased_date = now
            session.flush()

            logger.info(
                "Purchase %s user=%s book=%s quantity=%s type=%s charged=%s",
                transaction.id,
                user.id,
                book.id,
                quantity,
                payment.payment_type,
                transaction.total_price,
            )
            return PurchaseResult(
                transaction=transaction,
                book=book,
                user=user,
                total_price=total_price,
                plan=plan,
            )

    def get_transaction(self, transaction_id) -> Transaction:
        with session_scope(self.session_factory) as session:
            transaction = session.get(Transaction, transaction_id)
            if not transaction:
                raise TransactionNotFound()
            return transaction

    def list_transactions(self, user_id=None) -> List[Transaction]:
        with session_scope(self.session_factory) as session:
            q = select(Transaction).order_by(Transaction.id)
            if user_id is not None:
                q = q.where(Transaction.user_id == user_id)
            return session.execute(q).scalars().all()
