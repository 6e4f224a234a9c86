"""
Installment plans.

A plan is opened by an installment purchase with the first installment
already paid. Each later payment debits the wallet by the fixed
installment amount, appends a history row and a Transaction, and moves the
next due date one calendar month on. The plan completes when the last
installment is in.

Wallet policy: every installment, the first one included, is charged to
the wallet when it is paid.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from .borrowing import round2
from .clock import SystemClock
from .db import session_scope
from .errors import (
    AlreadyCompleted,
    DuplicateActivePlan,
    PlanNotActive,
    PlanNotFound,
    UserNotFound,
)
from .models import Book, InstallmentPayment, InstallmentPlan, Transaction, User
from .wallet import debit_wallet

logger = logging.getLogger(__name__)

DEFAULT_INTEREST_RATE = Decimal("0.05")


def installment_terms(total_price, months: int, interest_rate=DEFAULT_INTEREST_RATE) -> Tuple[Decimal, Decimal]:
    """
    (total with interest, amount per installment), both rounded to cents.

    >>> installment_terms(1200, 12)
    (Decimal('1260.00'), Decimal('105.00'))
    """
    total = round2(Decimal(total_price) * (1 + Decimal(interest_rate)))
    return total, round2(total / months)


def open_plan(
    session,
    user: User,
    book: Book,
    total_price,
    months: int,
    now: datetime,
    interest_rate=DEFAULT_INTEREST_RATE,
    quantity: int = 1,
) -> Tuple[InstallmentPlan, Transaction]:
    """
    Create an active plan with its first installment paid, inside the
    caller's session. Returns the plan and the first installment's
    Transaction.
    """
    existing = session.execute(
        select(InstallmentPlan.id).where(
            InstallmentPlan.user_id == user.id,
            InstallmentPlan.book_id == book.id,
            InstallmentPlan.status == "active",
        )
    ).first()
    if existing:
        raise DuplicateActivePlan()

    total_amount, per_installment = installment_terms(total_price, months, interest_rate)

    debit_wallet(session, user, per_installment)

    plan = InstallmentPlan(
        user_id=user.id,
        book_id=book.id,
        plan_type=months,
        total_amount=total_amount,
        amount_per_installment=per_installment,
        paid_installments=1,
        total_installments=months,
        start_date=now,
        next_payment_date=now + relativedelta(months=1),
        is_completed=False,
        status="active",
        last_payment_status="success",
    )
    plan.payment_history.append(
        InstallmentPayment(payment_number=1, amount=per_installment, date=now, status="success")
    )
    session.add(plan)
    try:
        session.flush()
    except IntegrityError as e:
        raise DuplicateActivePlan() from e

    transaction = Transaction(
        user_id=user.id,
        book_id=book.id,
        quantity=quantity,
        total_price=per_installment,
        transaction_date=now,
        status="success",
        payment_type="installment",
        installment_plan_id=plan.id,
        payment_number=1,
    )
    session.add(transaction)

    logger.info(
        "Installment plan %s opened user=%s book=%s months=%s per_installment=%s",
        plan.id,
        user.id,
        book.id,
        months,
        per_installment,
    )
    return plan, transaction


class InstallmentService:
    def __init__(self, session_factory, clock=None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()

    def _load_plan(self, session, plan_id, lock=False, reload=False) -> InstallmentPlan:
        q = (
            select(InstallmentPlan)
            .where(InstallmentPlan.id == plan_id)
            .options(selectinload(InstallmentPlan.payment_history))
        )
        if lock:
            q = q.with_for_update()
        if reload:
            # overwrite what the session already holds for this plan
            q = q.execution_options(populate_existing=True)
        plan = session.execute(q).scalar_one_or_none()
        if not plan:
            raise PlanNotFound()
        return plan

    def pay_installment(self, plan_id) -> InstallmentPlan:
        now = self.clock.now()

        with session_scope(self.session_factory) as session:
            plan = self._load_plan(session, plan_id, lock=True)

            if plan.is_completed or plan.status == "completed":
                raise AlreadyCompleted()
            if plan.status != "active":
                raise PlanNotActive(f"Installment plan is {plan.status}")

            user = session.execute(
                select(User).where(User.id == plan.user_id)
            ).scalar_one_or_none()
            if not user:
                raise UserNotFound()

            seen = plan.paid_installments
            payment_number = seen + 1
            completed = payment_number >= plan.total_installments
            amount = plan.amount_per_installment

            debit_wallet(session, user, amount)

            # Advance only from the count we read, a concurrent payment loses.
            result = session.execute(
                update(InstallmentPlan)
                .where(
                    InstallmentPlan.id == plan.id,
                    InstallmentPlan.paid_installments == seen,
                    InstallmentPlan.status == "active",
                )
                .values(
                    paid_installments=payment_number,
                    next_payment_date=plan.next_payment_date + relativedelta(months=1),
                    last_payment_status="success",
                    is_completed=completed,
                    status="completed" if completed else "active",
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise AlreadyCompleted("Installment was already paid by another request")

            plan.payment_history.append(
                InstallmentPayment(
                    payment_number=payment_number,
                    amount=amount,
                    date=now,
                    status="success",
                )
            )
            session.add(
                Transaction(
                    user_id=plan.user_id,
                    book_id=plan.book_id,
                    quantity=1,
                    total_price=amount,
                    transaction_date=now,
                    status="success",
                    payment_type="installment",
                    installment_plan_id=plan.id,
                    payment_number=payment_number,
                )
            )
            session.flush()
            plan = self._load_plan(session, plan.id, reload=True)

            logger.info(
                "Installment %s/%s paid on plan %s amount=%s",
                payment_number,
                plan.total_installments,
                plan.id,
                amount,
            )
            if completed:
                logger.info("Installment plan %s completed", plan.id)
            return plan

    def cancel_plan(self, plan_id) -> InstallmentPlan:
        with session_scope(self.session_factory) as session:
            plan = self._load_plan(session, plan_id, lock=True)
            if plan.status == "completed":
                raise AlreadyCompleted()
            if plan.status != "active":
                raise PlanNotActive(f"Installment plan is {plan.status}")

            plan.status = "cancelled"
            session.flush()
            logger.info("Installment plan %s cancelled", plan.id)
            return plan

    def mark_defaulted(self, grace_days: int = 30) -> int:
        """Active plans more than `grace_days` past their due date become defaulted."""
        cutoff = self.clock.now() - timedelta(days=grace_days)
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(InstallmentPlan)
                .where(
                    InstallmentPlan.status == "active",
                    InstallmentPlan.next_payment_date < cutoff,
                )
                .values(status="defaulted", last_payment_status="failed")
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                logger.warning("Marked %s installment plans as defaulted", result.rowcount)
            return result.rowcount

    def get_plan(self, plan_id) -> InstallmentPlan:
        with session_scope(self.session_factory) as session:
            return self._load_plan(session, plan_id)

    def list_plans(self, user_id=None, status: Optional[str] = None) -> List[InstallmentPlan]:
        with session_scope(self.session_factory) as session:
            q = (
                select(InstallmentPlan)
                .options(selectinload(InstallmentPlan.payment_history))
                .order_by(InstallmentPlan.id)
            )
            if user_id is not None:
                q = q.where(InstallmentPlan.user_id == user_id)
            if status:
                q = q.where(InstallmentPlan.status == status)
            return session.execute(q).scalars().all()
