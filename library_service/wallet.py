import logging
from decimal import Decimal

from sqlalchemy import select, update

from .errors import InsufficientFunds, UserNotFound, ValidationError
from .models import User

logger = logging.getLogger(__name__)


def debit_wallet(session, user: User, amount: Decimal) -> User:
    """
    Subtract `amount` from the user's wallet, only if the balance covers it.
    The balance check is part of the UPDATE itself.
    """
    amount = Decimal(amount)
    if amount < 0:
        raise ValidationError("Debit amount cannot be negative")

    result = session.execute(
        update(User)
        .where(User.id == user.id, User.wallet_balance >= amount)
        .values(wallet_balance=User.wallet_balance - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        balance = session.execute(
            select(User.wallet_balance).where(User.id == user.id)
        ).scalar_one_or_none()
        if balance is None:
            raise UserNotFound()
        logger.warning(
            "Debit rejected user=%s amount=%s balance=%s", user.id, amount, balance
        )
        raise InsufficientFunds(
            f"Insufficient wallet balance: {balance} available, {amount} required"
        )

    session.refresh(user)
    return user
