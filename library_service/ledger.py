from decimal import Decimal

from .borrowing import BorrowService
from .catalog import CatalogService
from .clock import SystemClock
from .earnings import EarningsService
from .installments import InstallmentService
from .payments import parse_payment
from .purchases import PurchaseService


class Ledger:
    """
    The services behind the HTTP layer, sharing one session factory and
    one clock.
    """

    def __init__(self, session_factory, clock=None, interest_rate="0.05", max_active_borrows=5):
        self.clock = clock or SystemClock()
        self.catalog = CatalogService(session_factory)
        self.borrows = BorrowService(session_factory, self.clock, max_active_borrows=max_active_borrows)
        self.purchases = PurchaseService(session_factory, self.clock, interest_rate=Decimal(str(interest_rate)))
        self.installments = InstallmentService(session_factory, self.clock)
        self.earnings = EarningsService(session_factory, self.clock)

    def borrow(self, user_id, book_id, expected_return_date):
        return self.borrows.borrow(user_id, book_id, expected_return_date)

    def return_book(self, borrow_id):
        return self.borrows.return_book(borrow_id)

    def purchase(self, user_id, book_id, quantity=1, payment_type="full", installment_months=None):
        payment = parse_payment(payment_type, installment_months)
        return self.purchases.purchase(user_id, book_id, quantity, payment)

    def pay_installment(self, plan_id):
        return self.installments.pay_installment(plan_id)

    def get_earnings(self, timeframe="month"):
        return self.earnings.get_earnings(timeframe)
