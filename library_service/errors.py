"""
Error taxonomy shared by every ledger operation.

Each error carries the HTTP status the routing layer answers with, so the
caller can tell every failure apart without string matching.
"""


class LedgerError(Exception):
    status_code = 500

    def __init__(self, message=None):
        super().__init__(message or self.__doc__ or self.__class__.__name__)
        self.message = message or self.__doc__ or self.__class__.__name__

    @property
    def code(self):
        return self.__class__.__name__

    def to_dict(self):
        return {"error": self.message, "code": self.code}


# ----------------- validation -----------------

class ValidationError(LedgerError):
    """Invalid or missing input"""
    status_code = 400


class InvalidDate(ValidationError):
    """Invalid expected return date"""


# ----------------- not found -----------------

class NotFoundError(LedgerError):
    """Record not found"""
    status_code = 404


class UserNotFound(NotFoundError):
    """User not found"""


class BookNotFound(NotFoundError):
    """Book not found"""


class BorrowNotFound(NotFoundError):
    """Borrow record not found"""


class PlanNotFound(NotFoundError):
    """Installment plan not found"""


class TransactionNotFound(NotFoundError):
    """Transaction not found"""


# ----------------- business rules -----------------

class BusinessRuleViolation(LedgerError):
    status_code = 400


class OutOfStock(BusinessRuleViolation):
    """No available copies of the book"""
    status_code = 409


class InsufficientFunds(BusinessRuleViolation):
    """Insufficient wallet balance"""


class DuplicateBorrow(BusinessRuleViolation):
    """User already has this book borrowed"""
    status_code = 409


class DuplicateActivePlan(BusinessRuleViolation):
    """User already has an active installment plan for this book"""
    status_code = 409


class DuplicateIsbn(BusinessRuleViolation):
    """Book with this ISBN already exists"""
    status_code = 409


class AlreadyReturned(BusinessRuleViolation):
    """Book already returned"""


class AlreadyCompleted(BusinessRuleViolation):
    """Installment plan already completed"""


class PlanNotActive(BusinessRuleViolation):
    """Installment plan is not active"""


class BorrowLimitExceeded(BusinessRuleViolation):
    """Borrow limit reached"""


# ----------------- storage -----------------

class StorageError(LedgerError):
    """Storage failure, nothing was written"""
    status_code = 500
