import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from .errors import ValidationError
from .models import PLAN_MONTHS

_INT_RE = re.compile(r"^-?\d+$")


@dataclass(frozen=True)
class FullPayment:
    payment_type = "full"


@dataclass(frozen=True)
class InstallmentPayment:
    months: int
    payment_type = "installment"

    def __post_init__(self):
        if type(self.months) is not int or self.months not in PLAN_MONTHS:
            raise ValidationError(
                f"Installment months must be one of {', '.join(map(str, PLAN_MONTHS))}"
            )


Payment = Union[FullPayment, InstallmentPayment]


def whole_number(value, name) -> int:
    """
    Ints, integral floats/Decimals and digit strings become an int.
    Anything else, bools and 2.5 included, is a ValidationError.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a whole number")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{name} must be a whole number")
        return int(value)
    if isinstance(value, Decimal):
        if not value.is_finite() or value != value.to_integral_value():
            raise ValidationError(f"{name} must be a whole number")
        return int(value)
    if isinstance(value, str) and _INT_RE.match(value.strip()):
        return int(value.strip())
    raise ValidationError(f"{name} must be a whole number")


def _parse_months(value) -> int:
    # "12months", "12" and 12 are all accepted
    if isinstance(value, str):
        value = value.strip().lower()
        if value.endswith("months"):
            value = value[: -len("months")]
    return whole_number(value, "installment_months")


def parse_payment(payment_type: Optional[str] = "full", installment_months=None) -> Payment:
    """Turn the raw request fields into a FullPayment or InstallmentPayment."""
    if payment_type is None:
        payment_type = "full"
    if not isinstance(payment_type, str):
        raise ValidationError("payment_type must be 'full' or 'installment'")
    payment_type = payment_type.strip().lower() or "full"

    if payment_type == "full":
        if installment_months not in (None, ""):
            raise ValidationError("installment_months is only valid for installment payments")
        return FullPayment()

    if payment_type == "installment":
        if installment_months in (None, ""):
            raise ValidationError("installment_months is required for installment payments")
        return InstallmentPayment(_parse_months(installment_months))

    raise ValidationError("payment_type must be 'full' or 'installment'")
