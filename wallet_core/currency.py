"""
Currency Support Module

Decimal helpers for the wallet's settlement currency. Balances, fees and
transfer amounts are Decimal values rounded to the currency precision.
NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Any

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency codes with precision and minor-unit info"""
    NGN = ("NGN", 2, "₦")  # Nigerian Naira, kobo minor unit

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol

    @property
    def minor_units(self) -> int:
        return 10 ** self.precision


DEFAULT_CURRENCY = Currency.NGN
ZERO = Decimal("0")


def round_amount(amount: Decimal, currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """Round to currency precision (half up)"""
    return amount.quantize(Decimal("0.1") ** currency.precision, rounding=ROUND_HALF_UP)


def to_amount(value: Any, currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """
    Coerce user or wire input into a rounded Decimal amount.

    Floats are routed through str() so 0.1 stays 0.1.

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError("Invalid amount format")
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError("Invalid amount format")
    if not amount.is_finite():
        raise ValidationError("Invalid amount format")
    return round_amount(amount, currency)


def from_minor_units(value: Any, currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """Convert a minor-unit integer (kobo) into a major-unit amount"""
    return round_amount(to_amount(value, currency) / currency.minor_units, currency)


def to_minor_units(amount: Decimal, currency: Currency = DEFAULT_CURRENCY) -> int:
    """Convert a major-unit amount into minor units for rail requests"""
    return int(round_amount(amount, currency) * currency.minor_units)


def format_amount(amount: Decimal, currency: Currency = DEFAULT_CURRENCY) -> str:
    """Format for display and log messages"""
    return f"{currency.symbol}{amount:,.{currency.precision}f}"
