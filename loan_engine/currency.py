"""
Money Module

Immutable money values with proper Decimal precision for loan calculations.
The currency is an opaque ISO 4217 tag: amounts in different currencies
never mix, and no conversion is performed. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Iterable, Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

# Minor units per currency; anything not listed uses two decimal places
CURRENCY_PRECISION = {
    "BIF": 0,
    "JPY": 0,
    "KRW": 0,
    "RWF": 0,
    "UGX": 0,
    "XAF": 0,
    "XOF": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
}
DEFAULT_PRECISION = 2


def currency_precision(currency: str) -> int:
    """Number of decimal places used for a currency code"""
    return CURRENCY_PRECISION.get(currency.upper(), DEFAULT_PRECISION)


def quantize_amount(value: Decimal, currency: str) -> Decimal:
    """
    Round a decimal to the currency's minor unit (ROUND_HALF_UP)

    Args:
        value: Decimal to round
        currency: Currency code defining precision

    Returns:
        Properly rounded Decimal
    """
    return value.quantize(
        Decimal('0.1') ** currency_precision(currency),
        rounding=ROUND_HALF_UP
    )


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: str

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        object.__setattr__(self, 'currency', self.currency.upper())
        object.__setattr__(self, 'amount', quantize_amount(self.amount, self.currency))

    @classmethod
    def zero(cls, currency: str) -> 'Money':
        return cls(Decimal('0'), currency)

    @property
    def precision(self) -> int:
        return currency_precision(self.currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency} and {other.currency}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __truediv__(self, divisor: Decimal) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = Decimal(str(divisor))
        return Money(self.amount / divisor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency} {self.amount:,.{self.precision}f}"

    def __str__(self) -> str:
        return self.to_string()


def sum_money(values: Iterable[Money], currency: str) -> Money:
    """Sum Money values, starting from zero in the given currency"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


def min_money(first: Money, second: Money) -> Money:
    return first if first <= second else second


def max_money(first: Money, second: Money) -> Money:
    return first if first >= second else second


def decimal_from_string(value: Union[str, int, Decimal]) -> Decimal:
    """
    Safely convert user input to Decimal, handling common formats

    Args:
        value: String representation of number (thousands separators allowed)

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if not isinstance(value, str):
        raise ValueError(f"Cannot convert {type(value).__name__} to Decimal; pass a string")

    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation as exc:
        raise ValueError(f"Cannot convert '{value}' to Decimal") from exc
