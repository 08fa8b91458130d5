"""
Money Module

Every balance, principal and interest figure in CryptoNest is a Money value:
a Decimal quantized half-up to the currency's minor unit on construction.
Floats never enter the ledger.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from typing import Union
import re

from .exceptions import ValidationError

getcontext().prec = 28

# Everything but digits, sign and decimal point ("$1,250.50" -> "1250.50")
_AMOUNT_NOISE = re.compile(r'[^\d.\-+]')


class Currency(Enum):
    """Supported settlement currencies and their minor-unit digits"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.precision)

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {code}")


@total_ordering
@dataclass(frozen=True, eq=False)
class Money:
    """Immutable amount in a single currency"""
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        value = self.amount if isinstance(self.amount, Decimal) else Decimal(str(self.amount))
        object.__setattr__(
            self, 'amount', value.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        )

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal(0), currency)

    def _same_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._same_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor: Union[Decimal, int]) -> 'Money':
        return Money(self.amount * Decimal(str(factor)), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        return (isinstance(other, Money)
                and self.currency == other.currency
                and self.amount == other.amount)

    def __lt__(self, other: 'Money') -> bool:
        self._same_currency(other, "compare")
        return self.amount < other.amount

    def __hash__(self) -> int:
        return hash((self.currency.code, self.amount))

    def is_zero(self) -> bool:
        return self.amount.is_zero()

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def to_string(self) -> str:
        """Display form, e.g. "USD 1,234.50" """
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def parse_amount(value: Union[str, int, Decimal], currency: Currency) -> Money:
    """
    Turn request or settings input into Money.

    Strings may carry a currency symbol and thousands separators. Anything
    empty, unparseable or non-finite raises ValidationError.
    """
    if isinstance(value, (Decimal, int)) and not isinstance(value, bool):
        number = Decimal(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = Decimal(_AMOUNT_NOISE.sub('', value.replace(',', '')))
        except InvalidOperation:
            raise ValidationError(f"Cannot convert '{value}' to an amount")
    else:
        raise ValidationError("Amount must be a non-empty string or number")

    if not number.is_finite():
        raise ValidationError(f"Amount must be finite, got '{value}'")
    return Money(number, currency)
