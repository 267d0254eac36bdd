"""
Value Objects - Immutable Domain Concepts

Value objects have no identity: two value objects are equal if their values
are equal.

CRITICAL: Every monetary amount in the settlement core is a Money. Floats
never touch commission or refund math, because a 1-cent drift between
payouts and commissions is exactly the kind of bug finance finds months
later.
"""

from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator

CENT = Decimal("0.01")


class Currency(str, Enum):
    """ISO 4217 currency codes."""

    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    CAD = "CAD"
    AUD = "AUD"
    INR = "INR"


def quantize(value: Decimal) -> Decimal:
    """Round to the currency minor unit (half-up)."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class Money(BaseModel):
    """
    Money value object with currency.

    Amounts are always quantized to 2 decimal places with ROUND_HALF_UP.
    Arithmetic between different currencies is refused.
    """

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: Currency = Currency.USD

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        """Ensure proper decimal precision for currency."""
        if not v.is_finite():
            raise ValueError(f"Money amount must be finite, got {v}")
        return quantize(v)

    @classmethod
    def zero(cls, currency: Currency = Currency.USD) -> Money:
        return cls(amount=Decimal("0"), currency=currency)

    @classmethod
    def of(cls, amount: Decimal | int | str, currency: Currency | str = Currency.USD) -> Money:
        """Build from a literal; strings avoid float rounding surprises."""
        return cls(amount=Decimal(str(amount)), currency=Currency(currency))

    @classmethod
    def from_cents(cls, cents: int, currency: Currency | str = Currency.USD) -> Money:
        return cls(amount=Decimal(cents) / 100, currency=Currency(currency))

    @property
    def cents(self) -> int:
        """Amount in the minor unit, as gateways expect it."""
        return int(self.amount * 100)

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    @property
    def is_positive(self) -> bool:
        return self.amount > 0

    def _check_currency(self, other: Money, verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.value} and {other.currency.value}")

    def __add__(self, other: Money) -> Money:
        """Add money (only same currency)."""
        self._check_currency(other, "add")
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        """Subtract money (only same currency)."""
        self._check_currency(other, "subtract")
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __mul__(self, multiplier: Decimal | int) -> Money:
        """Multiply by a scalar, e.g. unit price by quantity."""
        return Money(amount=self.amount * Decimal(str(multiplier)), currency=self.currency)

    def apply_percentage(self, percentage: Decimal) -> Money:
        """
        Apply percentage (e.g. commission).

        Example: Money(100, USD).apply_percentage(Decimal("15")) = Money(15.00, USD)
        """
        return Money(amount=self.amount * (percentage / Decimal("100")), currency=self.currency)

    def __eq__(self, other: object) -> bool:
        """Value equality."""
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: Money) -> bool:
        """Compare money (same currency only)."""
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: Money) -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: Money) -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.value}"

    def __repr__(self) -> str:
        return f"Money({self.amount}, {self.currency.value})"


def money_sum(values: list[Money], currency: Currency) -> Money:
    """Sum a possibly empty list of Money in one currency."""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


def generate_reference(prefix: str) -> str:
    """
    Human-readable, roughly time-ordered identifier.

    Format: {PREFIX}-{epoch millis}-{6 uppercase alphanumerics}
    Example: ORD-1697385600000-K3F7QZ
    """
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def utcnow() -> datetime:
    """CRITICAL: Always timezone-aware UTC."""
    return datetime.now(timezone.utc)
