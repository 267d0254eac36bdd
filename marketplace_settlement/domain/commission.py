"""Commission rate lookup: vendor rate beats category rate beats platform default."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Mapping, Protocol

from marketplace_settlement.domain.errors import ValidationError

if TYPE_CHECKING:
    from marketplace_settlement.config import Settings


class CommissionRateSource(Protocol):
    """Anything the settlement calculator can ask for a rate."""

    def rate_for(self, vendor_id: str, category: str | None = None) -> Decimal:
        ...


def _validate_rate(key: str, rate: Decimal | str | int) -> Decimal:
    value = Decimal(str(rate))
    if value < 0 or value > 100:
        raise ValidationError(f"Commission rate for {key} must be within 0-100, got {value}")
    return value


class CommissionResolver:
    """
    Read-only rate table.

    Rates are percentages of the vendor's gross item subtotal (tax and
    shipping are never commissioned).
    """

    def __init__(
        self,
        default_rate: Decimal | str | int = Decimal("10"),
        vendor_rates: Mapping[str, Decimal | str | int] | None = None,
        category_rates: Mapping[str, Decimal | str | int] | None = None,
    ):
        self.default_rate = _validate_rate("default", default_rate)
        self.vendor_rates = {k: _validate_rate(k, v) for k, v in (vendor_rates or {}).items()}
        self.category_rates = {k: _validate_rate(k, v) for k, v in (category_rates or {}).items()}

    @classmethod
    def from_settings(cls, settings: Settings) -> CommissionResolver:
        return cls(
            default_rate=settings.default_commission_rate,
            vendor_rates=settings.vendor_commission_rates,
            category_rates=settings.category_commission_rates,
        )

    def rate_for(self, vendor_id: str, category: str | None = None) -> Decimal:
        if vendor_id in self.vendor_rates:
            return self.vendor_rates[vendor_id]
        if category is not None and category in self.category_rates:
            return self.category_rates[category]
        return self.default_rate
