"""
Settlement Calculator - pure, deterministic pricing and commission split.

Given the same items, rates and adjustments this module always produces the
same Pricing, field for field. It is re-run on every change to an order's
items or order-level adjustments, not only at checkout.

Split rules:
1. Group items by vendor, in order of first appearance.
2. Vendor subtotal = sum(unit_price * quantity).
3. commission = round(subtotal * rate / 100, 2), payout = subtotal - commission.
4. Tax, shipping, insurance, handling and discounts are order-level and never
   commissioned.
5. Any residual between sum(payout + commission) and the order subtotal goes
   to the largest vendor's payout (first vendor on ties), so the split always
   partitions the subtotal exactly.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Mapping, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from marketplace_settlement.domain.commission import CommissionRateSource
from marketplace_settlement.domain.errors import InvalidAmount, ValidationError
from marketplace_settlement.domain.value_objects import Currency, Money, money_sum

RATE_PRECISION = Decimal("0.0001")


class SettlementLine(Protocol):
    """Shape of an order line as the calculator sees it."""

    vendor_id: str
    store_id: str | None
    category: str | None
    unit_price: Money
    quantity: int


class VendorAmount(BaseModel):
    """One vendor's share of an order subtotal."""

    model_config = ConfigDict(frozen=True)

    vendor_id: str
    store_id: str | None = None
    subtotal: Money
    commission_rate: Decimal
    commission: Money
    payout_amount: Money


class PriceAdjustments(BaseModel):
    """Order-level amounts applied outside the vendor split."""

    model_config = ConfigDict(frozen=True)

    discount: Decimal = Decimal("0")
    coupon_discount: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    insurance: Decimal = Decimal("0")
    handling: Decimal = Decimal("0")


class Pricing(BaseModel):
    model_config = ConfigDict(frozen=True)

    currency: Currency
    subtotal: Money
    discount: Money
    coupon_discount: Money
    tax: Money
    shipping: Money
    insurance: Money
    handling: Money
    total: Money
    vendor_amounts: list[VendorAmount] = Field(default_factory=list)

    @property
    def total_commission(self) -> Money:
        return money_sum([v.commission for v in self.vendor_amounts], self.currency)

    @property
    def total_payout(self) -> Money:
        return money_sum([v.payout_amount for v in self.vendor_amounts], self.currency)

    def vendor_amount(self, vendor_id: str) -> VendorAmount | None:
        for amount in self.vendor_amounts:
            if amount.vendor_id == vendor_id:
                return amount
        return None


def line_total(line: SettlementLine) -> Money:
    return line.unit_price * line.quantity


def _validate_lines(lines: Sequence[SettlementLine], currency: Currency) -> None:
    if not lines:
        raise ValidationError("An order needs at least one item")
    for line in lines:
        if line.quantity < 1:
            raise ValidationError(f"Quantity must be at least 1, got {line.quantity}")
        if line.unit_price.currency != currency:
            raise ValidationError(
                f"Item priced in {line.unit_price.currency.value}, order is {currency.value}"
            )
        if line.unit_price.amount < 0:
            raise InvalidAmount(f"Unit price cannot be negative, got {line.unit_price}")


def _group_by_vendor(lines: Iterable[SettlementLine]) -> dict[str, list[SettlementLine]]:
    groups: dict[str, list[SettlementLine]] = {}
    for line in lines:
        groups.setdefault(line.vendor_id, []).append(line)
    return groups


def _vendor_amount(
    vendor_id: str,
    lines: list[SettlementLine],
    resolver: CommissionRateSource,
    currency: Currency,
) -> VendorAmount:
    subtotal = money_sum([line_total(line) for line in lines], currency)
    rates = [resolver.rate_for(vendor_id, line.category) for line in lines]

    raw_commission = sum(
        (line_total(line).amount * rate for line, rate in zip(lines, rates)),
        Decimal("0"),
    ) / Decimal("100")
    commission = Money(amount=raw_commission, currency=currency)

    if len(set(rates)) == 1 or subtotal.is_zero:
        effective_rate = rates[0]
    else:
        # Mixed categories without a vendor rate: report the blended rate
        effective_rate = (raw_commission * 100 / subtotal.amount).quantize(RATE_PRECISION)

    return VendorAmount(
        vendor_id=vendor_id,
        store_id=lines[0].store_id,
        subtotal=subtotal,
        commission_rate=effective_rate,
        commission=commission,
        payout_amount=subtotal - commission,
    )


def reconcile_residual(amounts: list[VendorAmount], subtotal: Money) -> list[VendorAmount]:
    """Push any rounding residual onto the largest vendor's payout."""
    if not amounts:
        return amounts
    allocated = money_sum([a.payout_amount + a.commission for a in amounts], subtotal.currency)
    residual = subtotal - allocated
    if residual.is_zero:
        return amounts

    largest = 0
    for index, amount in enumerate(amounts):
        if amount.subtotal > amounts[largest].subtotal:
            largest = index

    adjusted = list(amounts)
    target = adjusted[largest]
    adjusted[largest] = target.model_copy(
        update={"payout_amount": target.payout_amount + residual}
    )
    return adjusted


def vendor_breakdown(
    lines: Sequence[SettlementLine],
    resolver: CommissionRateSource,
    currency: Currency,
) -> list[VendorAmount]:
    _validate_lines(lines, currency)
    amounts = [
        _vendor_amount(vendor_id, vendor_lines, resolver, currency)
        for vendor_id, vendor_lines in _group_by_vendor(lines).items()
    ]
    subtotal = money_sum([line_total(line) for line in lines], currency)
    return reconcile_residual(amounts, subtotal)


def calculate_pricing(
    lines: Sequence[SettlementLine],
    resolver: CommissionRateSource,
    currency: Currency,
    adjustments: PriceAdjustments | None = None,
) -> Pricing:
    """
    Compute order pricing and the vendor split.

    total = subtotal - discount - coupon_discount + tax + shipping + insurance + handling
    """
    adjustments = adjustments or PriceAdjustments()
    for name, value in adjustments.model_dump().items():
        if value < 0:
            raise InvalidAmount(f"{name} cannot be negative, got {value}")

    vendor_amounts = vendor_breakdown(lines, resolver, currency)
    subtotal = money_sum([line_total(line) for line in lines], currency)

    def as_money(value: Decimal) -> Money:
        return Money(amount=value, currency=currency)

    discount = as_money(adjustments.discount)
    coupon_discount = as_money(adjustments.coupon_discount)
    tax = as_money(adjustments.tax)
    shipping = as_money(adjustments.shipping)
    insurance = as_money(adjustments.insurance)
    handling = as_money(adjustments.handling)

    total = subtotal - discount - coupon_discount + tax + shipping + insurance + handling
    if total.amount < 0:
        raise InvalidAmount(f"Discounts exceed the order value (total would be {total})")

    return Pricing(
        currency=currency,
        subtotal=subtotal,
        discount=discount,
        coupon_discount=coupon_discount,
        tax=tax,
        shipping=shipping,
        insurance=insurance,
        handling=handling,
        total=total,
        vendor_amounts=vendor_amounts,
    )


def return_refund_amount(
    items: Mapping[str, SettlementLine],
    quantities: Mapping[str, int],
    currency: Currency,
) -> Money:
    """Refund owed for returned lines: unit price at purchase times returned quantity."""
    total = Money.zero(currency)
    for item_id, quantity in quantities.items():
        total = total + items[item_id].unit_price * quantity
    return total
