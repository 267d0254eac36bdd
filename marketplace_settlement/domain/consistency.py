"""
Order/payment status cross-table.

An order status is only meaningful next to certain payment statuses. The
coordinator checks the pair after every dependent order update and logs a
mismatch; aggregates never produce a pair outside this table on their own.
"""

from __future__ import annotations

from marketplace_settlement.domain.order import OrderStatus
from marketplace_settlement.domain.payment import PaymentStatus

_FULFILLMENT_PAYMENT = frozenset({PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED})

ALLOWED_PAYMENT_STATUSES: dict[OrderStatus, frozenset[PaymentStatus]] = {
    OrderStatus.PENDING: frozenset(
        {
            PaymentStatus.PENDING,
            PaymentStatus.PROCESSING,
            PaymentStatus.AUTHORIZED,
            PaymentStatus.CAPTURED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.EXPIRED,
        }
    ),
    OrderStatus.PAYMENT_FAILED: frozenset(
        {
            PaymentStatus.PENDING,
            PaymentStatus.PROCESSING,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.EXPIRED,
        }
    ),
    OrderStatus.PAYMENT_CONFIRMED: _FULFILLMENT_PAYMENT,
    OrderStatus.PROCESSING: _FULFILLMENT_PAYMENT,
    OrderStatus.READY: _FULFILLMENT_PAYMENT,
    OrderStatus.SHIPPED: _FULFILLMENT_PAYMENT,
    OrderStatus.OUT_FOR_DELIVERY: _FULFILLMENT_PAYMENT,
    OrderStatus.DELIVERED: _FULFILLMENT_PAYMENT,
    OrderStatus.COMPLETED: frozenset({PaymentStatus.COMPLETED}),
    OrderStatus.PARTIALLY_REFUNDED: frozenset({PaymentStatus.PARTIALLY_REFUNDED}),
    OrderStatus.REFUNDED: frozenset({PaymentStatus.REFUNDED}),
    OrderStatus.DISPUTED: frozenset({PaymentStatus.DISPUTED}),
    OrderStatus.CANCELLED: frozenset(PaymentStatus),
}


def is_consistent(order_status: OrderStatus | str, payment_status: PaymentStatus | str) -> bool:
    return PaymentStatus(payment_status) in ALLOWED_PAYMENT_STATUSES[OrderStatus(order_status)]
