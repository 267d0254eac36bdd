"""
Order Aggregate - one buyer, many vendors, one payment.

State machine:

    pending ──→ payment_confirmed → processing → ready → shipped → out_for_delivery
       │  ↑            │                │                  ↺ (re-entry keeps tracking)
       ↓  │            └──── cancelled ←┘
    payment_failed                         delivered (derived) → completed (if paid)

    side branches: cancelled, refunded, partially_refunded, disputed

Rules worth knowing before touching this file:
- ``delivered`` is never set directly. It is derived the moment every
  non-cancelled item is delivered, and ``completed`` follows immediately,
  but only when the payment is ``completed``.
- Cancellation is allowed while no vendor sub-order has moved past
  ``confirmed``. A completed payment gets a full refund as a dependent
  side effect; the order stays ``cancelled`` (the reason wins over the
  amount) and the refund is recorded on the payment summary only.
- ``partially_refunded`` does not stop fulfillment: transitions are checked
  against ``fulfillment_stage``, the last fulfillment status reached.
- The order never reads or writes the Payment aggregate. It only sees the
  PaymentSummary the coordinator hands it.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, ClassVar, Sequence

from pydantic import BaseModel, Field

from marketplace_settlement.domain.aggregate import AggregateRoot, StatusEntry
from marketplace_settlement.domain.commission import CommissionRateSource
from marketplace_settlement.domain.effects import (
    InventoryAdjustment,
    Notification,
    PaymentCancellation,
    RefundRequest,
    SideEffect,
)
from marketplace_settlement.domain.errors import (
    CorruptAggregateError,
    IllegalTransition,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from marketplace_settlement.domain.events import OrderAmended, OrderPlaced, OrderStatusChanged
from marketplace_settlement.domain.payment import PaymentStatus, PaymentSummary, RefundReason
from marketplace_settlement.domain.settlement import (
    PriceAdjustments,
    Pricing,
    calculate_pricing,
    line_total,
    return_refund_amount,
)
from marketplace_settlement.domain.value_objects import (
    Currency,
    Money,
    generate_reference,
    money_sum,
    utcnow,
)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PROCESSING = "processing"
    READY = "ready"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    DISPUTED = "disputed"


class ItemStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class SubOrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    READY = "ready"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ReturnStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    RECEIVED = "received"
    REFUNDED = "refunded"


class ReturnReason(str, Enum):
    DEFECTIVE = "defective"
    WRONG_ITEM = "wrong_item"
    NOT_AS_DESCRIBED = "not_as_described"
    CHANGED_MIND = "changed_mind"
    DUPLICATE = "duplicate"
    OTHER = "other"


AWAITING_PAYMENT = frozenset({OrderStatus.PENDING, OrderStatus.PAYMENT_FAILED})
CANCELLABLE = AWAITING_PAYMENT | {OrderStatus.PAYMENT_CONFIRMED, OrderStatus.PROCESSING}
TERMINAL = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED})
FULFILLMENT = frozenset(
    {
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.READY,
        OrderStatus.SHIPPED,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.COMPLETED,
    }
)
IN_TRANSIT = frozenset(
    {OrderStatus.PROCESSING, OrderStatus.READY, OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY}
)

# Order-level moves a vendor/admin may request. Everything else is derived
# or owned by the payment side.
MANUAL_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PAYMENT_CONFIRMED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.READY}),
    OrderStatus.READY: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY}),
}

SUB_ORDER_TRANSITIONS: dict[SubOrderStatus, frozenset[SubOrderStatus]] = {
    SubOrderStatus.CONFIRMED: frozenset({SubOrderStatus.PROCESSING}),
    SubOrderStatus.PROCESSING: frozenset({SubOrderStatus.READY}),
    SubOrderStatus.READY: frozenset({SubOrderStatus.SHIPPED}),
    SubOrderStatus.SHIPPED: frozenset({SubOrderStatus.SHIPPED, SubOrderStatus.DELIVERED}),
}

ITEM_STATUS_FOR_SUB_ORDER = {
    SubOrderStatus.PROCESSING: ItemStatus.PREPARING,
    SubOrderStatus.READY: ItemStatus.READY,
    SubOrderStatus.SHIPPED: ItemStatus.SHIPPED,
    SubOrderStatus.DELIVERED: ItemStatus.DELIVERED,
}

DELIVERY_DAYS = {"standard": 5, "express": 2, "overnight": 1, "pickup": 0}


class CartLine(BaseModel):
    """One line of the cart snapshot taken at checkout."""

    product_id: str
    vendor_id: str
    store_id: str | None = None
    category: str | None = None
    name: str = ""
    unit_price: Money
    quantity: int = Field(ge=1)


class OrderItem(BaseModel):
    id: str
    product_id: str
    vendor_id: str
    store_id: str | None = None
    category: str | None = None
    name: str = ""
    unit_price: Money
    quantity: int = Field(ge=1)
    status: ItemStatus = ItemStatus.PENDING
    returned_quantity: int = 0
    delivered_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status not in (ItemStatus.CANCELLED, ItemStatus.REFUNDED)


class VendorSubOrder(BaseModel):
    vendor_id: str
    store_id: str | None = None
    status: SubOrderStatus = SubOrderStatus.PENDING
    item_ids: list[str]
    subtotal: Money
    tracking_number: str | None = None
    carrier: str | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None


class ShippingInfo(BaseModel):
    method: str = "standard"
    address: dict[str, Any] = Field(default_factory=dict)
    tracking_number: str | None = None
    carrier: str | None = None


class ReturnLine(BaseModel):
    item_id: str
    quantity: int = Field(ge=1)


class ReturnRequest(BaseModel):
    id: str
    lines: list[ReturnLine]
    reason: ReturnReason
    status: ReturnStatus = ReturnStatus.REQUESTED
    note: str | None = None
    refund_amount: Money
    refund_id: str | None = None
    requested_by: str
    requested_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None


class OrderAggregate(AggregateRoot):
    """Order aggregate root."""

    aggregate_type: ClassVar[str] = "order"
    amended_event: ClassVar[type] = OrderAmended

    order_number: str
    buyer_id: str
    currency: Currency
    items: dict[str, OrderItem]
    vendor_sub_orders: dict[str, VendorSubOrder]
    pricing: Pricing
    status: OrderStatus = OrderStatus.PENDING
    status_history: list[StatusEntry] = Field(default_factory=list)
    payment: PaymentSummary
    returns: dict[str, ReturnRequest] = Field(default_factory=dict)
    shipping: ShippingInfo = Field(default_factory=ShippingInfo)

    fulfillment_stage: OrderStatus | None = None
    status_before_dispute: OrderStatus | None = None
    needs_review: bool = False
    cancellation_reason: str | None = None
    cancellation_refund_id: str | None = None

    confirmed_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    deleted_at: datetime | None = None

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    @classmethod
    def place(
        cls,
        buyer_id: str,
        lines: Sequence[CartLine],
        resolver: CommissionRateSource,
        payment_id: str,
        payment_method: str,
        actor: str,
        currency: Currency = Currency.USD,
        adjustments: PriceAdjustments | None = None,
        shipping: ShippingInfo | None = None,
        order_id: str | None = None,
    ) -> tuple[OrderAggregate, list[SideEffect]]:
        """
        Factory: build an order from a cart snapshot.

        Prices are frozen at purchase time. Stock is reserved per line.
        """
        if not buyer_id:
            raise ValidationError("Order requires a buyer")

        order_id = order_id or generate_reference("OID")
        items = {
            f"item-{index}": OrderItem(id=f"item-{index}", **line.model_dump())
            for index, line in enumerate(lines, start=1)
        }
        pricing = calculate_pricing(list(items.values()), resolver, currency, adjustments)

        sub_orders: dict[str, VendorSubOrder] = {}
        for amount in pricing.vendor_amounts:
            sub_orders[amount.vendor_id] = VendorSubOrder(
                vendor_id=amount.vendor_id,
                store_id=amount.store_id,
                item_ids=[i.id for i in items.values() if i.vendor_id == amount.vendor_id],
                subtotal=amount.subtotal,
            )

        order = cls(
            id=order_id,
            order_number=generate_reference("ORD"),
            buyer_id=buyer_id,
            currency=currency,
            items=items,
            vendor_sub_orders=sub_orders,
            pricing=pricing,
            payment=PaymentSummary(
                payment_id=payment_id,
                method=payment_method,
                status=PaymentStatus.PENDING,
                amount=pricing.total,
                refundable_amount=pricing.total,
                refunded_amount=Money.zero(currency),
            ),
            shipping=shipping or ShippingInfo(),
        )
        order.status_history.append(
            StatusEntry(status=OrderStatus.PENDING.value, actor=actor, note="Order placed")
        )
        order._record(
            OrderPlaced,
            actor=actor,
            order_number=order.order_number,
            buyer_id=buyer_id,
            total=str(pricing.total.amount),
            currency=currency.value,
            vendor_ids=list(sub_orders),
        )

        effects: list[SideEffect] = [
            InventoryAdjustment(
                action="reserve", product_id=item.product_id, quantity=item.quantity, order_id=order_id
            )
            for item in items.values()
        ]
        effects.append(
            Notification(
                recipient=buyer_id,
                template="order_placed",
                data={"order_number": order.order_number, "total": str(pricing.total)},
            )
        )
        return order, effects

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def stage(self) -> OrderStatus:
        """Status used for fulfillment checks; looks through partially_refunded."""
        if self.status == OrderStatus.PARTIALLY_REFUNDED and self.fulfillment_stage:
            return self.fulfillment_stage
        return self.status

    @property
    def active_items(self) -> list[OrderItem]:
        return [item for item in self.items.values() if item.is_active]

    def get_item(self, item_id: str) -> OrderItem:
        if item_id not in self.items:
            raise NotFoundError("item", item_id)
        return self.items[item_id]

    def get_return(self, return_id: str) -> ReturnRequest:
        if return_id not in self.returns:
            raise NotFoundError("return", return_id)
        return self.returns[return_id]

    def _sub_orders_started(self) -> list[str]:
        idle = (SubOrderStatus.PENDING, SubOrderStatus.CONFIRMED, SubOrderStatus.CANCELLED)
        return [v for v, sub in self.vendor_sub_orders.items() if sub.status not in idle]

    def can_be_cancelled(self) -> bool:
        return self.status in CANCELLABLE and not self._sub_orders_started()

    def can_be_returned(self, window_days: int, now: datetime | None = None) -> bool:
        if self.stage not in (OrderStatus.DELIVERED, OrderStatus.COMPLETED):
            return False
        if self.delivered_at is None:
            return False
        return (now or utcnow()) - self.delivered_at <= timedelta(days=window_days)

    def estimated_delivery(self) -> datetime:
        days = DELIVERY_DAYS.get(self.shipping.method, DELIVERY_DAYS["standard"])
        start = self.shipped_at or self.confirmed_at or self.created_at
        return start + timedelta(days=days)

    def vendor_view(self, vendor_id: str) -> dict[str, Any]:
        """What a single vendor is allowed to see of this order."""
        if vendor_id not in self.vendor_sub_orders:
            raise NotFoundError("vendor_sub_order", f"{self.id}:{vendor_id}")
        sub = self.vendor_sub_orders[vendor_id]
        amount = self.pricing.vendor_amount(vendor_id)
        return {
            "order_number": self.order_number,
            "order_status": self.status.value,
            "sub_order": sub.model_dump(mode="json"),
            "items": [self.items[i].model_dump(mode="json") for i in sub.item_ids],
            "settlement": amount.model_dump(mode="json") if amount else None,
            "shipping_method": self.shipping.method,
        }

    def verify_integrity(self) -> None:
        """Raise if the stored document already breaks an invariant."""
        items_total = money_sum([line_total(i) for i in self.items.values()], self.currency)
        if items_total != self.pricing.subtotal:
            raise CorruptAggregateError(
                "order", self.id, f"items total {items_total} != subtotal {self.pricing.subtotal}"
            )
        split = self.pricing.total_payout + self.pricing.total_commission
        if split != self.pricing.subtotal:
            raise CorruptAggregateError(
                "order", self.id, f"payouts + commissions {split} != subtotal {self.pricing.subtotal}"
            )
        if self.status == OrderStatus.COMPLETED and self.payment.status != PaymentStatus.COMPLETED:
            raise CorruptAggregateError(
                "order", self.id, f"completed while payment is {self.payment.status.value}"
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, target: OrderStatus, actor: str, note: str | None = None) -> None:
        previous = self.status
        now = utcnow()
        self.status = target
        if target in FULFILLMENT:
            self.fulfillment_stage = target
        timestamp_field = {
            OrderStatus.PAYMENT_CONFIRMED: "confirmed_at",
            OrderStatus.DELIVERED: "delivered_at",
            OrderStatus.COMPLETED: "completed_at",
            OrderStatus.CANCELLED: "cancelled_at",
        }.get(target)
        if timestamp_field:
            setattr(self, timestamp_field, now)
        self.status_history.append(StatusEntry(status=target.value, actor=actor, note=note, timestamp=now))
        self._record(
            OrderStatusChanged,
            actor=actor,
            from_status=previous.value,
            to_status=target.value,
            note=note,
        )

    def _amend(self, change: str, actor: str | None = None, **details: Any) -> None:
        self._record(OrderAmended, actor=actor, change=change, details=details)

    def _sync_payment(self, payment: PaymentSummary, actor: str | None = None) -> None:
        if payment.payment_id != self.payment.payment_id:
            raise InvariantViolation(
                f"Payment {payment.payment_id} does not belong to order {self.id}", order_id=self.id
            )
        if payment != self.payment:
            self.payment = payment
            self._amend("payment_synced", actor, payment_status=payment.status.value)

    def _vendor_notifications(self, template: str) -> list[SideEffect]:
        return [
            Notification(
                recipient=f"vendor:{vendor_id}",
                template=template,
                data={"order_number": self.order_number, "vendor_id": vendor_id},
            )
            for vendor_id, sub in self.vendor_sub_orders.items()
            if sub.status != SubOrderStatus.CANCELLED
        ]

    def _buyer_notification(self, template: str, **data: Any) -> Notification:
        return Notification(
            recipient=self.buyer_id,
            template=template,
            data={"order_number": self.order_number, **data},
        )

    # ------------------------------------------------------------------
    # Payment-driven transitions
    # ------------------------------------------------------------------

    def confirm_payment(self, payment: PaymentSummary, actor: str) -> list[SideEffect]:
        """pending|payment_failed → payment_confirmed. Requires collected funds."""
        if self.status not in AWAITING_PAYMENT:
            raise IllegalTransition("order", self.id, self.status.value, OrderStatus.PAYMENT_CONFIRMED.value)
        if payment.status not in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED):
            raise InvariantViolation(
                f"Order {self.id} cannot be confirmed while payment is {payment.status.value}",
                order_id=self.id,
            )
        self._sync_payment(payment, actor)

        for item_id, item in self.items.items():
            if item.status == ItemStatus.PENDING:
                self.items[item_id] = item.model_copy(update={"status": ItemStatus.CONFIRMED})
        for vendor_id, sub in self.vendor_sub_orders.items():
            if sub.status == SubOrderStatus.PENDING:
                self.vendor_sub_orders[vendor_id] = sub.model_copy(update={"status": SubOrderStatus.CONFIRMED})
        self._transition(OrderStatus.PAYMENT_CONFIRMED, actor, "Payment confirmed")

        effects: list[SideEffect] = [
            InventoryAdjustment(
                action="decrement", product_id=item.product_id, quantity=item.quantity, order_id=self.id
            )
            for item in self.active_items
        ]
        effects.append(self._buyer_notification("order_confirmed"))
        effects.extend(self._vendor_notifications("new_order"))
        return effects

    def mark_payment_failed(self, payment: PaymentSummary, actor: str, reason: str | None = None) -> list[SideEffect]:
        if self.status != OrderStatus.PENDING:
            raise IllegalTransition("order", self.id, self.status.value, OrderStatus.PAYMENT_FAILED.value)
        self._sync_payment(payment, actor)
        self._transition(OrderStatus.PAYMENT_FAILED, actor, reason or "Payment failed")
        return []

    def apply_refund(self, payment: PaymentSummary, actor: str, note: str | None = None) -> list[SideEffect]:
        """
        Derive refunded/partially_refunded from the refunded ratio.

        cancelled, disputed and refunded orders keep their status; the refund
        only shows up on the payment summary.
        """
        self._sync_payment(payment, actor)
        if self.status in (OrderStatus.CANCELLED, OrderStatus.DISPUTED, OrderStatus.REFUNDED):
            return []

        if payment.status == PaymentStatus.REFUNDED or payment.fully_refunded:
            target = OrderStatus.REFUNDED
        elif payment.refunded_amount.is_positive:
            target = OrderStatus.PARTIALLY_REFUNDED
        else:
            return []
        if self.status == target:
            return []
        self._transition(target, actor, note or f"Refunded {payment.refunded_amount} of {payment.refundable_amount}")
        return []

    def flag_dispute(self, payment: PaymentSummary, actor: str, note: str | None = None) -> list[SideEffect]:
        """Freeze the order while the payment is disputed and ask for manual review."""
        self._sync_payment(payment, actor)
        if not self.needs_review:
            self.needs_review = True
            self._amend("flagged_for_review", actor, reason="payment_disputed")
        if self.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.DISPUTED):
            return []
        self.status_before_dispute = self.status
        self._transition(OrderStatus.DISPUTED, actor, note or "Payment disputed")
        return []

    def resolve_dispute(self, payment: PaymentSummary, actor: str, note: str | None = None) -> list[SideEffect]:
        """Leave ``disputed`` once the payment is no longer disputed."""
        self._sync_payment(payment, actor)
        if payment.status == PaymentStatus.DISPUTED:
            return []
        if self.needs_review:
            self.needs_review = False
            self._amend("review_cleared", actor)
        if self.status != OrderStatus.DISPUTED:
            return []

        if payment.status == PaymentStatus.REFUNDED:
            target = OrderStatus.REFUNDED
        else:
            target = self.status_before_dispute or OrderStatus.PAYMENT_CONFIRMED
            if target == OrderStatus.COMPLETED and payment.status != PaymentStatus.COMPLETED:
                target = OrderStatus.PARTIALLY_REFUNDED
        self.status_before_dispute = None
        self._transition(target, actor, note or "Dispute resolved")
        return []

    def reconcile_payment(self, payment: PaymentSummary, actor: str, note: str | None = None) -> list[SideEffect]:
        """
        Bring the order in line with its payment.

        This is the dependent half of every payment write. It is safe to run
        any number of times: once the order matches, it records nothing.
        """
        previous = self.payment

        if payment.status == PaymentStatus.DISPUTED:
            return self.flag_dispute(payment, actor, note)
        if self.status == OrderStatus.DISPUTED or self.needs_review:
            return self.resolve_dispute(payment, actor, note)

        effects: list[SideEffect] = []
        if self.status in AWAITING_PAYMENT:
            if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED):
                effects += self.confirm_payment(payment, actor)
            elif payment.status == PaymentStatus.FAILED and self.status == OrderStatus.PENDING:
                effects += self.mark_payment_failed(payment, actor, note)
            elif payment.status in (PaymentStatus.CANCELLED, PaymentStatus.EXPIRED, PaymentStatus.REFUNDED):
                effects += self.cancel(f"Payment {payment.status.value}", actor, payment)

        if self.status == OrderStatus.CANCELLED and self.cancellation_refund_id is None:
            effects += self._cancellation_refund(payment, actor)

        if payment.refunded_amount != previous.refunded_amount or payment.status != previous.status:
            if payment.status in (PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED):
                effects += self.apply_refund(payment, actor, note)

        self._sync_payment(payment, actor)
        return effects

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------

    def update_status(
        self,
        target: OrderStatus | str,
        actor: str,
        note: str | None = None,
        tracking_number: str | None = None,
        carrier: str | None = None,
    ) -> list[SideEffect]:
        """Vendor/admin requested order-level move (processing, ready, shipped, out_for_delivery, cancelled)."""
        try:
            target = OrderStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown order status {target!r}") from None

        if target == OrderStatus.CANCELLED:
            return self.cancel(note or "Cancelled", actor)
        if self.status in (OrderStatus.DISPUTED, *TERMINAL):
            raise IllegalTransition("order", self.id, self.status.value, target.value)
        if target not in MANUAL_TRANSITIONS.get(self.stage, frozenset()):
            raise IllegalTransition("order", self.id, self.stage.value, target.value)

        effects: list[SideEffect] = []
        if target == OrderStatus.READY:
            self._advance_sub_orders(SubOrderStatus.READY, from_statuses=(SubOrderStatus.CONFIRMED, SubOrderStatus.PROCESSING))
        elif target == OrderStatus.SHIPPED:
            self._ship(tracking_number, carrier)
            effects.append(
                self._buyer_notification(
                    "order_shipped",
                    tracking_number=self.shipping.tracking_number,
                    estimated_delivery=self.estimated_delivery().isoformat(),
                )
            )
        self._transition(target, actor, note)
        return effects

    def _ship(self, tracking_number: str | None, carrier: str | None) -> None:
        if self.shipped_at is None:
            self.shipped_at = utcnow()
        if self.shipping.tracking_number is None:
            self.shipping = self.shipping.model_copy(
                update={
                    "tracking_number": tracking_number or generate_reference("TRK"),
                    "carrier": carrier or self.shipping.carrier,
                }
            )
        self._advance_sub_orders(
            SubOrderStatus.SHIPPED,
            from_statuses=(SubOrderStatus.CONFIRMED, SubOrderStatus.PROCESSING, SubOrderStatus.READY),
            tracking_number=self.shipping.tracking_number,
            carrier=self.shipping.carrier,
        )

    def _advance_sub_orders(
        self,
        target: SubOrderStatus,
        from_statuses: tuple[SubOrderStatus, ...],
        tracking_number: str | None = None,
        carrier: str | None = None,
    ) -> None:
        for vendor_id, sub in self.vendor_sub_orders.items():
            if sub.status in from_statuses:
                self._set_sub_order_status(vendor_id, target, tracking_number, carrier)

    def _set_sub_order_status(
        self,
        vendor_id: str,
        target: SubOrderStatus,
        tracking_number: str | None = None,
        carrier: str | None = None,
    ) -> None:
        sub = self.vendor_sub_orders[vendor_id]
        now = utcnow()
        update: dict[str, Any] = {"status": target}
        if target == SubOrderStatus.SHIPPED:
            if sub.tracking_number is None:
                update["tracking_number"] = tracking_number or generate_reference("TRK")
                update["carrier"] = carrier or sub.carrier
            if sub.shipped_at is None:
                update["shipped_at"] = now
        if target == SubOrderStatus.DELIVERED:
            update["delivered_at"] = now
        self.vendor_sub_orders[vendor_id] = sub.model_copy(update=update)

        item_status = ITEM_STATUS_FOR_SUB_ORDER.get(target)
        if item_status is None:
            return
        for item_id in sub.item_ids:
            item = self.items[item_id]
            if item.is_active and item.status != ItemStatus.DELIVERED:
                changes: dict[str, Any] = {"status": item_status}
                if item_status == ItemStatus.DELIVERED:
                    changes["delivered_at"] = now
                self.items[item_id] = item.model_copy(update=changes)

    def update_vendor_status(
        self,
        vendor_id: str,
        target: SubOrderStatus | str,
        actor: str,
        note: str | None = None,
        tracking_number: str | None = None,
        carrier: str | None = None,
    ) -> list[SideEffect]:
        """Advance one vendor's sub-order; the order follows where it is derived."""
        if vendor_id not in self.vendor_sub_orders:
            raise NotFoundError("vendor_sub_order", f"{self.id}:{vendor_id}")
        try:
            target = SubOrderStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown sub-order status {target!r}") from None
        if self.status == OrderStatus.DISPUTED or self.stage not in FULFILLMENT - {OrderStatus.DELIVERED, OrderStatus.COMPLETED}:
            raise IllegalTransition("order", self.id, self.status.value, f"vendor_{target.value}")

        sub = self.vendor_sub_orders[vendor_id]
        if target not in SUB_ORDER_TRANSITIONS.get(sub.status, frozenset()):
            raise IllegalTransition("vendor_sub_order", f"{self.id}:{vendor_id}", sub.status.value, target.value)

        self._set_sub_order_status(vendor_id, target, tracking_number, carrier)
        self._amend("vendor_status", actor, vendor_id=vendor_id, status=target.value, note=note)

        effects: list[SideEffect] = []
        if target == SubOrderStatus.PROCESSING and self.stage == OrderStatus.PAYMENT_CONFIRMED:
            self._transition(OrderStatus.PROCESSING, actor, f"Vendor {vendor_id} started processing")
        if target == SubOrderStatus.SHIPPED:
            effects.append(
                self._buyer_notification(
                    "vendor_shipment",
                    vendor_id=vendor_id,
                    tracking_number=self.vendor_sub_orders[vendor_id].tracking_number,
                )
            )
            active = [s for s in self.vendor_sub_orders.values() if s.status != SubOrderStatus.CANCELLED]
            all_shipped = all(s.status in (SubOrderStatus.SHIPPED, SubOrderStatus.DELIVERED) for s in active)
            if all_shipped and self.stage in (
                OrderStatus.PAYMENT_CONFIRMED,
                OrderStatus.PROCESSING,
                OrderStatus.READY,
            ):
                if self.shipped_at is None:
                    self.shipped_at = utcnow()
                self._transition(OrderStatus.SHIPPED, actor, "All vendors shipped")
        effects += self._derive_delivery(actor)
        return effects

    def mark_item_delivered(self, item_id: str, actor: str) -> list[SideEffect]:
        item = self.get_item(item_id)
        if item.status == ItemStatus.DELIVERED:
            return []
        if item.status != ItemStatus.SHIPPED or self.status == OrderStatus.DISPUTED:
            raise IllegalTransition("item", f"{self.id}:{item_id}", item.status.value, ItemStatus.DELIVERED.value)

        self.items[item_id] = item.model_copy(update={"status": ItemStatus.DELIVERED, "delivered_at": utcnow()})
        self._amend("item_delivered", actor, item_id=item_id)

        sub = self.vendor_sub_orders[item.vendor_id]
        vendor_items = [self.items[i] for i in sub.item_ids if self.items[i].is_active]
        if all(i.status == ItemStatus.DELIVERED for i in vendor_items):
            self._set_sub_order_status(item.vendor_id, SubOrderStatus.DELIVERED)
        return self._derive_delivery(actor)

    def _derive_delivery(self, actor: str) -> list[SideEffect]:
        active = self.active_items
        if not active or any(item.status != ItemStatus.DELIVERED for item in active):
            return []
        if self.status == OrderStatus.DISPUTED or self.stage not in IN_TRANSIT:
            return []

        for vendor_id, sub in self.vendor_sub_orders.items():
            if sub.status not in (SubOrderStatus.DELIVERED, SubOrderStatus.CANCELLED):
                self.vendor_sub_orders[vendor_id] = sub.model_copy(
                    update={"status": SubOrderStatus.DELIVERED, "delivered_at": utcnow()}
                )
        self._transition(OrderStatus.DELIVERED, actor, "All items delivered")
        effects: list[SideEffect] = [self._buyer_notification("order_delivered")]

        if self.payment.status == PaymentStatus.COMPLETED:
            self._transition(OrderStatus.COMPLETED, actor, "Delivered and paid")
        return effects

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, reason: str, actor: str, payment: PaymentSummary | None = None) -> list[SideEffect]:
        """
        Cancel before any vendor started work.

        Releases stock for every non-cancelled item. A collected payment gets
        a dependent full refund; an uncollected one is voided.
        """
        if self.status not in CANCELLABLE:
            raise IllegalTransition("order", self.id, self.status.value, OrderStatus.CANCELLED.value)
        started = self._sub_orders_started()
        if started:
            raise InvariantViolation(
                f"Order {self.id} cannot be cancelled: vendors {', '.join(started)} already started",
                order_id=self.id,
            )
        if payment is not None:
            self._sync_payment(payment, actor)

        effects: list[SideEffect] = []
        for item_id, item in self.items.items():
            if item.is_active:
                effects.append(
                    InventoryAdjustment(
                        action="release", product_id=item.product_id, quantity=item.quantity, order_id=self.id
                    )
                )
                self.items[item_id] = item.model_copy(update={"status": ItemStatus.CANCELLED})
        for vendor_id, sub in self.vendor_sub_orders.items():
            self.vendor_sub_orders[vendor_id] = sub.model_copy(update={"status": SubOrderStatus.CANCELLED})

        self.cancellation_reason = reason
        self._transition(OrderStatus.CANCELLED, actor, reason)

        if self.payment.status in (PaymentStatus.PENDING, PaymentStatus.AUTHORIZED):
            effects.append(PaymentCancellation(order_id=self.id, payment_id=self.payment.payment_id, actor=actor))
        effects += self._cancellation_refund(self.payment, actor)

        effects.append(self._buyer_notification("order_cancelled", reason=reason))
        effects.extend(
            Notification(
                recipient=f"vendor:{vendor_id}",
                template="order_cancelled",
                data={"order_number": self.order_number, "vendor_id": vendor_id},
            )
            for vendor_id in self.vendor_sub_orders
        )
        return effects

    def _cancellation_refund(self, payment: PaymentSummary, actor: str) -> list[SideEffect]:
        if payment.status not in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED):
            return []
        remaining = payment.refundable_amount - payment.refunded_amount
        if not remaining.is_positive:
            return []
        self.cancellation_refund_id = generate_reference("REF")
        self._amend("cancellation_refund_requested", actor, refund_id=self.cancellation_refund_id)
        return [
            RefundRequest(
                order_id=self.id,
                payment_id=payment.payment_id,
                refund_id=self.cancellation_refund_id,
                amount=remaining,
                reason=RefundReason.ORDER_CANCELLED.value,
                actor=actor,
            )
        ]

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------

    def _quantity_in_open_returns(self, item_id: str) -> int:
        open_statuses = (ReturnStatus.REQUESTED, ReturnStatus.APPROVED, ReturnStatus.RECEIVED)
        return sum(
            line.quantity
            for request in self.returns.values()
            if request.status in open_statuses
            for line in request.lines
            if line.item_id == item_id
        )

    def request_return(
        self,
        return_id: str,
        quantities: dict[str, int],
        reason: ReturnReason | str,
        actor: str,
        window_days: int,
        note: str | None = None,
        now: datetime | None = None,
    ) -> list[SideEffect]:
        if return_id in self.returns:
            raise InvariantViolation(f"Return {return_id} already exists", order_id=self.id)
        if not self.can_be_returned(window_days, now):
            raise InvariantViolation(
                f"Order {self.id} is not returnable (status {self.status.value})", order_id=self.id
            )
        try:
            reason = ReturnReason(reason)
        except ValueError:
            raise ValidationError(f"Unknown return reason {reason!r}") from None
        if not quantities:
            raise ValidationError("A return needs at least one item")

        for item_id, quantity in quantities.items():
            item = self.get_item(item_id)
            returnable = item.quantity - item.returned_quantity - self._quantity_in_open_returns(item_id)
            if quantity < 1 or quantity > returnable or item.status != ItemStatus.DELIVERED:
                raise ValidationError(
                    f"Cannot return {quantity} of item {item_id}; {max(returnable, 0)} returnable"
                )

        request = ReturnRequest(
            id=return_id,
            lines=[ReturnLine(item_id=i, quantity=q) for i, q in quantities.items()],
            reason=reason,
            note=note,
            refund_amount=return_refund_amount(self.items, quantities, self.currency),
            requested_by=actor,
        )
        self.returns[return_id] = request
        self._amend("return_requested", actor, return_id=return_id, refund_amount=str(request.refund_amount.amount))

        vendors = {self.items[i].vendor_id for i in quantities}
        return [
            Notification(
                recipient=f"vendor:{vendor_id}",
                template="return_requested",
                data={"order_number": self.order_number, "return_id": return_id, "reason": reason.value},
            )
            for vendor_id in sorted(vendors)
        ]

    def _move_return(
        self,
        return_id: str,
        allowed: tuple[ReturnStatus, ...],
        target: ReturnStatus,
        actor: str,
        **changes: Any,
    ) -> ReturnRequest:
        request = self.get_return(return_id)
        if request.status not in allowed:
            raise IllegalTransition("return", return_id, request.status.value, target.value)
        updated = request.model_copy(update={"status": target, "processed_at": utcnow(), **changes})
        self.returns[return_id] = updated
        self._amend(f"return_{target.value}", actor, return_id=return_id)
        return updated

    def approve_return(self, return_id: str, actor: str) -> list[SideEffect]:
        request = self._move_return(return_id, (ReturnStatus.REQUESTED,), ReturnStatus.APPROVED, actor)
        return [self._buyer_notification("return_approved", return_id=request.id)]

    def reject_return(self, return_id: str, actor: str, note: str | None = None) -> list[SideEffect]:
        request = self._move_return(
            return_id, (ReturnStatus.REQUESTED, ReturnStatus.APPROVED), ReturnStatus.REJECTED, actor, note=note
        )
        return [self._buyer_notification("return_rejected", return_id=request.id, note=note)]

    def receive_return(self, return_id: str, actor: str) -> list[SideEffect]:
        """Goods are back at the vendor: put them back on the shelf."""
        request = self._move_return(return_id, (ReturnStatus.APPROVED,), ReturnStatus.RECEIVED, actor)
        return [
            InventoryAdjustment(
                action="release",
                product_id=self.items[line.item_id].product_id,
                quantity=line.quantity,
                order_id=self.id,
            )
            for line in request.lines
        ]

    def prepare_return_refund(self, return_id: str, actor: str) -> ReturnRequest:
        """Pin the refund id for a return before the gateway is called."""
        request = self.get_return(return_id)
        if request.status not in (ReturnStatus.APPROVED, ReturnStatus.RECEIVED):
            raise IllegalTransition("return", return_id, request.status.value, ReturnStatus.REFUNDED.value)
        if request.refund_id is not None:
            return request
        updated = request.model_copy(update={"refund_id": generate_reference("REF")})
        self.returns[return_id] = updated
        self._amend("return_refund_requested", actor, return_id=return_id, refund_id=updated.refund_id)
        return updated

    def complete_return(self, return_id: str, payment: PaymentSummary, actor: str) -> list[SideEffect]:
        """Refund for the return went through: record returned quantities, then apply the ratio rule."""
        request = self.get_return(return_id)
        if request.status == ReturnStatus.REFUNDED:
            return self.apply_refund(payment, actor)
        self._move_return(return_id, (ReturnStatus.APPROVED, ReturnStatus.RECEIVED), ReturnStatus.REFUNDED, actor)

        for line in request.lines:
            item = self.items[line.item_id]
            returned = item.returned_quantity + line.quantity
            changes: dict[str, Any] = {"returned_quantity": returned}
            if returned >= item.quantity:
                changes["status"] = ItemStatus.REFUNDED
            self.items[line.item_id] = item.model_copy(update=changes)

        effects = self.apply_refund(payment, actor, f"Return {return_id} refunded")
        effects.append(
            self._buyer_notification("return_refunded", return_id=return_id, amount=str(request.refund_amount))
        )
        return effects

    # ------------------------------------------------------------------
    # Legal erasure
    # ------------------------------------------------------------------

    def erase(self, actor: str) -> list[SideEffect]:
        """Soft delete: drop personal data, keep the financial record."""
        if self.deleted_at is not None:
            return []
        if self.status not in TERMINAL:
            raise IllegalTransition("order", self.id, self.status.value, "erased")
        self.buyer_id = "erased"
        self.shipping = self.shipping.model_copy(update={"address": {}})
        self.deleted_at = utcnow()
        self._amend("erased", actor)
        return []
