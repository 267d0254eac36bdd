"""
Unit tests for the Order aggregate.
"""
from datetime import timedelta
from typing import List

import pytest

from marketplace_settlement.domain.commission import CommissionResolver
from marketplace_settlement.domain.consistency import is_consistent
from marketplace_settlement.domain.effects import (
    InventoryAdjustment,
    Notification,
    PaymentCancellation,
    RefundRequest,
)
from marketplace_settlement.domain.errors import (
    CorruptAggregateError,
    IllegalTransition,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from marketplace_settlement.domain.order import (
    CartLine,
    ItemStatus,
    OrderAggregate,
    OrderStatus,
    ReturnStatus,
    SubOrderStatus,
)
from marketplace_settlement.domain.payment import PaymentAggregate, PaymentStatus
from marketplace_settlement.domain.value_objects import Money, utcnow


@pytest.fixture
def order(cart: List[CartLine], resolver: CommissionResolver) -> OrderAggregate:
    placed, _ = OrderAggregate.place(
        buyer_id="buyer-1",
        lines=cart,
        resolver=resolver,
        payment_id="PAY-1",
        payment_method="card",
        actor="buyer-1",
    )
    placed.mark_events_committed()
    return placed


def collected_payment(order: OrderAggregate) -> PaymentAggregate:
    payment = PaymentAggregate.initiate(
        order_id=order.id,
        order_number=order.order_number,
        buyer_id=order.buyer_id,
        amount=order.pricing.total,
        method="card",
        actor="buyer-1",
        payment_id=order.payment.payment_id,
    )
    payment.authorize("pi_1", "gateway")
    payment.capture(payment.amount, "gateway")
    payment.complete("gateway")
    return payment


def refund(payment: PaymentAggregate, refund_id: str, amount: str) -> None:
    payment.open_refund(refund_id, Money.of(amount), "requested_by_customer", "admin")
    payment.complete_refund(refund_id, f"re_{refund_id}", "admin")


def ship(order: OrderAggregate) -> None:
    for status in (OrderStatus.PROCESSING, OrderStatus.READY, OrderStatus.SHIPPED):
        order.update_status(status, "vendor-a")


class TestPlacement:
    """Test suite for OrderAggregate.place."""

    @pytest.mark.unit
    def test_place_builds_items_and_sub_orders(self, cart: List[CartLine], resolver: CommissionResolver) -> None:
        """Test item ids, vendor sub-orders and placement effects."""
        order, effects = OrderAggregate.place(
            buyer_id="buyer-1",
            lines=cart,
            resolver=resolver,
            payment_id="PAY-1",
            payment_method="card",
            actor="buyer-1",
        )

        assert order.status == OrderStatus.PENDING
        assert list(order.items) == ["item-1", "item-2"]
        assert set(order.vendor_sub_orders) == {"vendor-a", "vendor-b"}
        assert order.vendor_sub_orders["vendor-a"].subtotal == Money.of("100.00")
        assert order.payment.status == PaymentStatus.PENDING
        assert order.order_number.startswith("ORD-")
        reserves = [e for e in effects if isinstance(e, InventoryAdjustment)]
        assert [(e.action, e.product_id, e.quantity) for e in reserves] == [
            ("reserve", "prod-1", 2),
            ("reserve", "prod-2", 1),
        ]
        assert any(isinstance(e, Notification) and e.template == "order_placed" for e in effects)

    @pytest.mark.unit
    def test_place_requires_buyer(self, cart: List[CartLine], resolver: CommissionResolver) -> None:
        """Test that an anonymous order is refused."""
        with pytest.raises(ValidationError):
            OrderAggregate.place("", cart, resolver, "PAY-1", "card", "system")

    @pytest.mark.unit
    def test_vendor_view_shows_only_own_items(self, order: OrderAggregate) -> None:
        """Test vendor projection."""
        view = order.vendor_view("vendor-b")

        assert [i["id"] for i in view["items"]] == ["item-2"]
        assert view["settlement"]["vendor_id"] == "vendor-b"
        assert "buyer_id" not in view
        with pytest.raises(NotFoundError):
            order.vendor_view("vendor-z")

    @pytest.mark.unit
    def test_estimated_delivery_uses_shipping_method(self, order: OrderAggregate) -> None:
        """Test standard shipping estimate before anything shipped."""
        assert order.estimated_delivery() == order.created_at + timedelta(days=5)


class TestPaymentDrivenTransitions:
    """Test suite for transitions owned by the payment side."""

    @pytest.mark.unit
    def test_confirm_requires_collected_payment(self, order: OrderAggregate) -> None:
        """Test that an authorized payment does not confirm an order."""
        payment = PaymentAggregate.initiate(
            order.id, order.order_number, "buyer-1", order.pricing.total, "card", "buyer-1", payment_id="PAY-1"
        )
        payment.authorize("pi_1", "gateway")

        with pytest.raises(InvariantViolation):
            order.confirm_payment(payment.summary(), "system")

    @pytest.mark.unit
    def test_confirm_decrements_stock_and_notifies_vendors(self, order: OrderAggregate) -> None:
        """Test pending → payment_confirmed."""
        effects = order.reconcile_payment(collected_payment(order).summary(), "gateway")

        assert order.status == OrderStatus.PAYMENT_CONFIRMED
        assert order.confirmed_at is not None
        assert all(s.status == SubOrderStatus.CONFIRMED for s in order.vendor_sub_orders.values())
        assert [e.action for e in effects if isinstance(e, InventoryAdjustment)] == ["decrement", "decrement"]
        vendor_notes = [e.recipient for e in effects if isinstance(e, Notification) and e.template == "new_order"]
        assert vendor_notes == ["vendor:vendor-a", "vendor:vendor-b"]

    @pytest.mark.unit
    def test_reconcile_is_idempotent(self, order: OrderAggregate) -> None:
        """Test that a second sync with the same payment records nothing."""
        summary = collected_payment(order).summary()
        order.reconcile_payment(summary, "gateway")
        order.mark_events_committed()

        assert order.reconcile_payment(summary, "gateway") == []
        assert not order.has_changes

    @pytest.mark.unit
    def test_failed_payment_marks_order(self, order: OrderAggregate) -> None:
        """Test pending → payment_failed."""
        payment = PaymentAggregate.initiate(
            order.id, order.order_number, "buyer-1", order.pricing.total, "card", "buyer-1", payment_id="PAY-1"
        )
        payment.fail("card_declined", "gateway")

        order.reconcile_payment(payment.summary(), "gateway")

        assert order.status == OrderStatus.PAYMENT_FAILED

    @pytest.mark.unit
    def test_partial_refund_ratio(self, order: OrderAggregate) -> None:
        """Test partially_refunded then refunded as the ratio reaches 100%."""
        payment = collected_payment(order)
        order.reconcile_payment(payment.summary(), "gateway")

        refund(payment, "REF-1", "50.00")
        order.reconcile_payment(payment.summary(), "admin")
        assert order.status == OrderStatus.PARTIALLY_REFUNDED
        assert order.stage == OrderStatus.PAYMENT_CONFIRMED

        refund(payment, "REF-2", "100.00")
        order.reconcile_payment(payment.summary(), "admin")
        assert order.status == OrderStatus.REFUNDED

    @pytest.mark.unit
    def test_dispute_freezes_and_restores(self, order: OrderAggregate) -> None:
        """Test disputed order goes back to where it was when the dispute is won."""
        payment = collected_payment(order)
        order.reconcile_payment(payment.summary(), "gateway")

        payment.open_dispute("DIS-1", Money.of("150.00"), "fraudulent", "gateway")
        order.reconcile_payment(payment.summary(), "gateway")
        assert order.status == OrderStatus.DISPUTED
        assert order.needs_review
        with pytest.raises(IllegalTransition):
            order.update_status(OrderStatus.PROCESSING, "vendor-a")

        payment.resolve_dispute("DIS-1", "won", "admin")
        order.reconcile_payment(payment.summary(), "admin")
        assert order.status == OrderStatus.PAYMENT_CONFIRMED
        assert not order.needs_review


class TestFulfillment:
    """Test suite for shipping and delivery."""

    @pytest.mark.unit
    def test_manual_transitions_are_checked(self, order: OrderAggregate) -> None:
        """Test that an unpaid order can not ship."""
        with pytest.raises(IllegalTransition):
            order.update_status(OrderStatus.SHIPPED, "vendor-a")
        with pytest.raises(ValidationError):
            order.update_status("teleported", "vendor-a")

    @pytest.mark.unit
    def test_delivery_completes_paid_order(self, order: OrderAggregate) -> None:
        """Test all items delivered + payment completed → completed."""
        order.reconcile_payment(collected_payment(order).summary(), "gateway")
        ship(order)
        assert order.shipping.tracking_number is not None
        assert all(i.status == ItemStatus.SHIPPED for i in order.items.values())

        order.mark_item_delivered("item-1", "carrier")
        assert order.status == OrderStatus.SHIPPED
        assert order.vendor_sub_orders["vendor-a"].status == SubOrderStatus.DELIVERED

        order.mark_item_delivered("item-2", "carrier")
        assert order.status == OrderStatus.COMPLETED
        assert order.delivered_at is not None

    @pytest.mark.unit
    def test_never_completed_without_completed_payment(self, order: OrderAggregate) -> None:
        """Test delivered order stays delivered while the payment is partially refunded."""
        payment = collected_payment(order)
        order.reconcile_payment(payment.summary(), "gateway")
        ship(order)
        refund(payment, "REF-1", "20.00")
        order.reconcile_payment(payment.summary(), "admin")

        order.mark_item_delivered("item-1", "carrier")
        order.mark_item_delivered("item-2", "carrier")

        assert order.status == OrderStatus.DELIVERED
        assert is_consistent(order.status, payment.status)

    @pytest.mark.unit
    def test_vendor_shipments_derive_order_status(self, order: OrderAggregate) -> None:
        """Test order ships once every vendor shipped."""
        order.reconcile_payment(collected_payment(order).summary(), "gateway")

        order.update_vendor_status("vendor-a", "processing", "vendor-a")
        assert order.status == OrderStatus.PROCESSING
        for status in ("ready", "shipped"):
            order.update_vendor_status("vendor-a", status, "vendor-a")
        assert order.status == OrderStatus.PROCESSING

        for status in ("processing", "ready", "shipped"):
            order.update_vendor_status("vendor-b", status, "vendor-b", tracking_number="TRK-B")
        assert order.status == OrderStatus.SHIPPED
        assert order.vendor_sub_orders["vendor-b"].tracking_number == "TRK-B"

    @pytest.mark.unit
    def test_item_must_ship_before_delivery(self, order: OrderAggregate) -> None:
        """Test delivering an unshipped item is refused."""
        order.reconcile_payment(collected_payment(order).summary(), "gateway")

        with pytest.raises(IllegalTransition):
            order.mark_item_delivered("item-1", "carrier")


class TestCancellation:
    """Test suite for order cancellation."""

    @pytest.mark.unit
    def test_cancel_unpaid_order_voids_payment(self, order: OrderAggregate) -> None:
        """Test release of stock and a void for the pending payment."""
        assert order.can_be_cancelled()

        effects = order.cancel("changed mind", "buyer-1")

        assert order.status == OrderStatus.CANCELLED
        assert [e.action for e in effects if isinstance(e, InventoryAdjustment)] == ["release", "release"]
        assert any(isinstance(e, PaymentCancellation) for e in effects)
        assert not any(isinstance(e, RefundRequest) for e in effects)
        assert all(i.status == ItemStatus.CANCELLED for i in order.items.values())

    @pytest.mark.unit
    def test_cancel_paid_order_requests_refund(self, order: OrderAggregate) -> None:
        """Test a dependent full refund once the payment was collected."""
        payment = collected_payment(order)
        order.reconcile_payment(payment.summary(), "gateway")

        effects = order.cancel("out of stock", "admin", payment.summary())

        refunds = [e for e in effects if isinstance(e, RefundRequest)]
        assert len(refunds) == 1
        assert refunds[0].amount == Money.of("150.00")
        assert refunds[0].refund_id == order.cancellation_refund_id
        assert refunds[0].reason == "order_cancelled"

    @pytest.mark.unit
    def test_cancel_after_vendor_started_is_refused(self, order: OrderAggregate) -> None:
        """Test that work in progress blocks cancellation."""
        order.reconcile_payment(collected_payment(order).summary(), "gateway")
        order.update_vendor_status("vendor-b", "processing", "vendor-b")
        assert not order.can_be_cancelled()

        with pytest.raises(InvariantViolation):
            order.cancel("too late", "buyer-1")
        assert order.status == OrderStatus.PROCESSING

    @pytest.mark.unit
    def test_cancelled_order_ignores_later_refunds(self, order: OrderAggregate) -> None:
        """Test that cancelled stays cancelled while the refund lands."""
        payment = collected_payment(order)
        order.reconcile_payment(payment.summary(), "gateway")
        order.cancel("out of stock", "admin", payment.summary())

        refund(payment, order.cancellation_refund_id, "150.00")
        order.reconcile_payment(payment.summary(), "admin")

        assert order.status == OrderStatus.CANCELLED
        assert order.payment.status == PaymentStatus.REFUNDED


class TestReturns:
    """Test suite for the return workflow."""

    @pytest.fixture
    def completed(self, order: OrderAggregate) -> PaymentAggregate:
        payment = collected_payment(order)
        order.reconcile_payment(payment.summary(), "gateway")
        ship(order)
        order.mark_item_delivered("item-1", "carrier")
        order.mark_item_delivered("item-2", "carrier")
        assert order.status == OrderStatus.COMPLETED
        return payment

    @pytest.mark.unit
    def test_return_lifecycle(self, order: OrderAggregate, completed: PaymentAggregate) -> None:
        """Test requested → approved → received → refunded."""
        order.request_return("RET-1", {"item-1": 1}, "defective", "buyer-1", window_days=30)
        assert order.returns["RET-1"].refund_amount == Money.of("50.00")

        order.approve_return("RET-1", "vendor-a")
        effects = order.receive_return("RET-1", "vendor-a")
        assert [(e.action, e.product_id, e.quantity) for e in effects] == [("release", "prod-1", 1)]

        request = order.prepare_return_refund("RET-1", "admin")
        assert order.prepare_return_refund("RET-1", "admin").refund_id == request.refund_id

        refund(completed, request.refund_id, "50.00")
        order.complete_return("RET-1", completed.summary(), "admin")

        assert order.returns["RET-1"].status == ReturnStatus.REFUNDED
        assert order.items["item-1"].returned_quantity == 1
        assert order.status == OrderStatus.PARTIALLY_REFUNDED

    @pytest.mark.unit
    def test_return_window_closes(self, order: OrderAggregate, completed: PaymentAggregate) -> None:
        """Test returns after the window are refused."""
        later = utcnow() + timedelta(days=31)

        assert not order.can_be_returned(30, now=later)
        with pytest.raises(InvariantViolation):
            order.request_return("RET-1", {"item-1": 1}, "defective", "buyer-1", window_days=30, now=later)

    @pytest.mark.unit
    def test_cannot_return_more_than_bought(self, order: OrderAggregate, completed: PaymentAggregate) -> None:
        """Test quantity bounds include open returns."""
        order.request_return("RET-1", {"item-1": 2}, "defective", "buyer-1", window_days=30)

        with pytest.raises(ValidationError):
            order.request_return("RET-2", {"item-1": 1}, "defective", "buyer-1", window_days=30)

    @pytest.mark.unit
    def test_rejected_return_frees_quantity(self, order: OrderAggregate, completed: PaymentAggregate) -> None:
        """Test a rejected return can be requested again."""
        order.request_return("RET-1", {"item-2": 1}, "changed_mind", "buyer-1", window_days=30)
        order.reject_return("RET-1", "vendor-b", note="opened box")

        order.request_return("RET-2", {"item-2": 1}, "defective", "buyer-1", window_days=30)

        assert order.returns["RET-1"].status == ReturnStatus.REJECTED
        assert order.returns["RET-2"].status == ReturnStatus.REQUESTED

    @pytest.mark.unit
    def test_undelivered_order_is_not_returnable(self, order: OrderAggregate) -> None:
        """Test returns need a delivered order."""
        with pytest.raises(InvariantViolation):
            order.request_return("RET-1", {"item-1": 1}, "defective", "buyer-1", window_days=30)


class TestErasureAndIntegrity:
    """Test suite for legal erasure and integrity checks."""

    @pytest.mark.unit
    def test_erase_keeps_financial_record(self, order: OrderAggregate) -> None:
        """Test personal data is dropped from a terminal order."""
        order.shipping = order.shipping.model_copy(update={"address": {"line1": "1 Main St"}})
        with pytest.raises(IllegalTransition):
            order.erase("admin")

        order.cancel("fraud", "admin")
        order.erase("admin")

        assert order.buyer_id == "erased"
        assert order.shipping.address == {}
        assert order.deleted_at is not None
        assert order.pricing.total == Money.of("150.00")

    @pytest.mark.unit
    def test_tampered_pricing_fails_integrity(self, order: OrderAggregate) -> None:
        """Test that items and subtotal must agree."""
        order.items["item-1"] = order.items["item-1"].model_copy(update={"quantity": 3})

        with pytest.raises(CorruptAggregateError):
            order.verify_integrity()
