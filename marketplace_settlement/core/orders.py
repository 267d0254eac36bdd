"""
Order workflow: checkout, fulfillment, cancellation, returns.

The order only ever sees a PaymentSummary. Whenever the payment changes,
``sync_with_payment`` re-reads it and lets the order derive its own status;
it is idempotent, so it runs safely from the deferred queue as well.
"""

from __future__ import annotations

from typing import Sequence

import structlog

from marketplace_settlement.config import Settings
from marketplace_settlement.core.effects import SideEffectExecutor
from marketplace_settlement.core.transactions import AggregateMutator
from marketplace_settlement.domain.commission import CommissionRateSource
from marketplace_settlement.domain.consistency import is_consistent
from marketplace_settlement.domain.effects import OrderPaymentSync, SideEffect
from marketplace_settlement.domain.errors import InvalidAmount
from marketplace_settlement.domain.order import (
    CartLine,
    OrderAggregate,
    OrderStatus,
    ReturnReason,
    ReturnStatus,
    ShippingInfo,
    SubOrderStatus,
)
from marketplace_settlement.domain.payment import PaymentAggregate, RefundStatus
from marketplace_settlement.domain.settlement import PriceAdjustments
from marketplace_settlement.domain.value_objects import Currency, generate_reference

logger = structlog.get_logger(__name__)


class OrderWorkflow:
    def __init__(
        self,
        mutator: AggregateMutator,
        executor: SideEffectExecutor,
        resolver: CommissionRateSource,
        settings: Settings,
    ):
        self.mutator = mutator
        self.executor = executor
        self.resolver = resolver
        self.settings = settings

    async def place_order(
        self,
        buyer_id: str,
        lines: Sequence[CartLine],
        payment_method: str,
        actor: str,
        currency: Currency | str | None = None,
        adjustments: PriceAdjustments | None = None,
        shipping: ShippingInfo | None = None,
    ) -> tuple[OrderAggregate, PaymentAggregate]:
        """Create the order and its paired payment from a cart snapshot."""
        currency = Currency(currency or self.settings.default_currency)
        payment_id = generate_reference("PAY")
        order, effects = OrderAggregate.place(
            buyer_id=buyer_id,
            lines=lines,
            resolver=self.resolver,
            payment_id=payment_id,
            payment_method=payment_method,
            actor=actor,
            currency=currency,
            adjustments=adjustments,
            shipping=shipping,
        )
        if not order.pricing.total.is_positive:
            raise InvalidAmount(f"Order total must be positive, got {order.pricing.total}")
        payment = PaymentAggregate.initiate(
            order_id=order.id,
            order_number=order.order_number,
            buyer_id=buyer_id,
            amount=order.pricing.total,
            method=payment_method,
            actor=actor,
            payment_id=payment_id,
        )

        await self.mutator.orders.save(order)
        await self.mutator.payments.save(payment)
        logger.info(
            "order_placed",
            order_id=order.id,
            order_number=order.order_number,
            payment_id=payment.id,
            total=str(order.pricing.total),
            vendors=len(order.vendor_sub_orders),
        )
        await self.executor.execute(effects)
        return order, payment

    async def _run(self, order_id: str, mutation) -> OrderAggregate:
        outcome = await self.mutator.mutate_order(order_id, mutation)
        await self.executor.execute(outcome.effects)
        return outcome.aggregate

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------

    async def update_order_status(
        self,
        order_id: str,
        target: OrderStatus | str,
        actor: str,
        note: str | None = None,
        tracking_number: str | None = None,
        carrier: str | None = None,
    ) -> OrderAggregate:
        if target in (OrderStatus.CANCELLED, OrderStatus.CANCELLED.value):
            return await self.cancel_order(order_id, note or "Cancelled", actor)
        return await self._run(
            order_id, lambda o: o.update_status(target, actor, note, tracking_number, carrier)
        )

    async def update_vendor_status(
        self,
        order_id: str,
        vendor_id: str,
        target: SubOrderStatus | str,
        actor: str,
        note: str | None = None,
        tracking_number: str | None = None,
        carrier: str | None = None,
    ) -> OrderAggregate:
        return await self._run(
            order_id,
            lambda o: o.update_vendor_status(vendor_id, target, actor, note, tracking_number, carrier),
        )

    async def mark_item_delivered(self, order_id: str, item_id: str, actor: str) -> OrderAggregate:
        return await self._run(order_id, lambda o: o.mark_item_delivered(item_id, actor))

    async def cancel_order(self, order_id: str, reason: str, actor: str) -> OrderAggregate:
        """
        Cancel and release stock. The refund or void for the payment runs as a
        dependent step after the cancellation is committed.
        """

        async def cancel(order: OrderAggregate) -> list[SideEffect]:
            payment = await self.mutator.payments.get(order.payment.payment_id)
            return order.cancel(reason, actor, payment.summary())

        order = await self._run(order_id, cancel)
        logger.info(
            "order_cancelled",
            order_id=order_id,
            reason=reason,
            refund_id=order.cancellation_refund_id,
        )
        return order

    async def erase_order(self, order_id: str, actor: str) -> OrderAggregate:
        """Legal erasure: personal data goes, the financial record stays."""
        return await self._run(order_id, lambda o: o.erase(actor))

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------

    async def request_return(
        self,
        order_id: str,
        quantities: dict[str, int],
        reason: ReturnReason | str,
        actor: str,
        note: str | None = None,
        return_id: str | None = None,
    ) -> tuple[OrderAggregate, str]:
        return_id = return_id or generate_reference("RET")
        order = await self._run(
            order_id,
            lambda o: o.request_return(
                return_id, quantities, reason, actor, self.settings.return_window_days, note
            ),
        )
        return order, return_id

    async def approve_return(self, order_id: str, return_id: str, actor: str) -> OrderAggregate:
        return await self._run(order_id, lambda o: o.approve_return(return_id, actor))

    async def reject_return(
        self, order_id: str, return_id: str, actor: str, note: str | None = None
    ) -> OrderAggregate:
        return await self._run(order_id, lambda o: o.reject_return(return_id, actor, note))

    async def receive_return(self, order_id: str, return_id: str, actor: str) -> OrderAggregate:
        return await self._run(order_id, lambda o: o.receive_return(return_id, actor))

    # ------------------------------------------------------------------
    # Payment → order
    # ------------------------------------------------------------------

    async def sync_with_payment(
        self, order_id: str, payment_id: str, actor: str, note: str | None = None
    ) -> OrderAggregate:
        """Re-read the payment and let the order follow it."""

        async def sync(order: OrderAggregate) -> list[SideEffect]:
            payment = await self.mutator.payments.get(payment_id)
            summary = payment.summary()
            effects: list[SideEffect] = []
            for request in order.returns.values():
                refund = payment.refunds.get(request.refund_id) if request.refund_id else None
                if (
                    refund is not None
                    and refund.status == RefundStatus.COMPLETED
                    and request.status != ReturnStatus.REFUNDED
                ):
                    effects += order.complete_return(request.id, summary, actor)
            effects += order.reconcile_payment(summary, actor, note)
            return effects

        order = await self._run(order_id, sync)
        if not is_consistent(order.status, order.payment.status):
            logger.warning(
                "order_payment_status_mismatch",
                order_id=order_id,
                payment_id=payment_id,
                order_status=order.status.value,
                payment_status=order.payment.status.value,
            )
        return order

    async def handle_sync(self, effect: OrderPaymentSync) -> None:
        await self.sync_with_payment(effect.order_id, effect.payment_id, effect.actor, effect.note)
