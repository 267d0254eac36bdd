"""
Payment lifecycle against the gateway.

Pattern for every gateway-backed operation:
1. Load the payment and check the transition is allowed (no gateway call
   for something that would be rejected anyway).
2. Call the gateway with a bounded timeout. No lock or open write is held
   across the call.
3. Apply the confirmed result through the mutator, which reloads the
   payment; if a webhook got there first the result is a no-op.
4. Run side effects, then bring the order in line as a dependent step.

A gateway failure leaves the local status untouched.
"""

from __future__ import annotations

import structlog

from marketplace_settlement.config import Settings
from marketplace_settlement.core.effects import SideEffectExecutor
from marketplace_settlement.core.transactions import AggregateMutator, MutationOutcome, with_order_sync
from marketplace_settlement.domain.effects import PaymentCancellation, SideEffect
from marketplace_settlement.domain.errors import GatewayError, IllegalTransition, ValidationError
from marketplace_settlement.domain.payment import (
    GATEWAY_SUCCESS_FROM,
    PRE_COMPLETED,
    Distribution,
    PaymentAggregate,
    PaymentFees,
    PaymentStatus,
    build_distribution,
)
from marketplace_settlement.domain.value_objects import Money
from marketplace_settlement.integrations.gateway import (
    GatewayResult,
    GatewayStatus,
    PaymentGateway,
    call_gateway,
)

logger = structlog.get_logger(__name__)

VOIDABLE = frozenset({PaymentStatus.PENDING, PaymentStatus.AUTHORIZED})
EXPIRABLE = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.AUTHORIZED})

CAPTURE_ACCEPTED = frozenset({GatewayStatus.SUCCEEDED, GatewayStatus.PROCESSING})
VOID_ACCEPTED = frozenset({GatewayStatus.CANCELLED})


def require_gateway_status(
    operation: str, payment_id: str, result: GatewayResult, accepted: frozenset[GatewayStatus]
) -> None:
    """
    Raise GatewayError when the gateway refused the operation.

    Called before any local write, so a refusal leaves the payment as it was.
    """
    if result.status in accepted:
        return
    logger.error(
        "gateway_operation_refused",
        operation=operation,
        payment_id=payment_id,
        transaction_id=result.transaction_id,
        gateway_status=result.status.value,
        reason=result.failure_reason,
    )
    raise GatewayError(
        f"Gateway refused {operation} (status {result.status.value})"
        + (f": {result.failure_reason}" if result.failure_reason else ""),
        operation=operation,
    )


def apply_gateway_result(
    payment: PaymentAggregate,
    result: GatewayResult,
    actor: str,
    distribution: Distribution | None = None,
    note: str | None = None,
) -> list[SideEffect] | None:
    """
    Move a payment to what the gateway reports.

    Returns None when the reported status does not apply from the current
    one (already there, or overtaken by a later event).
    """
    status = result.status
    current = payment.status

    if status == GatewayStatus.SUCCEEDED and current in GATEWAY_SUCCESS_FROM:
        payment.attach_transaction(result.transaction_id)
        return payment.complete(actor, distribution=distribution, from_gateway=True, note=note)
    if status == GatewayStatus.AUTHORIZED and current in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        return payment.authorize(result.transaction_id, actor)
    if status == GatewayStatus.PROCESSING and current == PaymentStatus.PENDING:
        return payment.mark_processing(result.transaction_id, actor)
    if status == GatewayStatus.FAILED and current in PRE_COMPLETED:
        payment.attach_transaction(result.transaction_id)
        return payment.fail(result.failure_reason or "Declined by gateway", actor)
    if status == GatewayStatus.CANCELLED and current in VOIDABLE:
        return payment.void(actor, note or "Cancelled at gateway")
    if status == GatewayStatus.PENDING and current == PaymentStatus.PENDING:
        payment.attach_transaction(result.transaction_id)
        return []
    return None


class PaymentWorkflow:
    """Authorize, confirm, capture, void and expire payments."""

    def __init__(
        self,
        mutator: AggregateMutator,
        gateway: PaymentGateway,
        executor: SideEffectExecutor,
        settings: Settings,
    ):
        self.mutator = mutator
        self.gateway = gateway
        self.executor = executor
        self.settings = settings

    async def _call(self, operation: str, call):
        return await call_gateway(operation, call, timeout=self.settings.gateway_timeout_seconds)

    async def distribution_for(self, payment: PaymentAggregate) -> Distribution:
        """Platform/vendor split of the captured funds, from the order's frozen pricing."""
        order = await self.mutator.orders.get(payment.order_id)
        return build_distribution(order.pricing.vendor_amounts, payment.amount)

    async def _finish(
        self, outcome: MutationOutcome[PaymentAggregate], actor: str, note: str | None = None
    ) -> PaymentAggregate:
        await self.executor.execute(with_order_sync(outcome, actor, note))
        return outcome.aggregate

    async def apply_result(
        self, payment_id: str, result: GatewayResult, actor: str, note: str | None = None
    ) -> PaymentAggregate:
        """Apply a gateway-reported status to a payment and its order."""
        payment = await self.mutator.payments.get(payment_id)
        distribution = await self.distribution_for(payment)
        outcome = await self.mutator.mutate_payment(
            payment_id, lambda p: apply_gateway_result(p, result, actor, distribution, note)
        )
        if not outcome.applicable:
            logger.info(
                "gateway_status_not_applicable",
                payment_id=payment_id,
                payment_status=outcome.aggregate.status.value,
                gateway_status=result.status.value,
            )
        return await self._finish(outcome, actor, note)

    async def authorize_payment(self, payment_id: str, actor: str) -> PaymentAggregate:
        """Submit a pending payment to the gateway (manual capture)."""
        payment = await self.mutator.payments.get(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise IllegalTransition("payment", payment_id, payment.status.value, PaymentStatus.AUTHORIZED.value)

        result = await self._call(
            "authorize",
            self.gateway.authorize(
                payment.amount,
                payment.method,
                idempotency_key=payment.id,
                metadata={"order_id": payment.order_id, "order_number": payment.order_number},
            ),
        )
        logger.info(
            "payment_submitted",
            payment_id=payment_id,
            transaction_id=result.transaction_id,
            gateway_status=result.status.value,
        )
        return await self.apply_result(payment_id, result, actor)

    async def confirm_payment(self, payment_id: str, actor: str) -> PaymentAggregate:
        """
        Confirm a payment the buyer completed, asking the gateway for the truth.

        Raises:
            ValidationError: the gateway does not report the payment as succeeded
        """
        payment = await self.mutator.payments.get(payment_id)
        if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED):
            return payment
        if payment.transaction_id is None:
            raise ValidationError(f"Payment {payment_id} was never submitted to the gateway", payment_id=payment_id)

        result = await self._call("retrieve", self.gateway.retrieve(payment.transaction_id))
        if result.status != GatewayStatus.SUCCEEDED:
            raise ValidationError(
                f"Payment not completed (gateway status {result.status.value})",
                error_code="payment_not_completed",
                payment_id=payment_id,
            )
        return await self.apply_result(payment_id, result, actor, note="Payment confirmed")

    async def capture_payment(self, payment_id: str, actor: str, amount: Money | None = None) -> PaymentAggregate:
        """Capture an authorized payment, fully or partially."""
        payment = await self.mutator.payments.get(payment_id)
        if payment.status != PaymentStatus.AUTHORIZED:
            raise IllegalTransition("payment", payment_id, payment.status.value, PaymentStatus.CAPTURED.value)
        amount = amount or payment.amount
        if amount.currency != payment.amount.currency:
            raise ValidationError(
                f"Capture currency {amount.currency.value} does not match the payment ({payment.amount.currency.value})",
                payment_id=payment_id,
            )
        if not amount.is_positive or amount > payment.amount:
            raise ValidationError(f"Capture amount must be within (0, {payment.amount}], got {amount}")

        result = await self._call("capture", self.gateway.capture(payment.transaction_id, amount))
        require_gateway_status("capture", payment_id, result, CAPTURE_ACCEPTED)
        distribution = await self.distribution_for(payment)

        def apply(p: PaymentAggregate) -> list[SideEffect] | None:
            if p.status != PaymentStatus.AUTHORIZED:
                return None
            effects = p.capture(amount, actor)
            if result.status == GatewayStatus.SUCCEEDED:
                effects += p.complete(actor, distribution=distribution)
            return effects

        outcome = await self.mutator.mutate_payment(payment_id, apply)
        logger.info(
            "payment_captured",
            payment_id=payment_id,
            amount=str(amount),
            status=outcome.aggregate.status.value,
        )
        return await self._finish(outcome, actor)

    async def void_payment(self, payment_id: str, actor: str, note: str | None = None) -> PaymentAggregate:
        """Cancel before capture. The gateway is asked first when the payment was submitted."""
        payment = await self.mutator.payments.get(payment_id)
        if payment.status == PaymentStatus.CANCELLED:
            return payment
        if payment.status not in VOIDABLE:
            raise IllegalTransition("payment", payment_id, payment.status.value, PaymentStatus.CANCELLED.value)
        if payment.transaction_id is not None:
            result = await self._call("void", self.gateway.void(payment.transaction_id))
            require_gateway_status("void", payment_id, result, VOID_ACCEPTED)

        outcome = await self.mutator.mutate_payment(
            payment_id, lambda p: p.void(actor, note) if p.status in VOIDABLE else None
        )
        return await self._finish(outcome, actor, note)

    async def cancel_for_order(self, effect: PaymentCancellation) -> None:
        """Dependent void after an order cancellation; nothing to do once the payment moved on."""
        payment = await self.mutator.payments.get(effect.payment_id)
        if payment.status not in VOIDABLE:
            logger.info(
                "payment_cancellation_skipped",
                payment_id=effect.payment_id,
                order_id=effect.order_id,
                payment_status=payment.status.value,
            )
            return
        await self.void_payment(effect.payment_id, effect.actor, note=f"Order {effect.order_id} cancelled")

    async def expire_payment(self, payment_id: str, actor: str) -> PaymentAggregate:
        """
        Expire a payment the buyer never finished.

        The gateway is asked first: a payment that actually went through is
        completed instead, and a live authorization is released before the
        local status moves.
        """
        payment = await self.mutator.payments.get(payment_id)
        if payment.status == PaymentStatus.EXPIRED:
            return payment
        if payment.status not in EXPIRABLE:
            raise IllegalTransition("payment", payment_id, payment.status.value, PaymentStatus.EXPIRED.value)

        if payment.transaction_id is not None:
            result = await self._call("retrieve", self.gateway.retrieve(payment.transaction_id))
            if result.status in (GatewayStatus.SUCCEEDED, GatewayStatus.FAILED, GatewayStatus.CANCELLED):
                logger.info(
                    "stale_payment_settled_by_gateway",
                    payment_id=payment_id,
                    gateway_status=result.status.value,
                )
                return await self.apply_result(payment_id, result, actor, note="Settled during expiry check")
            released = await self._call("void", self.gateway.void(payment.transaction_id))
            require_gateway_status("void", payment_id, released, VOID_ACCEPTED)

        outcome = await self.mutator.mutate_payment(
            payment_id, lambda p: p.expire(actor) if p.status in EXPIRABLE else None
        )
        logger.info("payment_expired", payment_id=payment_id, order_id=outcome.aggregate.order_id)
        return await self._finish(outcome, actor, "Payment expired")

    async def record_payment_fees(self, payment_id: str, fees: PaymentFees, actor: str) -> PaymentAggregate:
        if fees.total.currency != (await self.mutator.payments.get(payment_id)).amount.currency:
            raise ValidationError("Fee currency does not match the payment")
        outcome = await self.mutator.mutate_payment(payment_id, lambda p: p.record_fees(fees, actor) or [])
        return outcome.aggregate
