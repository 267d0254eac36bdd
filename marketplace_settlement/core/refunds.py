"""
Refund & dispute manager.

Refund flow (each step its own versioned write, no lock across the gateway):

    open pending refund ──→ gateway.refund(idempotency_key) ──→ completed
            │                       │                      └──→ failed
            │                       └── timeout: stays pending, outcome unknown
            └── rejected: amount out of bounds, dispute open, not refundable

The pending refund counts against the refundable bound from the moment it
is written, so concurrent requests cannot overshoot. Requests are
idempotent per refund id: a completed refund is returned as-is without a
gateway call; a pending one is re-driven with the same idempotency key.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from marketplace_settlement.config import Settings
from marketplace_settlement.core.effects import SideEffectExecutor
from marketplace_settlement.core.transactions import AggregateMutator, with_order_sync
from marketplace_settlement.domain.effects import RefundRequest, SideEffect
from marketplace_settlement.domain.errors import (
    GatewayError,
    InvariantViolation,
    ValidationError,
)
from marketplace_settlement.domain.order import OrderAggregate
from marketplace_settlement.domain.payment import (
    DisputeStatus,
    PaymentAggregate,
    RefundReason,
    RefundRecord,
    RefundStatus,
    parse_dispute_outcome,
)
from marketplace_settlement.domain.value_objects import Money, generate_reference
from marketplace_settlement.integrations.gateway import GatewayResult, GatewayStatus, PaymentGateway, call_gateway
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class RefundDisputeManager:
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

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def request_refund(
        self,
        payment_id: str,
        amount: Money,
        reason: RefundReason | str,
        actor: str,
        refund_id: str | None = None,
    ) -> RefundRecord:
        """
        Refund part or all of a payment.

        Raises:
            InvalidAmount: non-positive, or more than is still refundable
            DisputeLocked: a dispute is open or under review
            GatewayError: the gateway refused (refund marked failed) or timed
                out (``unknown_outcome``; refund stays pending)
        """
        refund_id = refund_id or generate_reference("REF")

        def open_refund(payment: PaymentAggregate) -> list[SideEffect]:
            existing = payment.refunds.get(refund_id)
            if existing is None:
                payment.open_refund(refund_id, amount, reason, actor)
                return []
            if existing.amount != amount:
                raise ValidationError(
                    f"Refund {refund_id} was requested for {existing.amount}, not {amount}",
                    payment_id=payment_id,
                )
            if existing.status == RefundStatus.FAILED:
                payment.reopen_refund(refund_id, actor)
            return []

        try:
            outcome = await self.mutator.mutate_payment(payment_id, open_refund)
        except (ValidationError, InvariantViolation) as e:
            metrics.record_refund("rejected")
            logger.warning(
                "refund_rejected",
                payment_id=payment_id,
                refund_id=refund_id,
                amount=str(amount),
                error_code=e.error_code,
                error=e.message,
            )
            raise

        payment = outcome.aggregate
        refund = payment.refunds[refund_id]
        if refund.status == RefundStatus.COMPLETED:
            metrics.record_refund("duplicate")
            logger.info("refund_already_completed", payment_id=payment_id, refund_id=refund_id)
            return refund

        logger.info(
            "refund_requested",
            payment_id=payment_id,
            refund_id=refund_id,
            amount=str(amount),
            attempt=refund.attempt,
            actor=actor,
        )
        return await self._drive_refund(payment, refund, actor)

    async def _drive_refund(self, payment: PaymentAggregate, refund: RefundRecord, actor: str) -> RefundRecord:
        if payment.transaction_id is None:
            raise InvariantViolation(f"Payment {payment.id} has no gateway transaction to refund", payment_id=payment.id)
        try:
            result = await call_gateway(
                "refund",
                self.gateway.refund(payment.transaction_id, refund.amount, refund.idempotency_key),
                timeout=self.settings.gateway_timeout_seconds,
            )
        except GatewayError as e:
            if e.unknown_outcome:
                metrics.record_refund("unknown")
                logger.warning(
                    "refund_outcome_unknown",
                    payment_id=payment.id,
                    refund_id=refund.id,
                    error=e.message,
                )
                raise
            await self._fail_refund(payment.id, refund.id, e.message, actor)
            raise
        return await self.apply_refund_result(payment.id, refund.id, result, actor)

    async def _fail_refund(self, payment_id: str, refund_id: str, reason: str, actor: str) -> RefundRecord:
        outcome = await self.mutator.mutate_payment(
            payment_id,
            lambda p: p.fail_refund(refund_id, reason, actor)
            if p.refunds[refund_id].status == RefundStatus.PENDING
            else None,
        )
        metrics.record_refund("failed")
        logger.error("refund_failed", payment_id=payment_id, refund_id=refund_id, reason=reason)
        await self.executor.execute(outcome.effects)
        return outcome.aggregate.refunds[refund_id]

    async def apply_refund_result(
        self, payment_id: str, refund_id: str, result: GatewayResult, actor: str
    ) -> RefundRecord:
        """Settle a pending refund with what the gateway reported."""
        if result.status in (GatewayStatus.FAILED, GatewayStatus.CANCELLED):
            return await self._fail_refund(
                payment_id, refund_id, result.failure_reason or f"Refund {result.status.value}", actor
            )
        if result.status != GatewayStatus.SUCCEEDED:
            logger.info(
                "refund_pending_at_gateway",
                payment_id=payment_id,
                refund_id=refund_id,
                gateway_status=result.status.value,
            )
            metrics.record_refund("pending")
            payment = await self.mutator.payments.get(payment_id)
            return payment.refunds[refund_id]

        outcome = await self.mutator.mutate_payment(
            payment_id,
            lambda p: p.complete_refund(refund_id, result.reference, actor)
            if p.refunds[refund_id].status == RefundStatus.PENDING
            else None,
        )
        payment = outcome.aggregate
        metrics.record_refund("completed")
        logger.info(
            "refund_completed",
            payment_id=payment_id,
            refund_id=refund_id,
            gateway_refund_id=result.reference,
            payment_status=payment.status.value,
            total_refunded=str(payment.total_refunded),
        )
        await self.executor.execute(with_order_sync(outcome, actor, f"Refund {refund_id}"))
        return payment.refunds[refund_id]

    async def refund_for_order(self, effect: RefundRequest) -> None:
        """
        Dependent refund after an order cancellation.

        An unknown outcome is left pending for the reconciliation job; any
        other failure propagates so the command is retried.
        """
        try:
            await self.request_refund(
                effect.payment_id, effect.amount, effect.reason, effect.actor, refund_id=effect.refund_id
            )
        except GatewayError as e:
            if not e.unknown_outcome:
                raise
            logger.warning(
                "cancellation_refund_pending",
                order_id=effect.order_id,
                refund_id=effect.refund_id,
            )

    async def refund_return(self, order_id: str, return_id: str, actor: str) -> RefundRecord:
        """Refund a received (or approved) return through the normal refund path."""

        def prepare(order: OrderAggregate) -> list[SideEffect]:
            order.prepare_return_refund(return_id, actor)
            return []

        outcome = await self.mutator.mutate_order(order_id, prepare)
        order = outcome.aggregate
        request = order.returns[return_id]
        return await self.request_refund(
            order.payment.payment_id,
            request.refund_amount,
            RefundReason.ITEM_RETURNED,
            actor,
            refund_id=request.refund_id,
        )

    async def retry_pending_refunds(self, actor: str = "system:reconciliation") -> dict[str, int]:
        """Re-drive refunds whose gateway outcome was never settled."""
        stats = {"completed": 0, "pending": 0, "failed": 0}
        for payment in await self.mutator.payments.list_with_pending_refunds():
            for refund in payment.pending_refunds:
                if refund.initiated_by_gateway:
                    continue
                try:
                    settled = await self._drive_refund(payment, refund, actor)
                except GatewayError as e:
                    stats["failed" if not e.unknown_outcome else "pending"] += 1
                    continue
                stats[settled.status.value if settled.status != RefundStatus.PENDING else "pending"] += 1
        logger.info("pending_refunds_retried", **stats)
        return stats

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        payment_id: str,
        amount: Money,
        reason: str,
        actor: str,
        dispute_id: str | None = None,
        gateway_dispute_id: str | None = None,
        due_date: datetime | None = None,
    ) -> PaymentAggregate:
        """Payment → disputed; the order follows and is flagged for review."""
        dispute_id = dispute_id or generate_reference("DIS")
        outcome = await self.mutator.mutate_payment(
            payment_id,
            lambda p: p.open_dispute(dispute_id, amount, reason, actor, gateway_dispute_id, due_date),
        )
        logger.warning(
            "dispute_opened",
            payment_id=payment_id,
            dispute_id=dispute_id,
            amount=str(amount),
            reason=reason,
        )
        await self.executor.execute(with_order_sync(outcome, actor, f"Dispute {dispute_id}"))
        return outcome.aggregate

    async def review_dispute(self, payment_id: str, dispute_id: str, actor: str) -> PaymentAggregate:
        outcome = await self.mutator.mutate_payment(payment_id, lambda p: p.review_dispute(dispute_id, actor))
        await self.executor.execute(outcome.effects)
        return outcome.aggregate

    async def resolve_dispute(
        self,
        payment_id: str,
        dispute_id: str,
        outcome: DisputeStatus | str,
        actor: str,
        note: str | None = None,
    ) -> PaymentAggregate:
        """Administrative decision: won restores the prior status, lost ends refunded."""
        outcome = parse_dispute_outcome(outcome)
        result = await self.mutator.mutate_payment(
            payment_id, lambda p: p.resolve_dispute(dispute_id, outcome, actor, note)
        )
        logger.info(
            "dispute_resolved",
            payment_id=payment_id,
            dispute_id=dispute_id,
            outcome=outcome.value,
            payment_status=result.aggregate.status.value,
        )
        await self.executor.execute(with_order_sync(result, actor, note or f"Dispute {dispute_id} resolved"))
        return result.aggregate
