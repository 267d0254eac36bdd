"""
SettlementService - the produced interface of the settlement core.

Every operation returns an ``OperationResult`` instead of raising: callers
(HTTP controllers, CLIs, schedulers) get either the updated order/payment
snapshots or a structured error with a stable code. Authorization is the
caller's concern.

Error mapping:
- ValidationError / InvariantViolation / NotFoundError / ConflictError:
  rejected, logged at warning, nothing was changed
- GatewayError: logged at error; ``unknown_outcome`` marks a timeout
- CorruptAggregateError: logged at critical; the aggregate is flagged
- DuplicateEvent: not an error, acknowledged as ok
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Sequence

import structlog

from marketplace_settlement.config import Settings
from marketplace_settlement.core.coordinator import ReconciliationCoordinator
from marketplace_settlement.core.effects import SideEffectExecutor
from marketplace_settlement.core.orders import OrderWorkflow
from marketplace_settlement.core.payments import PaymentWorkflow
from marketplace_settlement.core.refunds import RefundDisputeManager
from marketplace_settlement.core.transactions import AggregateMutator
from marketplace_settlement.domain.errors import (
    ConflictError,
    CorruptAggregateError,
    DuplicateEvent,
    GatewayError,
    InvariantViolation,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from marketplace_settlement.domain.order import CartLine, OrderAggregate, OrderStatus, ShippingInfo, SubOrderStatus
from marketplace_settlement.domain.payment import DisputeStatus, PaymentAggregate, PaymentFees, RefundReason
from marketplace_settlement.domain.settlement import PriceAdjustments
from marketplace_settlement.domain.value_objects import Currency, Money
from marketplace_settlement.integrations.gateway import GatewayEvent
from marketplace_settlement.monitoring.logging import settlement_context

logger = structlog.get_logger(__name__)


@dataclass
class OperationResult:
    """Result-or-error of one service call, with fresh snapshots."""

    ok: bool
    status: str  # ok, duplicate, rejected, conflict, not_found, gateway_error, corrupt
    order: dict[str, Any] | None = None
    payment: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "status": self.status,
            "order": self.order,
            "payment": self.payment,
            "error": self.error,
            "data": self.data,
        }


@dataclass
class _Target:
    """Which aggregates to snapshot into the result."""

    order_id: str | None = None
    payment_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class SettlementService:
    def __init__(
        self,
        mutator: AggregateMutator,
        executor: SideEffectExecutor,
        orders: OrderWorkflow,
        payments: PaymentWorkflow,
        refunds: RefundDisputeManager,
        coordinator: ReconciliationCoordinator,
        settings: Settings,
    ):
        self.mutator = mutator
        self.executor = executor
        self.orders = orders
        self.payments = payments
        self.refunds = refunds
        self.coordinator = coordinator
        self.settings = settings

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _snapshot(self, target: _Target) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
        order: OrderAggregate | None = None
        payment: PaymentAggregate | None = None
        if target.order_id:
            order = await self.mutator.orders.get(target.order_id)
        if target.payment_id:
            payment = await self.mutator.payments.get(target.payment_id)
        elif order is not None:
            payment = await self.mutator.payments.get(order.payment.payment_id)
        if order is None and payment is not None:
            order = await self.mutator.orders.get(payment.order_id)
        return (
            order.snapshot() if order else None,
            payment.snapshot() if payment else None,
        )

    async def _safe_snapshot(self, target: _Target | None) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
        if target is None:
            return None, None
        try:
            return await self._snapshot(target)
        except NotFoundError:
            return None, None

    async def _run(
        self,
        operation: str,
        action: Callable[[], Awaitable[_Target]],
        context: _Target | None = None,
    ) -> OperationResult:
        log = logger.bind(operation=operation)
        ids = context or _Target()
        try:
            with settlement_context(operation=operation, order_id=ids.order_id, payment_id=ids.payment_id):
                target = await action()
        except DuplicateEvent as e:
            log.info("operation_duplicate", event_id=e.event_id)
            order, payment = await self._safe_snapshot(context)
            return OperationResult(ok=True, status="duplicate", order=order, payment=payment)
        except (ValidationError, InvariantViolation) as e:
            log.warning("operation_rejected", error_code=e.error_code, error=e.message)
            return await self._failure("rejected", e, context)
        except NotFoundError as e:
            log.warning("operation_target_not_found", error=e.message)
            return await self._failure("not_found", e, context)
        except ConflictError as e:
            log.warning("operation_conflict", error=e.message)
            return await self._failure("conflict", e, context)
        except GatewayError as e:
            log.error(
                "operation_gateway_error",
                error=e.message,
                gateway_operation=e.operation,
                unknown_outcome=e.unknown_outcome,
            )
            return await self._failure("gateway_error", e, context)
        except CorruptAggregateError as e:
            log.critical(
                "operation_halted_corrupt_aggregate",
                aggregate=e.aggregate,
                aggregate_id=e.aggregate_id,
                reason=e.reason,
            )
            return await self._failure("corrupt", e, context)

        order, payment = await self._snapshot(target)
        return OperationResult(ok=True, status="ok", order=order, payment=payment, data=target.data)

    async def _failure(self, status: str, error: SettlementError, context: _Target | None) -> OperationResult:
        order, payment = await self._safe_snapshot(context)
        return OperationResult(
            ok=False, status=status, order=order, payment=payment, error=error.to_dict()["error"]
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_order(
        self,
        buyer_id: str,
        lines: Sequence[CartLine | dict[str, Any]],
        payment_method: str,
        actor: str,
        currency: Currency | str | None = None,
        adjustments: PriceAdjustments | dict[str, Any] | None = None,
        shipping: ShippingInfo | dict[str, Any] | None = None,
    ) -> OperationResult:
        async def action() -> _Target:
            try:
                cart = [CartLine.model_validate(line) for line in lines]
                extra = PriceAdjustments.model_validate(adjustments) if adjustments is not None else None
                ship = ShippingInfo.model_validate(shipping) if shipping is not None else None
            except ValueError as e:
                raise ValidationError(f"Invalid checkout payload: {e}") from e
            order, payment = await self.orders.place_order(
                buyer_id, cart, payment_method, actor, currency, extra, ship
            )
            return _Target(order_id=order.id, payment_id=payment.id)

        return await self._run("place_order", action)

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus | str,
        actor: str,
        note: str | None = None,
        tracking_number: str | None = None,
        carrier: str | None = None,
    ) -> OperationResult:
        async def action() -> _Target:
            await self.orders.update_order_status(order_id, status, actor, note, tracking_number, carrier)
            return _Target(order_id=order_id)

        return await self._run("update_order_status", action, _Target(order_id=order_id))

    async def update_vendor_status(
        self,
        order_id: str,
        vendor_id: str,
        status: SubOrderStatus | str,
        actor: str,
        note: str | None = None,
        tracking_number: str | None = None,
        carrier: str | None = None,
    ) -> OperationResult:
        async def action() -> _Target:
            await self.orders.update_vendor_status(
                order_id, vendor_id, status, actor, note, tracking_number, carrier
            )
            return _Target(order_id=order_id)

        return await self._run("update_vendor_status", action, _Target(order_id=order_id))

    async def mark_item_delivered(self, order_id: str, item_id: str, actor: str) -> OperationResult:
        async def action() -> _Target:
            await self.orders.mark_item_delivered(order_id, item_id, actor)
            return _Target(order_id=order_id)

        return await self._run("mark_item_delivered", action, _Target(order_id=order_id))

    async def cancel_order(self, order_id: str, reason: str, actor: str) -> OperationResult:
        async def action() -> _Target:
            order = await self.orders.cancel_order(order_id, reason, actor)
            return _Target(order_id=order_id, data={"refund_id": order.cancellation_refund_id})

        return await self._run("cancel_order", action, _Target(order_id=order_id))

    async def get_order(self, order_id: str) -> OperationResult:
        async def action() -> _Target:
            return _Target(order_id=order_id)

        return await self._run("get_order", action)

    async def vendor_view(self, order_id: str, vendor_id: str) -> OperationResult:
        """Vendor projection only; the full order and payment are not exposed."""
        try:
            order = await self.mutator.orders.get(order_id)
            view = order.vendor_view(vendor_id)
        except NotFoundError as e:
            logger.warning("operation_target_not_found", operation="vendor_view", error=e.message)
            return OperationResult(ok=False, status="not_found", error=e.to_dict()["error"])
        return OperationResult(ok=True, status="ok", data=view)

    async def erase_order(self, order_id: str, actor: str) -> OperationResult:
        async def action() -> _Target:
            await self.orders.erase_order(order_id, actor)
            return _Target(order_id=order_id)

        return await self._run("erase_order", action, _Target(order_id=order_id))

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def authorize_payment(self, payment_id: str, actor: str) -> OperationResult:
        async def action() -> _Target:
            await self.payments.authorize_payment(payment_id, actor)
            return _Target(payment_id=payment_id)

        return await self._run("authorize_payment", action, _Target(payment_id=payment_id))

    async def confirm_payment(self, payment_id: str, actor: str) -> OperationResult:
        async def action() -> _Target:
            await self.payments.confirm_payment(payment_id, actor)
            return _Target(payment_id=payment_id)

        return await self._run("confirm_payment", action, _Target(payment_id=payment_id))

    async def capture_payment(self, payment_id: str, actor: str, amount: Money | None = None) -> OperationResult:
        async def action() -> _Target:
            await self.payments.capture_payment(payment_id, actor, amount)
            return _Target(payment_id=payment_id)

        return await self._run("capture_payment", action, _Target(payment_id=payment_id))

    async def void_payment(self, payment_id: str, actor: str, note: str | None = None) -> OperationResult:
        async def action() -> _Target:
            await self.payments.void_payment(payment_id, actor, note)
            return _Target(payment_id=payment_id)

        return await self._run("void_payment", action, _Target(payment_id=payment_id))

    async def expire_payment(self, payment_id: str, actor: str) -> OperationResult:
        async def action() -> _Target:
            await self.payments.expire_payment(payment_id, actor)
            return _Target(payment_id=payment_id)

        return await self._run("expire_payment", action, _Target(payment_id=payment_id))

    async def record_payment_fees(self, payment_id: str, fees: PaymentFees, actor: str) -> OperationResult:
        async def action() -> _Target:
            await self.payments.record_payment_fees(payment_id, fees, actor)
            return _Target(payment_id=payment_id)

        return await self._run("record_payment_fees", action, _Target(payment_id=payment_id))

    async def get_payment(self, payment_id: str) -> OperationResult:
        async def action() -> _Target:
            return _Target(payment_id=payment_id)

        return await self._run("get_payment", action)

    # ------------------------------------------------------------------
    # Refunds & disputes
    # ------------------------------------------------------------------

    async def request_refund(
        self,
        payment_id: str,
        amount: Money,
        reason: RefundReason | str,
        actor: str,
        refund_id: str | None = None,
    ) -> OperationResult:
        async def action() -> _Target:
            refund = await self.refunds.request_refund(payment_id, amount, reason, actor, refund_id)
            return _Target(
                payment_id=payment_id,
                data={"refund_id": refund.id, "refund_status": refund.status.value},
            )

        return await self._run("request_refund", action, _Target(payment_id=payment_id))

    async def open_dispute(
        self,
        payment_id: str,
        amount: Money,
        reason: str,
        actor: str,
        dispute_id: str | None = None,
        due_date: datetime | None = None,
    ) -> OperationResult:
        async def action() -> _Target:
            payment = await self.refunds.open_dispute(
                payment_id, amount, reason, actor, dispute_id=dispute_id, due_date=due_date
            )
            opened = dispute_id or max(payment.disputes.values(), key=lambda d: d.opened_at).id
            return _Target(payment_id=payment_id, data={"dispute_id": opened})

        return await self._run("open_dispute", action, _Target(payment_id=payment_id))

    async def review_dispute(self, payment_id: str, dispute_id: str, actor: str) -> OperationResult:
        async def action() -> _Target:
            await self.refunds.review_dispute(payment_id, dispute_id, actor)
            return _Target(payment_id=payment_id)

        return await self._run("review_dispute", action, _Target(payment_id=payment_id))

    async def resolve_dispute(
        self,
        payment_id: str,
        dispute_id: str,
        outcome: DisputeStatus | str,
        actor: str,
        note: str | None = None,
    ) -> OperationResult:
        async def action() -> _Target:
            await self.refunds.resolve_dispute(payment_id, dispute_id, outcome, actor, note)
            return _Target(payment_id=payment_id)

        return await self._run("resolve_dispute", action, _Target(payment_id=payment_id))

    # ------------------------------------------------------------------
    # Gateway events
    # ------------------------------------------------------------------

    async def apply_gateway_event(self, event: GatewayEvent) -> OperationResult:
        async def action() -> _Target:
            outcome = await self.coordinator.apply_gateway_event(event)
            return _Target(
                payment_id=outcome.payment.id if outcome.payment else None,
                data={"event_id": outcome.event_id, "outcome": outcome.status},
            )

        return await self._run("apply_gateway_event", action)

    async def handle_webhook(self, payload: bytes, signature: str) -> OperationResult:
        async def action() -> _Target:
            outcome = await self.coordinator.handle_webhook(payload, signature)
            return _Target(
                payment_id=outcome.payment.id if outcome.payment else None,
                data={"event_id": outcome.event_id, "outcome": outcome.status},
            )

        return await self._run("handle_webhook", action)

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------

    async def request_return(
        self,
        order_id: str,
        quantities: dict[str, int],
        reason: str,
        actor: str,
        note: str | None = None,
        return_id: str | None = None,
    ) -> OperationResult:
        async def action() -> _Target:
            _, created = await self.orders.request_return(order_id, quantities, reason, actor, note, return_id)
            return _Target(order_id=order_id, data={"return_id": created})

        return await self._run("request_return", action, _Target(order_id=order_id))

    async def approve_return(self, order_id: str, return_id: str, actor: str) -> OperationResult:
        async def action() -> _Target:
            await self.orders.approve_return(order_id, return_id, actor)
            return _Target(order_id=order_id)

        return await self._run("approve_return", action, _Target(order_id=order_id))

    async def reject_return(
        self, order_id: str, return_id: str, actor: str, note: str | None = None
    ) -> OperationResult:
        async def action() -> _Target:
            await self.orders.reject_return(order_id, return_id, actor, note)
            return _Target(order_id=order_id)

        return await self._run("reject_return", action, _Target(order_id=order_id))

    async def receive_return(self, order_id: str, return_id: str, actor: str) -> OperationResult:
        async def action() -> _Target:
            await self.orders.receive_return(order_id, return_id, actor)
            return _Target(order_id=order_id)

        return await self._run("receive_return", action, _Target(order_id=order_id))

    async def refund_return(self, order_id: str, return_id: str, actor: str) -> OperationResult:
        async def action() -> _Target:
            refund = await self.refunds.refund_return(order_id, return_id, actor)
            return _Target(
                order_id=order_id,
                data={"refund_id": refund.id, "refund_status": refund.status.value},
            )

        return await self._run("refund_return", action, _Target(order_id=order_id))

    # ------------------------------------------------------------------
    # Admin & scheduled
    # ------------------------------------------------------------------

    async def clear_reconciliation_flag(
        self, aggregate: str, aggregate_id: str, actor: str, note: str | None = None
    ) -> OperationResult:
        """Admin sign-off after fixing a flagged order or payment by hand."""

        async def action() -> _Target:
            if aggregate == "order":
                await self.mutator.mutate_order(
                    aggregate_id,
                    lambda o: o.clear_reconciliation_flag(actor, note) or [],
                    allow_flagged=True,
                )
                return _Target(order_id=aggregate_id)
            if aggregate == "payment":
                await self.mutator.mutate_payment(
                    aggregate_id,
                    lambda p: p.clear_reconciliation_flag(actor, note) or [],
                    allow_flagged=True,
                )
                return _Target(payment_id=aggregate_id)
            raise ValidationError(f"Unknown aggregate type {aggregate!r}")

        logger.info("reconciliation_flag_clear_requested", aggregate=aggregate, aggregate_id=aggregate_id, actor=actor)
        return await self._run("clear_reconciliation_flag", action)

    async def retry_deferred(self, limit: int = 100) -> dict[str, int]:
        return await self.executor.retry_deferred(limit)

    async def expire_stale_payments(self, now: datetime | None = None) -> dict[str, int]:
        return await self.coordinator.expire_stale_payments(now)

    async def retry_pending_refunds(self) -> dict[str, int]:
        return await self.refunds.retry_pending_refunds()
