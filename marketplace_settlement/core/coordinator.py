"""
Reconciliation Coordinator - applies external truth idempotently.

Gateway events arrive late, twice, and out of order. For each one:

1. Check the processed-event ledger. A known id is acknowledged as a
   duplicate without touching any aggregate.
2. Map the event to exactly one payment transition. The event id is stored
   on the payment in the same versioned write, so two concurrent deliveries
   of the same event cannot both apply (the loser sees DuplicateEvent after
   its conflict retry).
3. A transition that no longer applies (event overtaken by a later one) is
   acknowledged as ignored; it never moves the payment backwards.
4. Record the id in the ledger, then run side effects and bring the order
   in line. Failures there are deferred, never rolled back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog

from marketplace_settlement.config import Settings
from marketplace_settlement.core.effects import SideEffectExecutor
from marketplace_settlement.core.payments import VOIDABLE, PaymentWorkflow
from marketplace_settlement.core.transactions import AggregateMutator, with_order_sync
from marketplace_settlement.domain.effects import SideEffect
from marketplace_settlement.domain.errors import (
    DuplicateEvent,
    IllegalTransition,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from marketplace_settlement.domain.payment import (
    ACTIVE_DISPUTE,
    GATEWAY_SUCCESS_FROM,
    PRE_COMPLETED,
    Distribution,
    DisputeStatus,
    PaymentAggregate,
    PaymentStatus,
    RefundStatus,
)
from marketplace_settlement.domain.value_objects import Money, generate_reference, utcnow
from marketplace_settlement.infrastructure.event_log import ProcessedEventLog
from marketplace_settlement.integrations.gateway import GatewayEvent, PaymentGateway
from marketplace_settlement.monitoring.logging import settlement_context
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

GATEWAY_ACTOR = "gateway"

DISPUTE_WON = frozenset({"won", "warning_closed"})
DISPUTE_LOST = frozenset({"lost", "charge_refunded"})

EventHandler = Callable[[PaymentAggregate, GatewayEvent, Distribution], "list[SideEffect] | None"]


@dataclass
class EventOutcome:
    """How an inbound gateway event was handled."""

    event_id: str
    status: str  # applied, duplicate, ignored, acknowledged
    payment: PaymentAggregate | None = None


def _money(payment: PaymentAggregate, cents: int | None) -> Money | None:
    if cents is None:
        return None
    return Money.from_cents(cents, payment.amount.currency)


def _require_fields(event: GatewayEvent, data: dict, *fields: str) -> None:
    """Raise ValidationError when a gateway payload lacks what its handler reads."""
    missing = [f for f in fields if data.get(f) is None]
    if missing:
        raise ValidationError(
            f"Event {event.event_id} ({event.type}) is missing {', '.join(missing)}",
            event_id=event.event_id,
        )
    for f in fields:
        if f.endswith("_cents") and (isinstance(data[f], bool) or not isinstance(data[f], int)):
            raise ValidationError(
                f"Event {event.event_id} ({event.type}) has a non-integer {f}",
                event_id=event.event_id,
            )


# ----------------------------------------------------------------------
# Event → transition handlers. Return None when the event no longer applies.
# ----------------------------------------------------------------------


def _on_authorized(payment: PaymentAggregate, event: GatewayEvent, _: Distribution) -> list[SideEffect] | None:
    if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        return None
    return payment.authorize(event.transaction_id, GATEWAY_ACTOR)


def _on_processing(payment: PaymentAggregate, event: GatewayEvent, _: Distribution) -> list[SideEffect] | None:
    if payment.status != PaymentStatus.PENDING:
        return None
    return payment.mark_processing(event.transaction_id, GATEWAY_ACTOR)


def _on_succeeded(
    payment: PaymentAggregate, event: GatewayEvent, distribution: Distribution
) -> list[SideEffect] | None:
    if payment.status not in GATEWAY_SUCCESS_FROM:
        return None
    payment.attach_transaction(event.transaction_id)
    received = _money(payment, event.payload.get("amount_received_cents"))
    effects: list[SideEffect] = []
    if (
        payment.status == PaymentStatus.AUTHORIZED
        and received is not None
        and received.is_positive
        and received < payment.amount
    ):
        effects += payment.capture(received, GATEWAY_ACTOR)
        effects += payment.complete(GATEWAY_ACTOR, distribution=distribution)
        return effects
    return payment.complete(GATEWAY_ACTOR, distribution=distribution, from_gateway=True)


def _on_failed(payment: PaymentAggregate, event: GatewayEvent, _: Distribution) -> list[SideEffect] | None:
    if payment.status not in PRE_COMPLETED:
        return None
    payment.attach_transaction(event.transaction_id)
    return payment.fail(event.payload.get("failure_reason") or "Declined by gateway", GATEWAY_ACTOR)


def _on_cancelled(payment: PaymentAggregate, event: GatewayEvent, _: Distribution) -> list[SideEffect] | None:
    if payment.status not in VOIDABLE:
        return None
    return payment.void(GATEWAY_ACTOR, "Cancelled at gateway")


def _on_refunded(payment: PaymentAggregate, event: GatewayEvent, _: Distribution) -> list[SideEffect] | None:
    effects: list[SideEffect] = []
    for entry in event.payload.get("refunds", []):
        status = entry.get("status")
        reference = (entry.get("reference") or "").split(":", 1)[0] or None
        if status == "succeeded":
            _require_fields(event, entry, "gateway_refund_id", "amount_cents")
            effects += payment.record_gateway_refund(
                entry["gateway_refund_id"],
                Money.from_cents(entry["amount_cents"], payment.amount.currency),
                GATEWAY_ACTOR,
                reference=reference,
            )
        elif status in ("failed", "canceled") and reference in payment.refunds:
            if payment.refunds[reference].status == RefundStatus.PENDING:
                effects += payment.fail_refund(reference, f"Refund {status} at gateway", GATEWAY_ACTOR)
    return effects


def _on_dispute_created(
    payment: PaymentAggregate, event: GatewayEvent, _: Distribution
) -> list[SideEffect] | None:
    payload = event.payload
    _require_fields(event, payload, "dispute_id", "amount_cents")
    due_date = payload.get("due_date")
    return payment.open_dispute(
        generate_reference("DIS"),
        Money.from_cents(payload["amount_cents"], payment.amount.currency),
        payload.get("reason") or "unspecified",
        GATEWAY_ACTOR,
        gateway_dispute_id=payload["dispute_id"],
        due_date=datetime.fromisoformat(due_date) if due_date else None,
    )


def _on_dispute_updated(
    payment: PaymentAggregate, event: GatewayEvent, _: Distribution
) -> list[SideEffect] | None:
    _require_fields(event, event.payload, "dispute_id")
    dispute = payment.find_dispute_by_gateway_id(event.payload["dispute_id"])
    if dispute is None or dispute.status not in ACTIVE_DISPUTE:
        return None
    if event.payload.get("status") != "under_review":
        return None
    return payment.review_dispute(dispute.id, GATEWAY_ACTOR)


def _on_dispute_closed(
    payment: PaymentAggregate, event: GatewayEvent, _: Distribution
) -> list[SideEffect] | None:
    _require_fields(event, event.payload, "dispute_id")
    dispute = payment.find_dispute_by_gateway_id(event.payload["dispute_id"])
    if dispute is None:
        return None
    status = event.payload.get("status")
    if status in DISPUTE_WON:
        outcome = DisputeStatus.WON
    elif status in DISPUTE_LOST:
        outcome = DisputeStatus.LOST
    else:
        return None
    return payment.resolve_dispute(dispute.id, outcome, GATEWAY_ACTOR, note=f"Closed at gateway: {status}")


EVENT_HANDLERS: dict[str, EventHandler] = {
    "payment_intent.amount_capturable_updated": _on_authorized,
    "payment_intent.processing": _on_processing,
    "payment_intent.succeeded": _on_succeeded,
    "payment_intent.payment_failed": _on_failed,
    "payment_intent.canceled": _on_cancelled,
    "charge.refunded": _on_refunded,
    "charge.dispute.created": _on_dispute_created,
    "charge.dispute.updated": _on_dispute_updated,
    "charge.dispute.closed": _on_dispute_closed,
}

ACKNOWLEDGED_ONLY = frozenset({"payout.paid"})


class ReconciliationCoordinator:
    def __init__(
        self,
        mutator: AggregateMutator,
        gateway: PaymentGateway,
        ledger: ProcessedEventLog,
        executor: SideEffectExecutor,
        payments: PaymentWorkflow,
        settings: Settings,
    ):
        self.mutator = mutator
        self.gateway = gateway
        self.ledger = ledger
        self.executor = executor
        self.payments = payments
        self.settings = settings

    async def handle_webhook(self, payload: bytes, signature: str) -> EventOutcome:
        """Verify, then apply. Unverified payloads never reach an aggregate."""
        event = self.gateway.verify_webhook(payload, signature)
        return await self.apply_gateway_event(event)

    async def _find_payment(self, event: GatewayEvent) -> PaymentAggregate:
        if not event.transaction_id:
            raise ValidationError(f"Event {event.event_id} ({event.type}) carries no transaction id")
        payment = await self.mutator.payments.get_by_transaction_id(event.transaction_id)
        if payment is None and event.payload.get("order_id"):
            # Webhook may beat the authorize response that attaches the transaction
            payment = await self.mutator.payments.get_by_order_id(event.payload["order_id"])
        if payment is None:
            raise NotFoundError("payment", f"transaction:{event.transaction_id}")
        return payment

    async def _acknowledge(self, event: GatewayEvent, status: str, payment: PaymentAggregate | None = None) -> EventOutcome:
        await self.ledger.record(event.event_id, status)
        metrics.record_gateway_event(event.type, status)
        return EventOutcome(event_id=event.event_id, status=status, payment=payment)

    async def apply_gateway_event(self, event: GatewayEvent) -> EventOutcome:
        with settlement_context(event_id=event.event_id):
            return await self._apply(event)

    async def _apply(self, event: GatewayEvent) -> EventOutcome:
        log = logger.bind(event_id=event.event_id, event_type=event.type, transaction_id=event.transaction_id)

        if await self.ledger.get_outcome(event.event_id) is not None:
            log.info("gateway_event_duplicate")
            metrics.record_gateway_event(event.type, "duplicate")
            return EventOutcome(event_id=event.event_id, status="duplicate")

        if event.type in ACKNOWLEDGED_ONLY:
            log.info("gateway_event_acknowledged", payload=event.payload)
            return await self._acknowledge(event, "acknowledged")

        handler = EVENT_HANDLERS.get(event.type)
        if handler is None:
            log.info("gateway_event_unhandled")
            return await self._acknowledge(event, "ignored")

        try:
            payment = await self._find_payment(event)
            distribution = await self.payments.distribution_for(payment)
            outcome = await self.mutator.mutate_payment(
                payment.id,
                lambda p: handler(p, event, distribution),
                event_id=event.event_id,
            )
        except DuplicateEvent:
            log.info("gateway_event_already_applied")
            return await self._acknowledge(event, "duplicate")
        except IllegalTransition as e:
            log.warning("gateway_event_out_of_order", error=e.message)
            return await self._acknowledge(event, "ignored")
        except SettlementError as e:
            metrics.record_gateway_event(event.type, "failed")
            log.error("gateway_event_failed", error_code=e.error_code, error=e.message)
            raise

        payment = outcome.aggregate
        if not outcome.applicable:
            log.info("gateway_event_superseded", payment_status=payment.status.value)
            return await self._acknowledge(event, "ignored", payment)

        result = await self._acknowledge(event, "applied", payment)
        log.info("gateway_event_applied", payment_id=payment.id, payment_status=payment.status.value)
        await self.executor.execute(with_order_sync(outcome, GATEWAY_ACTOR, event.type))
        return result

    async def expire_stale_payments(self, now: datetime | None = None) -> dict[str, int]:
        """Scheduled: expire payments the buyer abandoned past the payment window."""
        cutoff = (now or utcnow()) - timedelta(minutes=self.settings.payment_expiry_minutes)
        stats = {"expired": 0, "settled": 0, "failed": 0}
        for payment in await self.mutator.payments.list_stale_pending(cutoff):
            try:
                updated = await self.payments.expire_payment(payment.id, "system:expiry")
            except SettlementError as e:
                stats["failed"] += 1
                logger.warning(
                    "payment_expiry_failed",
                    payment_id=payment.id,
                    error_code=e.error_code,
                    error=e.message,
                )
                continue
            stats["expired" if updated.status == PaymentStatus.EXPIRED else "settled"] += 1
        logger.info("stale_payments_processed", cutoff=cutoff.isoformat(), **stats)
        return stats

