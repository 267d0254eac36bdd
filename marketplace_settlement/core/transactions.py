"""
Aggregate mutation unit: load → verify → apply → save, retried on conflict.

Every state change in the settlement core goes through ``AggregateMutator``.
It guarantees:
- the transition runs against the latest stored version (reload on conflict)
- a flagged or already-corrupt aggregate is never mutated
- an external event id is stored in the same write as its effect
- side-effect intents are returned only for the attempt that committed
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

import structlog

from marketplace_settlement.config import Settings
from marketplace_settlement.core.retry import run_with_conflict_retry
from marketplace_settlement.domain.aggregate import AggregateRoot
from marketplace_settlement.domain.effects import OrderPaymentSync, SideEffect
from marketplace_settlement.domain.errors import CorruptAggregateError, DuplicateEvent
from marketplace_settlement.domain.events import DomainEvent, OrderStatusChanged, PaymentStatusChanged
from marketplace_settlement.domain.order import OrderAggregate
from marketplace_settlement.domain.payment import PaymentAggregate
from marketplace_settlement.infrastructure.repository import OrderRepository, PaymentRepository
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

A = TypeVar("A", bound=AggregateRoot)

MutationReturn = Union[list[SideEffect], None]
Mutation = Callable[[A], Union[MutationReturn, Awaitable[MutationReturn]]]


@dataclass
class MutationOutcome(Generic[A]):
    """Result of one committed (or skipped) mutation."""

    aggregate: A
    effects: list[SideEffect] = field(default_factory=list)
    events: list[DomainEvent] = field(default_factory=list)
    applicable: bool = True  # False when the mutation declared itself not applicable

    @property
    def changed(self) -> bool:
        return bool(self.events)


class AggregateMutator:
    def __init__(self, orders: OrderRepository, payments: PaymentRepository, settings: Settings):
        self.orders = orders
        self.payments = payments
        self.settings = settings

    async def mutate_order(
        self,
        order_id: str,
        mutation: Mutation[OrderAggregate],
        event_id: str | None = None,
        allow_flagged: bool = False,
    ) -> MutationOutcome[OrderAggregate]:
        return await self._mutate(self.orders, "order", order_id, mutation, event_id, allow_flagged)

    async def mutate_payment(
        self,
        payment_id: str,
        mutation: Mutation[PaymentAggregate],
        event_id: str | None = None,
        allow_flagged: bool = False,
    ) -> MutationOutcome[PaymentAggregate]:
        return await self._mutate(self.payments, "payment", payment_id, mutation, event_id, allow_flagged)

    async def _guard(self, repository: Any, kind: str, aggregate: AggregateRoot) -> None:
        """Halt on flagged aggregates; flag the ones whose stored state is already broken."""
        if aggregate.needs_reconciliation:
            raise CorruptAggregateError(kind, aggregate.id, aggregate.reconciliation_reason or "flagged")
        try:
            aggregate.verify_integrity()
        except CorruptAggregateError as e:
            logger.critical(
                "aggregate_integrity_violation",
                aggregate=kind,
                aggregate_id=aggregate.id,
                reason=e.reason,
            )
            aggregate.flag_for_reconciliation(e.reason)
            await repository.save(aggregate)
            metrics.record_flagged(kind)
            raise

    async def _mutate(
        self,
        repository: Any,
        kind: str,
        aggregate_id: str,
        mutation: Mutation[A],
        event_id: str | None,
        allow_flagged: bool,
    ) -> MutationOutcome[A]:
        async def attempt() -> MutationOutcome[A]:
            aggregate = await repository.get(aggregate_id)
            if not allow_flagged:
                await self._guard(repository, kind, aggregate)
            if event_id and aggregate.has_applied(event_id):
                raise DuplicateEvent(event_id)

            result = mutation(aggregate)
            if inspect.isawaitable(result):
                result = await result

            events = aggregate.get_uncommitted_events()
            if events and event_id:
                aggregate.mark_event_applied(event_id)
            await repository.save(aggregate)
            return MutationOutcome(
                aggregate=aggregate,
                effects=list(result or []),
                events=events,
                applicable=result is not None,
            )

        outcome = await run_with_conflict_retry(
            attempt,
            aggregate=kind,
            aggregate_id=aggregate_id,
            max_attempts=self.settings.max_conflict_retries,
            base_delay=self.settings.conflict_retry_base_delay,
        )
        self._record_transitions(outcome.events)
        return outcome

    @staticmethod
    def _record_transitions(events: list[DomainEvent]) -> None:
        for event in events:
            if isinstance(event, OrderStatusChanged):
                metrics.record_order_transition(event.from_status, event.to_status)
                logger.info(
                    "order_status_changed",
                    order_id=event.metadata.aggregate_id,
                    from_status=event.from_status,
                    to_status=event.to_status,
                    actor=event.metadata.actor,
                )
            elif isinstance(event, PaymentStatusChanged):
                metrics.record_payment_transition(event.from_status, event.to_status)
                logger.info(
                    "payment_status_changed",
                    payment_id=event.metadata.aggregate_id,
                    from_status=event.from_status,
                    to_status=event.to_status,
                    actor=event.metadata.actor,
                )


def with_order_sync(
    outcome: MutationOutcome[PaymentAggregate], actor: str, note: str | None = None
) -> list[SideEffect]:
    """Effects of a payment write, followed by the dependent order update when anything changed."""
    effects = list(outcome.effects)
    if outcome.changed:
        payment = outcome.aggregate
        effects.append(
            OrderPaymentSync(order_id=payment.order_id, payment_id=payment.id, actor=actor, note=note)
        )
    return effects
