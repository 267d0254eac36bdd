"""
Aggregate repositories - versioned document storage.

Each aggregate is stored as one JSON document plus the events its last
writes produced. The stored version equals the number of events ever
committed for the aggregate, so it doubles as the last event sequence number.

Optimistic concurrency:
    T0: worker A loads payment (version 5)
    T0: webhook B loads payment (version 5)
    T1: A saves 1 event  → version 6 ✓
    T2: B saves at 5     → ConcurrencyError, B reloads and re-applies
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, Protocol, TypeVar

import structlog

from marketplace_settlement.domain.aggregate import AggregateRoot
from marketplace_settlement.domain.errors import ConcurrencyError, NotFoundError
from marketplace_settlement.domain.events import DomainEvent
from marketplace_settlement.domain.order import OrderAggregate
from marketplace_settlement.domain.payment import PaymentAggregate, PaymentStatus, RefundStatus

logger = structlog.get_logger(__name__)

A = TypeVar("A", bound=AggregateRoot)


class OrderRepository(Protocol):
    """Interface for order storage (PostgreSQL, in-memory)."""

    async def get(self, order_id: str) -> OrderAggregate:
        """Load the latest version. Raises NotFoundError."""
        ...

    async def save(self, order: OrderAggregate) -> None:
        """
        Persist uncommitted events and the new snapshot.

        CRITICAL: rejects the write with ConcurrencyError when the stored
        version differs from ``order.version``.
        """
        ...

    async def list_flagged(self) -> list[OrderAggregate]:
        ...


class PaymentRepository(Protocol):
    """Interface for payment storage (PostgreSQL, in-memory)."""

    async def get(self, payment_id: str) -> PaymentAggregate:
        ...

    async def save(self, payment: PaymentAggregate) -> None:
        ...

    async def get_by_transaction_id(self, transaction_id: str) -> PaymentAggregate | None:
        ...

    async def get_by_order_id(self, order_id: str) -> PaymentAggregate | None:
        ...

    async def list_stale_pending(self, created_before: datetime) -> list[PaymentAggregate]:
        """Payments still waiting for the buyer (or the gateway) past the cutoff."""
        ...

    async def list_with_pending_refunds(self) -> list[PaymentAggregate]:
        ...

    async def list_flagged(self) -> list[PaymentAggregate]:
        ...


# ============================================================================
# IN-MEMORY IMPLEMENTATIONS (for testing and local development)
# ============================================================================


class InMemoryAggregateRepository(Generic[A]):
    """
    In-memory versioned document store.

    Snapshots are kept as JSON strings so a loaded aggregate never shares
    mutable state with what is stored, exactly like a database round trip.
    """

    aggregate_class: type[A]

    def __init__(self) -> None:
        self._documents: dict[str, tuple[int, str]] = {}
        self._events: dict[str, list[DomainEvent]] = {}

    async def get(self, aggregate_id: str) -> A:
        if aggregate_id not in self._documents:
            raise NotFoundError(self.aggregate_class.aggregate_type, aggregate_id)
        version, document = self._documents[aggregate_id]
        aggregate = self.aggregate_class.model_validate_json(document)
        aggregate.version = version
        return aggregate

    async def save(self, aggregate: A) -> None:
        events = aggregate.get_uncommitted_events()
        if not events:
            return

        # A stored document always has version >= 1, so a second insert of
        # the same id fails the same check as a stale update.
        current = self._documents.get(aggregate.id, (0, ""))[0]
        expected = aggregate.version
        if current != expected:
            raise ConcurrencyError(aggregate.id, expected, current)

        new_version = expected + len(events)
        aggregate.version = new_version
        self._documents[aggregate.id] = (new_version, aggregate.model_dump_json())
        self._events.setdefault(aggregate.id, []).extend(events)
        aggregate.mark_events_committed()

        logger.debug(
            "aggregate_saved",
            aggregate_type=aggregate.aggregate_type,
            aggregate_id=aggregate.id,
            version=new_version,
            events=len(events),
        )

    async def all(self) -> list[A]:
        return [await self.get(aggregate_id) for aggregate_id in self._documents]

    async def list_flagged(self) -> list[A]:
        return [a for a in await self.all() if a.needs_reconciliation]

    def get_events(self, aggregate_id: str) -> list[DomainEvent]:
        """Helper for testing: committed events of one aggregate."""
        return list(self._events.get(aggregate_id, []))

    def stored_version(self, aggregate_id: str) -> int | None:
        """Helper for testing: version currently on record."""
        if aggregate_id not in self._documents:
            return None
        return self._documents[aggregate_id][0]


class InMemoryOrderRepository(InMemoryAggregateRepository[OrderAggregate]):
    aggregate_class = OrderAggregate


class InMemoryPaymentRepository(InMemoryAggregateRepository[PaymentAggregate]):
    aggregate_class = PaymentAggregate

    async def get_by_transaction_id(self, transaction_id: str) -> PaymentAggregate | None:
        for payment in await self.all():
            if payment.transaction_id == transaction_id:
                return payment
        return None

    async def get_by_order_id(self, order_id: str) -> PaymentAggregate | None:
        for payment in await self.all():
            if payment.order_id == order_id:
                return payment
        return None

    async def list_stale_pending(self, created_before: datetime) -> list[PaymentAggregate]:
        waiting = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.AUTHORIZED)
        return [
            p for p in await self.all() if p.status in waiting and p.created_at < created_before
        ]

    async def list_with_pending_refunds(self) -> list[PaymentAggregate]:
        return [
            p
            for p in await self.all()
            if any(r.status == RefundStatus.PENDING for r in p.refunds.values())
        ]
