"""
SQLAlchemy adapters: aggregate repositories, processed-event ledger and the
deferred command queue.

Writes go through one transaction per save:
1. ``INSERT`` (version 0) or ``UPDATE ... WHERE id = :id AND version = :expected``
2. one ``outbox_events`` row per uncommitted domain event
Either both land or neither does.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_settlement.domain.aggregate import AggregateRoot
from marketplace_settlement.domain.effects import SideEffect
from marketplace_settlement.domain.errors import ConcurrencyError, NotFoundError
from marketplace_settlement.domain.order import OrderAggregate
from marketplace_settlement.domain.payment import PaymentAggregate, PaymentStatus
from marketplace_settlement.domain.value_objects import utcnow
from marketplace_settlement.infrastructure.deferred_queue import DeferredCommand, next_attempt_at
from marketplace_settlement.infrastructure.models import (
    DeferredCommandRecord,
    OrderRecord,
    OutboxEvent,
    PaymentRecord,
    ProcessedEvent,
)

logger = structlog.get_logger(__name__)

A = TypeVar("A", bound=AggregateRoot)


class SqlAlchemyAggregateRepository(Generic[A]):
    """Versioned document repository on top of an async session factory."""

    aggregate_class: type[A]
    record_class: Any

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def _columns(self, aggregate: A) -> dict[str, Any]:
        """Indexed columns kept next to the document."""
        return {"status": aggregate.status.value, "needs_reconciliation": aggregate.needs_reconciliation}

    def _to_aggregate(self, record: Any) -> A:
        aggregate = self.aggregate_class.model_validate(record.document)
        aggregate.version = record.version
        return aggregate

    async def get(self, aggregate_id: str) -> A:
        async with self.session_factory() as db:
            record = await db.get(self.record_class, aggregate_id)
            if record is None:
                raise NotFoundError(self.aggregate_class.aggregate_type, aggregate_id)
            return self._to_aggregate(record)

    async def _select(self, *criteria: Any) -> list[A]:
        async with self.session_factory() as db:
            result = await db.execute(select(self.record_class).where(*criteria))
            return [self._to_aggregate(record) for record in result.scalars().all()]

    async def list_flagged(self) -> list[A]:
        return await self._select(self.record_class.needs_reconciliation.is_(True))

    async def save(self, aggregate: A) -> None:
        events = aggregate.get_uncommitted_events()
        if not events:
            return

        expected = aggregate.version
        new_version = expected + len(events)
        document = aggregate.model_dump(mode="json")
        document["version"] = new_version
        columns = self._columns(aggregate)

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    if expected == 0:
                        db.add(
                            self.record_class(
                                id=aggregate.id,
                                version=new_version,
                                document=document,
                                created_at=aggregate.created_at,
                                **columns,
                            )
                        )
                        await db.flush()
                    else:
                        result = await db.execute(
                            update(self.record_class)
                            .where(
                                self.record_class.id == aggregate.id,
                                self.record_class.version == expected,
                            )
                            .values(version=new_version, document=document, **columns)
                        )
                        if result.rowcount != 1:
                            current = await db.scalar(
                                select(self.record_class.version).where(self.record_class.id == aggregate.id)
                            )
                            raise ConcurrencyError(aggregate.id, expected, current)

                    db.add_all(
                        OutboxEvent(
                            event_id=event.metadata.event_id,
                            aggregate_id=aggregate.id,
                            aggregate_type=aggregate.aggregate_type,
                            event_type=event.event_type,
                            sequence_number=event.metadata.sequence_number,
                            payload=event.model_dump(mode="json"),
                        )
                        for event in events
                    )
        except IntegrityError as e:
            # Duplicate primary key on insert: somebody created it first
            logger.warning("aggregate_insert_conflict", aggregate_id=aggregate.id, error=str(e.orig))
            raise ConcurrencyError(aggregate.id, expected, None) from e

        aggregate.version = new_version
        aggregate.mark_events_committed()
        logger.debug(
            "aggregate_saved",
            aggregate_type=aggregate.aggregate_type,
            aggregate_id=aggregate.id,
            version=new_version,
            events=len(events),
        )


class SqlAlchemyOrderRepository(SqlAlchemyAggregateRepository[OrderAggregate]):
    aggregate_class = OrderAggregate
    record_class = OrderRecord

    def _columns(self, aggregate: OrderAggregate) -> dict[str, Any]:
        return {
            **super()._columns(aggregate),
            "order_number": aggregate.order_number,
            "buyer_id": aggregate.buyer_id,
        }


class SqlAlchemyPaymentRepository(SqlAlchemyAggregateRepository[PaymentAggregate]):
    aggregate_class = PaymentAggregate
    record_class = PaymentRecord

    def _columns(self, aggregate: PaymentAggregate) -> dict[str, Any]:
        return {
            **super()._columns(aggregate),
            "order_id": aggregate.order_id,
            "transaction_id": aggregate.transaction_id,
            "has_pending_refunds": bool(aggregate.pending_refunds),
        }

    async def _first(self, *criteria: Any) -> PaymentAggregate | None:
        found = await self._select(*criteria)
        return found[0] if found else None

    async def get_by_transaction_id(self, transaction_id: str) -> PaymentAggregate | None:
        return await self._first(PaymentRecord.transaction_id == transaction_id)

    async def get_by_order_id(self, order_id: str) -> PaymentAggregate | None:
        return await self._first(PaymentRecord.order_id == order_id)

    async def list_stale_pending(self, created_before: datetime) -> list[PaymentAggregate]:
        waiting = [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value, PaymentStatus.AUTHORIZED.value]
        return await self._select(
            PaymentRecord.status.in_(waiting),
            PaymentRecord.created_at < created_before,
        )

    async def list_with_pending_refunds(self) -> list[PaymentAggregate]:
        return await self._select(PaymentRecord.has_pending_refunds.is_(True))


class SqlProcessedEventLog:
    """Processed-event ledger in the ``processed_events`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_outcome(self, event_id: str) -> str | None:
        async with self.session_factory() as db:
            return await db.scalar(select(ProcessedEvent.outcome).where(ProcessedEvent.event_id == event_id))

    async def record(self, event_id: str, outcome: str) -> bool:
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    db.add(ProcessedEvent(event_id=event_id, outcome=outcome, processed_at=utcnow()))
        except IntegrityError:
            logger.info("processed_event_already_recorded", event_id=event_id)
            return False
        return True


class SqlDeferredCommandQueue:
    """Deferred command queue in the ``deferred_commands`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def enqueue(self, effect: SideEffect, error: str | None = None) -> str:
        command = DeferredCommand(
            kind=effect.kind,
            payload=effect.model_dump(mode="json"),
            attempts=1 if error else 0,
            last_error=error,
        )
        async with self.session_factory() as db:
            async with db.begin():
                db.add(DeferredCommandRecord(**command.model_dump()))
        logger.info("deferred_command_enqueued", command_id=command.id, kind=command.kind, error=error)
        return command.id

    async def due(self, limit: int = 100, now: datetime | None = None) -> list[DeferredCommand]:
        stmt = (
            select(DeferredCommandRecord)
            .where(
                DeferredCommandRecord.status == "pending",
                DeferredCommandRecord.next_attempt_at <= (now or utcnow()),
            )
            .order_by(DeferredCommandRecord.created_at)
            .limit(limit)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return [
                DeferredCommand(
                    id=r.id,
                    kind=r.kind,
                    payload=r.payload,
                    status=r.status,
                    attempts=r.attempts,
                    last_error=r.last_error,
                    next_attempt_at=r.next_attempt_at,
                    created_at=r.created_at,
                )
                for r in result.scalars().all()
            ]

    async def mark_done(self, command_id: str) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(DeferredCommandRecord)
                    .where(DeferredCommandRecord.id == command_id)
                    .values(status="done")
                )

    async def mark_failed(self, command_id: str, error: str, max_attempts: int) -> bool:
        async with self.session_factory() as db:
            async with db.begin():
                record = await db.get(DeferredCommandRecord, command_id)
                if record is None:
                    raise NotFoundError("deferred_command", command_id)
                record.attempts += 1
                record.last_error = error
                record.next_attempt_at = next_attempt_at(record.attempts)
                dead = record.attempts >= max_attempts
                if dead:
                    record.status = "dead"
        return dead

    async def pending_count(self) -> int:
        async with self.session_factory() as db:
            count = await db.scalar(
                select(func.count()).select_from(DeferredCommandRecord).where(DeferredCommandRecord.status == "pending")
            )
            return int(count or 0)
