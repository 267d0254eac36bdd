"""
Domain Events - Immutable Facts About What Happened

Every aggregate mutation records an event. Events are what repositories
persist alongside the aggregate snapshot (same write, same version check),
and what metrics and downstream consumers read.

Design principle: events describe PAST FACTS.
- Good: OrderStatusChanged (past tense, immutable fact)
- Bad: ChangeOrderStatus (command, not event)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from marketplace_settlement.domain.value_objects import utcnow

AggregateType = Literal["order", "payment"]


class EventMetadata(BaseModel):
    """Metadata attached to every event."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    aggregate_id: str
    aggregate_type: AggregateType
    sequence_number: int  # Aggregate version this event produces
    occurred_at: datetime = Field(default_factory=utcnow)
    actor: str | None = None  # Who triggered this? (for audit)


class DomainEvent(BaseModel):
    """Base class for all domain events."""

    model_config = ConfigDict(frozen=True)

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        return self.metadata.event_type


# ============================================================================
# ORDER EVENTS
# ============================================================================


class OrderPlaced(DomainEvent):
    """Order created from a cart snapshot. Always the first order event."""

    order_number: str
    buyer_id: str
    total: str
    currency: str
    vendor_ids: list[str]


class OrderStatusChanged(DomainEvent):
    from_status: str
    to_status: str
    note: str | None = None


class OrderAmended(DomainEvent):
    """Non-status change: tracking, returns, payment summary, review flags."""

    change: str
    details: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# PAYMENT EVENTS
# ============================================================================


class PaymentInitiated(DomainEvent):
    order_id: str
    amount: str
    currency: str
    method: str


class PaymentStatusChanged(DomainEvent):
    from_status: str
    to_status: str
    note: str | None = None


class RefundRecorded(DomainEvent):
    refund_id: str
    amount: str
    status: str


class DisputeRecorded(DomainEvent):
    dispute_id: str
    amount: str
    status: str


class PaymentAmended(DomainEvent):
    change: str
    details: dict[str, Any] = Field(default_factory=dict)


def create_event_metadata(
    event_type: str,
    aggregate_id: str,
    aggregate_type: AggregateType,
    sequence_number: int,
    actor: str | None = None,
) -> EventMetadata:
    """Helper to build metadata with a fresh event id and UTC timestamp."""
    return EventMetadata(
        event_type=event_type,
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        sequence_number=sequence_number,
        actor=actor,
    )
