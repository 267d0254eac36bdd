"""
Aggregate root base.

One aggregate = one consistency boundary = one versioned document.

- ``version`` is the stored version the aggregate was loaded at. A write
  supplies it and is rejected if somebody else wrote first.
- Every mutation records a domain event. A save with no uncommitted events
  is skipped, so replaying a no-op transition never bumps the version.
- ``applied_event_ids`` lives in the same document as the state it guards,
  which makes "apply gateway event X" and "remember X was applied" a single
  atomic write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from marketplace_settlement.domain.events import AggregateType, DomainEvent, create_event_metadata
from marketplace_settlement.domain.value_objects import utcnow

# Bounded so long-lived payments do not grow without limit; the processed
# event ledger remembers older ids.
MAX_APPLIED_EVENT_IDS = 200


class StatusEntry(BaseModel):
    """One line of the append-only status history."""

    model_config = ConfigDict(frozen=True)

    status: str
    actor: str
    note: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class AggregateRoot(BaseModel):
    aggregate_type: ClassVar[AggregateType]
    amended_event: ClassVar[type[DomainEvent]]

    id: str
    version: int = 0
    applied_event_ids: list[str] = Field(default_factory=list)
    needs_reconciliation: bool = False
    reconciliation_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    _uncommitted_events: list[DomainEvent] = PrivateAttr(default_factory=list)

    def _record(self, event_class: type[DomainEvent], actor: str | None = None, **fields: Any) -> None:
        event = event_class(
            metadata=create_event_metadata(
                event_type=event_class.__name__,
                aggregate_id=self.id,
                aggregate_type=self.aggregate_type,
                sequence_number=self.version + len(self._uncommitted_events) + 1,
                actor=actor,
            ),
            **fields,
        )
        self._uncommitted_events.append(event)
        self.updated_at = event.metadata.occurred_at

    def get_uncommitted_events(self) -> list[DomainEvent]:
        """Get events that haven't been persisted yet."""
        return self._uncommitted_events.copy()

    def mark_events_committed(self) -> None:
        """Clear uncommitted events after persistence."""
        self._uncommitted_events.clear()

    @property
    def has_changes(self) -> bool:
        return bool(self._uncommitted_events)

    def has_applied(self, event_id: str) -> bool:
        return event_id in self.applied_event_ids

    def mark_event_applied(self, event_id: str) -> None:
        """Remember an external event id in the same write as its effect."""
        if event_id in self.applied_event_ids:
            return
        self.applied_event_ids.append(event_id)
        del self.applied_event_ids[:-MAX_APPLIED_EVENT_IDS]

    def flag_for_reconciliation(self, reason: str) -> None:
        """Mark the document for a human; operations on it halt until cleared."""
        self.needs_reconciliation = True
        self.reconciliation_reason = reason
        self._record(self.amended_event, change="flagged_for_reconciliation", details={"reason": reason})

    def clear_reconciliation_flag(self, actor: str, note: str | None = None) -> None:
        """Admin sign-off after a manual fix."""
        if not self.needs_reconciliation:
            return
        self.needs_reconciliation = False
        self.reconciliation_reason = None
        self._record(
            self.amended_event,
            actor=actor,
            change="reconciliation_cleared",
            details={"note": note},
        )

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe view of the aggregate for operation results."""
        return self.model_dump(mode="json")
