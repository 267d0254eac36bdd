"""
Deferred command queue.

Holds side effects and dependent steps that failed after their aggregate
was committed: notifications, inventory adjustments, order/payment syncs,
dependent refunds and voids. The deferred worker retries them with
exponential backoff and dead-letters them after ``max_attempts``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

import structlog
from pydantic import BaseModel, Field

from marketplace_settlement.domain.effects import SideEffect
from marketplace_settlement.domain.value_objects import utcnow

logger = structlog.get_logger(__name__)

CommandStatus = Literal["pending", "done", "dead"]

BASE_BACKOFF_SECONDS = 5
MAX_BACKOFF_SECONDS = 3600


def next_attempt_at(attempts: int, now: datetime | None = None) -> datetime:
    """Exponential backoff: 5s, 10s, 20s ... capped at one hour."""
    delay = min(BASE_BACKOFF_SECONDS * 2 ** max(attempts - 1, 0), MAX_BACKOFF_SECONDS)
    return (now or utcnow()) + timedelta(seconds=delay)


class DeferredCommand(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: str
    payload: dict[str, Any]
    status: CommandStatus = "pending"
    attempts: int = 0
    last_error: str | None = None
    next_attempt_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class DeferredCommandQueue(Protocol):
    """Interface for the retry queue (SQL, in-memory)."""

    async def enqueue(self, effect: SideEffect, error: str | None = None) -> str:
        ...

    async def due(self, limit: int = 100, now: datetime | None = None) -> list[DeferredCommand]:
        ...

    async def mark_done(self, command_id: str) -> None:
        ...

    async def mark_failed(self, command_id: str, error: str, max_attempts: int) -> bool:
        """Record a failed retry. Returns True when the command was dead-lettered."""
        ...

    async def pending_count(self) -> int:
        ...


class InMemoryDeferredCommandQueue:
    """In-memory queue for testing and local runs."""

    def __init__(self) -> None:
        self._commands: dict[str, DeferredCommand] = {}

    async def enqueue(self, effect: SideEffect, error: str | None = None) -> str:
        command = DeferredCommand(
            kind=effect.kind,
            payload=effect.model_dump(mode="json"),
            attempts=1 if error else 0,
            last_error=error,
        )
        self._commands[command.id] = command
        logger.info("deferred_command_enqueued", command_id=command.id, kind=command.kind, error=error)
        return command.id

    async def due(self, limit: int = 100, now: datetime | None = None) -> list[DeferredCommand]:
        now = now or utcnow()
        ready = [
            c for c in self._commands.values() if c.status == "pending" and c.next_attempt_at <= now
        ]
        ready.sort(key=lambda c: c.created_at)
        return ready[:limit]

    async def mark_done(self, command_id: str) -> None:
        command = self._commands[command_id]
        self._commands[command_id] = command.model_copy(update={"status": "done"})

    async def mark_failed(self, command_id: str, error: str, max_attempts: int) -> bool:
        command = self._commands[command_id]
        attempts = command.attempts + 1
        dead = attempts >= max_attempts
        self._commands[command_id] = command.model_copy(
            update={
                "attempts": attempts,
                "last_error": error,
                "status": "dead" if dead else "pending",
                "next_attempt_at": next_attempt_at(attempts),
            }
        )
        return dead

    async def pending_count(self) -> int:
        return sum(1 for c in self._commands.values() if c.status == "pending")

    def commands(self, status: CommandStatus | None = None) -> list[DeferredCommand]:
        """Helper for testing: inspect queued commands."""
        return [c for c in self._commands.values() if status is None or c.status == status]
