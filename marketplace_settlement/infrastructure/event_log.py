"""
Processed-event ledger.

Remembers which gateway event ids were already handled and how. The ledger
is the fast path for duplicates; the authoritative guard is the event id
stored on the aggregate in the same versioned write as its effect.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

import redis.asyncio as aioredis
import structlog

from marketplace_settlement.domain.value_objects import utcnow

logger = structlog.get_logger(__name__)

KEY_PREFIX = "settlement:processed:"


class ProcessedEventLog(Protocol):
    """Interface for the processed-event ledger (Redis, SQL, in-memory)."""

    async def get_outcome(self, event_id: str) -> str | None:
        """Outcome recorded for the event, or None if never processed."""
        ...

    async def record(self, event_id: str, outcome: str) -> bool:
        """Record an outcome. Returns False if the id was already recorded."""
        ...


class InMemoryProcessedEventLog:
    """In-memory ledger for testing."""

    def __init__(self, ttl_seconds: int = 86400 * 7):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._entries: dict[str, tuple[str, datetime]] = {}

    async def get_outcome(self, event_id: str) -> str | None:
        if event_id not in self._entries:
            return None
        outcome, recorded_at = self._entries[event_id]
        if utcnow() - recorded_at > self.ttl:
            del self._entries[event_id]
            return None
        return outcome

    async def record(self, event_id: str, outcome: str) -> bool:
        if await self.get_outcome(event_id) is not None:
            return False
        self._entries[event_id] = (outcome, utcnow())
        return True


class RedisProcessedEventLog:
    """
    Redis-backed ledger.

    ``SET key outcome NX EX ttl`` makes record-if-absent a single round trip.
    """

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int = 86400 * 7):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 86400 * 7) -> RedisProcessedEventLog:
        client = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        return cls(client, ttl_seconds)

    async def get_outcome(self, event_id: str) -> str | None:
        value = await self.redis_client.get(f"{KEY_PREFIX}{event_id}")
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def record(self, event_id: str, outcome: str) -> bool:
        stored = await self.redis_client.set(
            f"{KEY_PREFIX}{event_id}", outcome, nx=True, ex=self.ttl_seconds
        )
        if not stored:
            logger.info("processed_event_already_recorded", event_id=event_id)
        return bool(stored)

    async def close(self) -> None:
        """Close Redis connection."""
        await self.redis_client.aclose()
