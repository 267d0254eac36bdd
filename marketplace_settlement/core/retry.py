"""Reload-and-reapply loop for optimistic version conflicts."""

from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from marketplace_settlement.domain.errors import ConcurrencyError, ConflictError
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def run_with_conflict_retry(
    operation: Callable[[], Awaitable[T]],
    aggregate: str,
    aggregate_id: str,
    max_attempts: int = 5,
    base_delay: float = 0.05,
) -> T:
    """
    Run ``operation`` (load, apply, save) until its write is not stale.

    ``operation`` must reload the aggregate on every call. After
    ``max_attempts`` conflicts the last one surfaces as ConflictError.
    """
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ConcurrencyError),
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_delay, max=base_delay * 20),
            reraise=True,
        ):
            with attempt:
                try:
                    return await operation()
                except ConcurrencyError as e:
                    metrics.record_conflict(aggregate)
                    logger.warning(
                        "optimistic_conflict",
                        aggregate=aggregate,
                        aggregate_id=aggregate_id,
                        expected_version=e.expected_version,
                        current_version=e.current_version,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise
    except ConcurrencyError as e:
        logger.warning(
            "optimistic_conflict_retries_exhausted",
            aggregate=aggregate,
            aggregate_id=aggregate_id,
            attempts=max_attempts,
        )
        raise ConflictError(
            f"{aggregate} {aggregate_id} kept changing underneath us; gave up after {max_attempts} attempts",
            aggregate=aggregate,
            aggregate_id=aggregate_id,
            attempts=max_attempts,
        ) from e
