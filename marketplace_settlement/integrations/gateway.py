"""
Payment gateway port.

The settlement core only talks to gateways through ``PaymentGateway`` and
only through ``call_gateway``, which bounds every call with a timeout. A
timeout is not a failure: the gateway may have applied the operation, so it
surfaces as ``GatewayError(unknown_outcome=True)`` and the outcome is settled
later by a webhook or a ``retrieve``.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Protocol, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from marketplace_settlement.domain.errors import GatewayError
from marketplace_settlement.domain.value_objects import Money
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class GatewayStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GatewayResult(BaseModel):
    """What the gateway reported for one operation."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    status: GatewayStatus
    reference: str | None = None  # gateway-side id of a refund
    failure_reason: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class GatewayEvent(BaseModel):
    """A verified, normalized gateway notification."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    type: str
    transaction_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class PaymentGateway(Protocol):
    """Interface for payment gateways (Stripe, test doubles)."""

    async def authorize(
        self, amount: Money, method: str, idempotency_key: str, metadata: dict[str, str] | None = None
    ) -> GatewayResult:
        ...

    async def capture(self, transaction_id: str, amount: Money) -> GatewayResult:
        ...

    async def refund(self, transaction_id: str, amount: Money, idempotency_key: str) -> GatewayResult:
        ...

    async def void(self, transaction_id: str) -> GatewayResult:
        ...

    async def retrieve(self, transaction_id: str) -> GatewayResult:
        ...

    def verify_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        """Raise InvalidSignature unless the payload is authentic."""
        ...


async def call_gateway(operation: str, call: Awaitable[T], timeout: float) -> T:
    """
    Await a gateway call with a bounded timeout.

    Raises:
        GatewayError: call failed, or timed out with ``unknown_outcome`` set
    """
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        duration = time.perf_counter() - start
        metrics.record_gateway_call(operation, "timeout", duration)
        logger.error("gateway_call_timeout", operation=operation, timeout_seconds=timeout)
        raise GatewayError(
            f"Gateway {operation} timed out after {timeout}s; outcome unknown",
            operation=operation,
            unknown_outcome=True,
        ) from None
    except GatewayError as e:
        metrics.record_gateway_call(operation, "failure", time.perf_counter() - start)
        logger.error(
            "gateway_call_failed",
            operation=operation,
            error=e.message,
            retryable=e.retryable,
        )
        raise

    metrics.record_gateway_call(operation, "success", time.perf_counter() - start)
    return result
