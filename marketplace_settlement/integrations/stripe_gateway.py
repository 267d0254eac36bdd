"""
Stripe-backed PaymentGateway with retry logic and error classification.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotency keys on authorize and refund
- Webhook signature verification and event normalization
"""
import asyncio
import json
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.domain.errors import GatewayError, InvalidSignature
from marketplace_settlement.domain.value_objects import Money
from marketplace_settlement.integrations.gateway import GatewayEvent, GatewayResult, GatewayStatus
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

INTENT_STATUS = {
    "requires_payment_method": GatewayStatus.PENDING,
    "requires_confirmation": GatewayStatus.PENDING,
    "requires_action": GatewayStatus.PENDING,
    "processing": GatewayStatus.PROCESSING,
    "requires_capture": GatewayStatus.AUTHORIZED,
    "succeeded": GatewayStatus.SUCCEEDED,
    "canceled": GatewayStatus.CANCELLED,
}

REFUND_STATUS = {
    "pending": GatewayStatus.PROCESSING,
    "requires_action": GatewayStatus.PENDING,
    "succeeded": GatewayStatus.SUCCEEDED,
    "failed": GatewayStatus.FAILED,
    "canceled": GatewayStatus.CANCELLED,
}


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Callable[[], Any]) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("Circuit breaker is open", operation="circuit_breaker")

        try:
            result = func()
        except stripe.CardError:
            # Declines are the buyer's problem, not the gateway's health
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


class StripeGateway:
    """
    PaymentGateway backed by Stripe PaymentIntents.

    Authorizations use manual capture so that capture and void map onto
    the payment state machine one to one.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """Initialize Stripe gateway."""
        self.settings = settings or get_settings()
        stripe.api_key = self.settings.stripe_secret_key
        stripe.api_version = self.settings.stripe_api_version
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_gateway_initialized",
            api_version=stripe.api_version,
            test_mode=bool(self.settings.stripe_secret_key and self.settings.stripe_secret_key.startswith("sk_test_")),
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """Classify Stripe error for retry logic."""
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
            return StripeErrorType.PERMANENT
        else:
            # Authentication/permission problems will not fix themselves
            return StripeErrorType.PERMANENT

    def _to_gateway_error(self, operation: str, error: stripe.StripeError) -> GatewayError:
        error_type = self._classify_error(error)
        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        return GatewayError(
            str(error),
            operation=operation,
            retryable=error_type != StripeErrorType.PERMANENT,
            original_error=error,
        )

    async def _execute(self, operation: str, func: Callable[[], Any]) -> Any:
        """Run a blocking Stripe call off the event loop, retrying transient errors."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.gateway_max_retries),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            reraise=True,
        ):
            with attempt:
                try:
                    return await asyncio.to_thread(self.circuit_breaker.call, func)
                except stripe.StripeError as e:
                    raise self._to_gateway_error(operation, e) from e

    @staticmethod
    def _intent_result(intent: Any) -> GatewayResult:
        last_error = intent.get("last_payment_error") or {}
        return GatewayResult(
            transaction_id=intent["id"],
            status=INTENT_STATUS.get(intent["status"], GatewayStatus.PENDING),
            failure_reason=last_error.get("message"),
            raw=dict(intent),
        )

    async def authorize(
        self,
        amount: Money,
        method: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayResult:
        logger.info(
            "creating_payment_intent",
            amount_cents=amount.cents,
            currency=amount.currency.value,
            idempotency_key=idempotency_key,
        )

        def _create() -> Any:
            return stripe.PaymentIntent.create(
                amount=amount.cents,
                currency=amount.currency.value.lower(),
                capture_method="manual",
                payment_method_types=[method],
                idempotency_key=idempotency_key,
                metadata=metadata or {},
            )

        intent = await self._execute("authorize", _create)
        logger.info("payment_intent_created", payment_intent_id=intent["id"], status=intent["status"])
        return self._intent_result(intent)

    async def capture(self, transaction_id: str, amount: Money) -> GatewayResult:
        logger.info("capturing_payment_intent", payment_intent_id=transaction_id, amount_cents=amount.cents)

        def _capture() -> Any:
            return stripe.PaymentIntent.capture(transaction_id, amount_to_capture=amount.cents)

        return self._intent_result(await self._execute("capture", _capture))

    async def void(self, transaction_id: str) -> GatewayResult:
        logger.info("cancelling_payment_intent", payment_intent_id=transaction_id)

        def _cancel() -> Any:
            return stripe.PaymentIntent.cancel(transaction_id)

        return self._intent_result(await self._execute("void", _cancel))

    async def retrieve(self, transaction_id: str) -> GatewayResult:
        logger.info("retrieving_payment_intent", payment_intent_id=transaction_id)

        def _retrieve() -> Any:
            return stripe.PaymentIntent.retrieve(transaction_id)

        return self._intent_result(await self._execute("retrieve", _retrieve))

    async def refund(self, transaction_id: str, amount: Money, idempotency_key: str) -> GatewayResult:
        """
        Refund part or all of a captured intent.

        Our refund id travels as ``metadata.reference`` so the later
        ``charge.refunded`` webhook can be matched to the pending refund.
        """
        logger.info(
            "creating_refund",
            payment_intent_id=transaction_id,
            amount_cents=amount.cents,
            idempotency_key=idempotency_key,
        )

        def _create_refund() -> Any:
            return stripe.Refund.create(
                payment_intent=transaction_id,
                amount=amount.cents,
                idempotency_key=idempotency_key,
                metadata={"reference": idempotency_key},
            )

        refund = await self._execute("refund", _create_refund)
        logger.info("refund_created", refund_id=refund["id"], status=refund["status"])
        return GatewayResult(
            transaction_id=transaction_id,
            status=REFUND_STATUS.get(refund["status"], GatewayStatus.PENDING),
            reference=refund["id"],
            failure_reason=refund.get("failure_reason"),
            raw=dict(refund),
        )

    def verify_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        """
        Verify webhook signature and normalize the event.

        Raises:
            InvalidSignature: If signature verification fails
        """
        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.settings.stripe_webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise InvalidSignature(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise InvalidSignature(f"Invalid webhook payload: {e}") from e

        logger.info("webhook_signature_verified", event_id=event.id, event_type=event.type)
        data = json.loads(payload)["data"]["object"]
        return normalize_event(event.id, event.type, data)


def _timestamp(epoch: Optional[int]) -> Optional[str]:
    if not epoch:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def normalize_event(event_id: str, event_type: str, data: Dict[str, Any]) -> GatewayEvent:
    """Turn a Stripe event object into the gateway-neutral shape the core understands."""
    if event_type.startswith("payment_intent."):
        last_error = data.get("last_payment_error") or {}
        return GatewayEvent(
            event_id=event_id,
            type=event_type,
            transaction_id=data["id"],
            payload={
                "amount_cents": data.get("amount"),
                "amount_received_cents": data.get("amount_received"),
                "amount_capturable_cents": data.get("amount_capturable"),
                "failure_reason": last_error.get("message"),
                "order_id": (data.get("metadata") or {}).get("order_id"),
            },
        )

    if event_type == "charge.refunded":
        refunds = (data.get("refunds") or {}).get("data", [])
        return GatewayEvent(
            event_id=event_id,
            type=event_type,
            transaction_id=data.get("payment_intent"),
            payload={
                "amount_refunded_cents": data.get("amount_refunded"),
                "refunds": [
                    {
                        "gateway_refund_id": r["id"],
                        "amount_cents": r["amount"],
                        "reference": (r.get("metadata") or {}).get("reference"),
                        "status": r.get("status"),
                    }
                    for r in refunds
                ],
            },
        )

    if event_type.startswith("charge.dispute."):
        return GatewayEvent(
            event_id=event_id,
            type=event_type,
            transaction_id=data.get("payment_intent"),
            payload={
                "dispute_id": data["id"],
                "amount_cents": data.get("amount"),
                "reason": data.get("reason") or "unspecified",
                "status": data.get("status"),
                "due_date": _timestamp((data.get("evidence_details") or {}).get("due_by")),
            },
        )

    if event_type == "payout.paid":
        return GatewayEvent(
            event_id=event_id,
            type=event_type,
            payload={"payout_id": data.get("id"), "amount_cents": data.get("amount")},
        )

    return GatewayEvent(event_id=event_id, type=event_type, transaction_id=data.get("id"))
