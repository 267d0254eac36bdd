"""
Settlement error taxonomy.

Every error carries a stable ``error_code`` so callers (controllers, CLIs,
schedulers) can decide what to do without parsing messages:

- ValidationError: bad input. Rejected synchronously, never retried.
- ConflictError: stale aggregate version. Retried internally, then surfaced.
- GatewayError: gateway failure or timeout. The operation was not applied
  locally; a timeout means the remote outcome is unknown.
- InvariantViolation: the transition is not allowed from the current state.
- DuplicateEvent: an already-applied external event. Acknowledged, no-op.
- CorruptAggregateError: an invariant was already broken on load. The
  aggregate is flagged for manual reconciliation and the operation halts.
"""

from __future__ import annotations

from typing import Any


class SettlementError(Exception):
    """Base exception for all settlement errors."""

    error_code = "settlement_error"

    def __init__(self, message: str, error_code: str | None = None, **context: Any):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for API responses and operation results."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
                **{k: v for k, v in self.context.items() if v is not None},
            }
        }


class ValidationError(SettlementError):
    """Input rejected before any state was touched."""

    error_code = "validation_error"


class InvalidAmount(ValidationError):
    """Amount is non-positive or exceeds what is still refundable/capturable."""

    error_code = "invalid_amount"


class InvalidSignature(ValidationError):
    """Inbound gateway event failed signature verification."""

    error_code = "invalid_signature"


class NotFoundError(SettlementError):
    """Referenced order, payment, refund, dispute or return does not exist."""

    error_code = "not_found"

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} {identifier} not found", kind=kind, identifier=identifier)


class ConflictError(SettlementError):
    """Optimistic version check kept failing."""

    error_code = "conflict"


class ConcurrencyError(ConflictError):
    """
    Raised when optimistic concurrency check fails.

    This prevents lost updates when two triggers race on the same aggregate.
    """

    error_code = "version_conflict"

    def __init__(self, aggregate_id: str, expected: int, current: int | None):
        self.aggregate_id = aggregate_id
        self.expected_version = expected
        self.current_version = current
        super().__init__(
            f"Concurrency conflict for {aggregate_id}: "
            f"expected version {expected}, current version {current}",
            aggregate_id=aggregate_id,
            expected_version=expected,
            current_version=current,
        )


class GatewayError(SettlementError):
    """
    Gateway call failed or timed out.

    ``unknown_outcome`` is set for timeouts: the gateway may or may not have
    applied the operation, and a later webhook or query settles it.
    """

    error_code = "gateway_error"

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        unknown_outcome: bool = False,
        retryable: bool = False,
        original_error: Exception | None = None,
    ):
        super().__init__(
            message,
            error_code="gateway_timeout" if unknown_outcome else None,
            operation=operation,
            unknown_outcome=unknown_outcome,
        )
        self.operation = operation
        self.unknown_outcome = unknown_outcome
        self.retryable = retryable
        self.original_error = original_error


class InvariantViolation(SettlementError):
    """Operation would break a domain rule."""

    error_code = "invariant_violation"


class IllegalTransition(InvariantViolation):
    """Requested status change is not in the state graph."""

    error_code = "illegal_transition"

    def __init__(self, aggregate: str, aggregate_id: str, current: str, target: str):
        self.aggregate = aggregate
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {aggregate} {aggregate_id} from {current} to {target}",
            aggregate=aggregate,
            aggregate_id=aggregate_id,
            current=current,
            target=target,
        )


class DisputeLocked(InvariantViolation):
    """Refunds are frozen while a dispute is open or under review."""

    error_code = "dispute_locked"


class DuplicateEvent(SettlementError):
    """External event id was already applied. Not a failure."""

    error_code = "duplicate_event"

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} already applied", event_id=event_id)


class CorruptAggregateError(SettlementError):
    """Stored aggregate already violates an invariant; needs a human."""

    error_code = "aggregate_corrupt"

    def __init__(self, aggregate: str, aggregate_id: str, reason: str):
        self.aggregate = aggregate
        self.aggregate_id = aggregate_id
        self.reason = reason
        super().__init__(
            f"{aggregate} {aggregate_id} failed integrity check: {reason}",
            aggregate=aggregate,
            aggregate_id=aggregate_id,
            reason=reason,
        )


class ConfigurationError(SettlementError):
    """Service wiring is incomplete for the configured environment."""

    error_code = "configuration_error"
