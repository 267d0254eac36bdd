"""
Payment Aggregate - money in, money back out.

State machine:

    pending → processing → authorized → captured → completed
       ↓          ↓            ↓           ↓           ↓
     failed / cancelled (void) / expired         refunded | partially_refunded
                                                       ↓
                                  disputed → (won → prior status) | (lost → refunded)

Invariants enforced here:
- Completed refunds never exceed the refundable amount (captured amount,
  or the authorized amount when nothing was captured separately).
- Pending refunds count against that bound too, so two concurrent refund
  requests cannot both pass the check.
- While any dispute is open or under review, no refund may be created.

Gateway calls happen outside the aggregate. Capture, void and refund only
mutate state after the gateway confirmed the operation.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field

from marketplace_settlement.domain.aggregate import AggregateRoot, StatusEntry
from marketplace_settlement.domain.effects import Notification, SideEffect
from marketplace_settlement.domain.errors import (
    CorruptAggregateError,
    DisputeLocked,
    IllegalTransition,
    InvalidAmount,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from marketplace_settlement.domain.events import (
    DisputeRecorded,
    PaymentAmended,
    PaymentInitiated,
    PaymentStatusChanged,
    RefundRecorded,
)
from marketplace_settlement.domain.settlement import VendorAmount
from marketplace_settlement.domain.value_objects import Money, generate_reference, money_sum, utcnow


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    DISPUTED = "disputed"


class RefundStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundReason(str, Enum):
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    PRODUCT_NOT_RECEIVED = "product_not_received"
    PRODUCT_UNACCEPTABLE = "product_unacceptable"
    ORDER_CANCELLED = "order_cancelled"
    ITEM_RETURNED = "item_returned"
    OTHER = "other"


class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    WON = "won"
    LOST = "lost"


PRE_COMPLETED = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED}
)
# A gateway-confirmed success may also follow a failed attempt on the same intent
GATEWAY_SUCCESS_FROM = PRE_COMPLETED | {PaymentStatus.FAILED}
REFUNDABLE = frozenset({PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED})
ACTIVE_DISPUTE = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})


def parse_dispute_outcome(outcome: DisputeStatus | str) -> DisputeStatus:
    """Final dispute outcome; only won or lost close a dispute."""
    try:
        parsed = DisputeStatus(outcome)
    except ValueError:
        raise ValidationError(f"Invalid dispute outcome {outcome!r}", outcome=str(outcome)) from None
    if parsed not in (DisputeStatus.WON, DisputeStatus.LOST):
        raise ValidationError(f"Dispute outcome must be won or lost, got {parsed.value}", outcome=parsed.value)
    return parsed


class RefundRecord(BaseModel):
    id: str
    amount: Money
    reason: RefundReason
    status: RefundStatus = RefundStatus.PENDING
    requested_by: str
    requested_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None
    gateway_refund_id: str | None = None
    failure_reason: str | None = None
    initiated_by_gateway: bool = False
    attempt: int = 1

    @property
    def idempotency_key(self) -> str:
        """Gateway idempotency key; a re-opened refund is a new gateway request."""
        return self.id if self.attempt == 1 else f"{self.id}:{self.attempt}"


class DisputeRecord(BaseModel):
    id: str
    amount: Money
    reason: str
    status: DisputeStatus = DisputeStatus.OPEN
    gateway_dispute_id: str | None = None
    opened_by: str
    opened_at: datetime = Field(default_factory=utcnow)
    due_date: datetime | None = None
    resolved_at: datetime | None = None
    resolution_note: str | None = None


class PaymentFees(BaseModel):
    model_config = ConfigDict(frozen=True)

    gateway_fee: Money
    platform_fee: Money
    processing_fee: Money

    @property
    def total(self) -> Money:
        return self.gateway_fee + self.platform_fee + self.processing_fee


class VendorShare(BaseModel):
    model_config = ConfigDict(frozen=True)

    vendor_id: str
    store_id: str | None = None
    amount: Money
    commission: Money
    net_amount: Money


class Distribution(BaseModel):
    """How captured funds split between the platform and vendors."""

    model_config = ConfigDict(frozen=True)

    platform_amount: Money
    vendor_amount: Money
    vendor_breakdown: list[VendorShare]


def build_distribution(vendor_amounts: list[VendorAmount], payment_amount: Money) -> Distribution:
    currency = payment_amount.currency
    return Distribution(
        platform_amount=money_sum([v.commission for v in vendor_amounts], currency),
        vendor_amount=money_sum([v.payout_amount for v in vendor_amounts], currency),
        vendor_breakdown=[
            VendorShare(
                vendor_id=v.vendor_id,
                store_id=v.store_id,
                amount=v.subtotal,
                commission=v.commission,
                net_amount=v.payout_amount,
            )
            for v in vendor_amounts
        ],
    )


class PaymentSummary(BaseModel):
    """Denormalized view of a payment, stored on its order."""

    model_config = ConfigDict(frozen=True)

    payment_id: str
    method: str
    status: PaymentStatus
    amount: Money
    refundable_amount: Money
    refunded_amount: Money
    transaction_id: str | None = None
    active_disputes: int = 0

    @property
    def fully_refunded(self) -> bool:
        return self.refunded_amount >= self.refundable_amount


class PaymentAggregate(AggregateRoot):
    """Payment aggregate root. Exactly one per order."""

    aggregate_type: ClassVar[str] = "payment"
    amended_event: ClassVar[type] = PaymentAmended

    order_id: str
    order_number: str
    buyer_id: str
    amount: Money
    method: str
    status: PaymentStatus = PaymentStatus.PENDING
    status_history: list[StatusEntry] = Field(default_factory=list)

    transaction_id: str | None = None
    captured_amount: Money | None = None
    released_amount: Money | None = None
    refunds: dict[str, RefundRecord] = Field(default_factory=dict)
    disputes: dict[str, DisputeRecord] = Field(default_factory=dict)
    fees: PaymentFees | None = None
    distribution: Distribution | None = None
    status_before_dispute: PaymentStatus | None = None
    failure_reason: str | None = None

    authorized_at: datetime | None = None
    captured_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    expired_at: datetime | None = None

    @classmethod
    def initiate(
        cls,
        order_id: str,
        order_number: str,
        buyer_id: str,
        amount: Money,
        method: str,
        actor: str,
        payment_id: str | None = None,
    ) -> PaymentAggregate:
        """Factory: the only way a payment comes to exist."""
        if not amount.is_positive:
            raise InvalidAmount(f"Payment amount must be positive, got {amount}")

        payment = cls(
            id=payment_id or generate_reference("PAY"),
            order_id=order_id,
            order_number=order_number,
            buyer_id=buyer_id,
            amount=amount,
            method=method,
        )
        payment.status_history.append(
            StatusEntry(status=PaymentStatus.PENDING.value, actor=actor, note="Payment created")
        )
        payment._record(
            PaymentInitiated,
            actor=actor,
            order_id=order_id,
            amount=str(amount.amount),
            currency=amount.currency.value,
            method=method,
        )
        return payment

    # ------------------------------------------------------------------
    # Derived amounts
    # ------------------------------------------------------------------

    @property
    def refundable_amount(self) -> Money:
        return self.captured_amount or self.amount

    def _refund_total(self, status: RefundStatus) -> Money:
        return money_sum(
            [r.amount for r in self.refunds.values() if r.status == status], self.amount.currency
        )

    @property
    def total_refunded(self) -> Money:
        return self._refund_total(RefundStatus.COMPLETED)

    @property
    def in_flight_refunds(self) -> Money:
        return self._refund_total(RefundStatus.PENDING)

    @property
    def remaining_refundable(self) -> Money:
        return self.refundable_amount - self.total_refunded - self.in_flight_refunds

    @property
    def active_disputes(self) -> list[DisputeRecord]:
        return [d for d in self.disputes.values() if d.status in ACTIVE_DISPUTE]

    @property
    def pending_refunds(self) -> list[RefundRecord]:
        return [r for r in self.refunds.values() if r.status == RefundStatus.PENDING]

    def summary(self) -> PaymentSummary:
        return PaymentSummary(
            payment_id=self.id,
            method=self.method,
            status=self.status,
            amount=self.amount,
            refundable_amount=self.refundable_amount,
            refunded_amount=self.total_refunded,
            transaction_id=self.transaction_id,
            active_disputes=len(self.active_disputes),
        )

    def verify_integrity(self) -> None:
        """Raise if the stored document already breaks an invariant."""
        if self.captured_amount is not None and self.captured_amount > self.amount:
            raise CorruptAggregateError(
                "payment", self.id, f"captured {self.captured_amount} exceeds authorized {self.amount}"
            )
        if self.total_refunded > self.refundable_amount:
            raise CorruptAggregateError(
                "payment",
                self.id,
                f"completed refunds {self.total_refunded} exceed refundable {self.refundable_amount}",
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, target: PaymentStatus, actor: str, note: str | None = None) -> None:
        previous = self.status
        self.status = target
        now = utcnow()
        timestamp_field = {
            PaymentStatus.AUTHORIZED: "authorized_at",
            PaymentStatus.CAPTURED: "captured_at",
            PaymentStatus.COMPLETED: "completed_at",
            PaymentStatus.FAILED: "failed_at",
            PaymentStatus.CANCELLED: "cancelled_at",
            PaymentStatus.EXPIRED: "expired_at",
        }.get(target)
        if timestamp_field:
            setattr(self, timestamp_field, now)
        self.status_history.append(StatusEntry(status=target.value, actor=actor, note=note, timestamp=now))
        self._record(
            PaymentStatusChanged,
            actor=actor,
            from_status=previous.value,
            to_status=target.value,
            note=note,
        )

    def _require(self, allowed: frozenset[PaymentStatus] | set[PaymentStatus], target: str) -> None:
        if self.status not in allowed:
            raise IllegalTransition("payment", self.id, self.status.value, target)

    def attach_transaction(self, transaction_id: str) -> None:
        if self.transaction_id == transaction_id:
            return
        if self.transaction_id is not None:
            raise InvariantViolation(
                f"Payment {self.id} already bound to transaction {self.transaction_id}",
                payment_id=self.id,
            )
        self.transaction_id = transaction_id
        self._record(PaymentAmended, change="transaction_attached", details={"transaction_id": transaction_id})

    def mark_processing(self, transaction_id: str, actor: str) -> list[SideEffect]:
        self._require({PaymentStatus.PENDING}, PaymentStatus.PROCESSING.value)
        self.attach_transaction(transaction_id)
        self._transition(PaymentStatus.PROCESSING, actor, "Submitted to gateway")
        return []

    def authorize(self, transaction_id: str, actor: str) -> list[SideEffect]:
        self._require({PaymentStatus.PENDING, PaymentStatus.PROCESSING}, PaymentStatus.AUTHORIZED.value)
        self.attach_transaction(transaction_id)
        self._transition(PaymentStatus.AUTHORIZED, actor, "Funds authorized")
        return []

    def capture(self, amount: Money, actor: str) -> list[SideEffect]:
        """
        Record a capture the gateway already confirmed.

        Capturing less than authorized releases the remainder for good.
        """
        self._require({PaymentStatus.AUTHORIZED}, PaymentStatus.CAPTURED.value)
        if amount.currency != self.amount.currency:
            raise ValidationError(f"Capture currency {amount.currency.value} != {self.amount.currency.value}")
        if not amount.is_positive or amount > self.amount:
            raise InvalidAmount(f"Capture amount must be within (0, {self.amount}], got {amount}")

        self.captured_amount = amount
        remainder = self.amount - amount
        self.released_amount = None if remainder.is_zero else remainder
        note = f"Captured {amount}" + (f", released {remainder}" if not remainder.is_zero else "")
        self._transition(PaymentStatus.CAPTURED, actor, note)
        return []

    def complete(
        self,
        actor: str,
        distribution: Distribution | None = None,
        from_gateway: bool = False,
        note: str | None = None,
    ) -> list[SideEffect]:
        """
        Mark funds collected.

        A gateway-confirmed success fast-forwards any pre-completed status.
        """
        allowed = GATEWAY_SUCCESS_FROM if from_gateway else {PaymentStatus.CAPTURED}
        self._require(allowed, PaymentStatus.COMPLETED.value)
        if self.captured_amount is None:
            self.captured_amount = self.amount
        if distribution is not None:
            self.distribution = distribution
        self.failure_reason = None
        self._transition(PaymentStatus.COMPLETED, actor, note or "Payment completed")
        return [
            Notification(
                recipient=self.buyer_id,
                template="payment_received",
                data={"order_number": self.order_number, "amount": str(self.captured_amount)},
            )
        ]

    def fail(self, reason: str, actor: str) -> list[SideEffect]:
        self._require(PRE_COMPLETED, PaymentStatus.FAILED.value)
        self.failure_reason = reason
        self._transition(PaymentStatus.FAILED, actor, reason)
        return [
            Notification(
                recipient=self.buyer_id,
                template="payment_failed",
                data={"order_number": self.order_number, "reason": reason},
            )
        ]

    def void(self, actor: str, note: str | None = None) -> list[SideEffect]:
        """Cancel before capture. Irreversible."""
        self._require({PaymentStatus.PENDING, PaymentStatus.AUTHORIZED}, PaymentStatus.CANCELLED.value)
        self._transition(PaymentStatus.CANCELLED, actor, note or "Payment voided")
        return []

    def expire(self, actor: str) -> list[SideEffect]:
        self._require(
            {PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.AUTHORIZED},
            PaymentStatus.EXPIRED.value,
        )
        self._transition(PaymentStatus.EXPIRED, actor, "Payment window elapsed")
        return []

    def record_fees(self, fees: PaymentFees, actor: str) -> None:
        self.fees = fees
        self._record(
            PaymentAmended,
            actor=actor,
            change="fees_recorded",
            details={"total": str(fees.total.amount)},
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def get_refund(self, refund_id: str) -> RefundRecord:
        if refund_id not in self.refunds:
            raise NotFoundError("refund", refund_id)
        return self.refunds[refund_id]

    def find_refund_by_gateway_id(self, gateway_refund_id: str) -> RefundRecord | None:
        for refund in self.refunds.values():
            if refund.gateway_refund_id == gateway_refund_id:
                return refund
        return None

    def _check_refund_allowed(self, amount: Money) -> None:
        if amount.currency != self.amount.currency:
            raise ValidationError(f"Refund currency {amount.currency.value} != {self.amount.currency.value}")
        if not amount.is_positive:
            raise InvalidAmount(f"Refund amount must be positive, got {amount}")
        if self.active_disputes:
            raise DisputeLocked(
                f"Payment {self.id} has an open dispute; refunds are frozen",
                payment_id=self.id,
            )
        self._require(REFUNDABLE, "refund")
        if amount > self.remaining_refundable:
            raise InvalidAmount(
                f"Refund {amount} exceeds remaining refundable {self.remaining_refundable}",
                payment_id=self.id,
            )

    def open_refund(
        self,
        refund_id: str,
        amount: Money,
        reason: RefundReason | str,
        actor: str,
    ) -> RefundRecord:
        """Create a pending refund. The gateway is called after this is persisted."""
        if refund_id in self.refunds:
            raise InvariantViolation(f"Refund {refund_id} already exists", payment_id=self.id)
        try:
            reason = RefundReason(reason)
        except ValueError:
            raise ValidationError(f"Unknown refund reason {reason!r}") from None
        self._check_refund_allowed(amount)

        refund = RefundRecord(id=refund_id, amount=amount, reason=reason, requested_by=actor)
        self.refunds[refund_id] = refund
        self._record(
            RefundRecorded,
            actor=actor,
            refund_id=refund_id,
            amount=str(amount.amount),
            status=refund.status.value,
        )
        return refund

    def _status_after_refund(self) -> PaymentStatus:
        if self.total_refunded >= self.refundable_amount:
            return PaymentStatus.REFUNDED
        return PaymentStatus.PARTIALLY_REFUNDED

    def _apply_refunded_status(self, actor: str, note: str) -> None:
        target = self._status_after_refund()
        if self.status == PaymentStatus.DISPUTED:
            if self.status_before_dispute != PaymentStatus.REFUNDED:
                self.status_before_dispute = target
        elif self.status in REFUNDABLE and self.status != target:
            self._transition(target, actor, note)

    def complete_refund(
        self, refund_id: str, gateway_refund_id: str | None, actor: str
    ) -> list[SideEffect]:
        refund = self.get_refund(refund_id)
        if refund.status == RefundStatus.COMPLETED:
            return []
        if refund.status == RefundStatus.FAILED:
            raise IllegalTransition("refund", refund_id, refund.status.value, RefundStatus.COMPLETED.value)

        self.refunds[refund_id] = refund.model_copy(
            update={
                "status": RefundStatus.COMPLETED,
                "processed_at": utcnow(),
                "gateway_refund_id": gateway_refund_id or refund.gateway_refund_id,
            }
        )
        self._record(
            RefundRecorded,
            actor=actor,
            refund_id=refund_id,
            amount=str(refund.amount.amount),
            status=RefundStatus.COMPLETED.value,
        )
        self._apply_refunded_status(actor, f"Refund {refund_id} of {refund.amount} completed")
        return [
            Notification(
                recipient=self.buyer_id,
                template="refund_processed",
                data={
                    "order_number": self.order_number,
                    "refund_id": refund_id,
                    "amount": str(refund.amount),
                },
            )
        ]

    def fail_refund(self, refund_id: str, reason: str, actor: str) -> list[SideEffect]:
        refund = self.get_refund(refund_id)
        if refund.status == RefundStatus.FAILED:
            return []
        if refund.status != RefundStatus.PENDING:
            raise IllegalTransition("refund", refund_id, refund.status.value, RefundStatus.FAILED.value)
        self.refunds[refund_id] = refund.model_copy(
            update={"status": RefundStatus.FAILED, "processed_at": utcnow(), "failure_reason": reason}
        )
        self._record(
            RefundRecorded,
            actor=actor,
            refund_id=refund_id,
            amount=str(refund.amount.amount),
            status=RefundStatus.FAILED.value,
        )
        return []

    def reopen_refund(self, refund_id: str, actor: str) -> RefundRecord:
        """Put a failed refund back to pending for another gateway attempt."""
        refund = self.get_refund(refund_id)
        if refund.status != RefundStatus.FAILED:
            raise IllegalTransition("refund", refund_id, refund.status.value, RefundStatus.PENDING.value)
        self._check_refund_allowed(refund.amount)
        reopened = refund.model_copy(
            update={
                "status": RefundStatus.PENDING,
                "processed_at": None,
                "failure_reason": None,
                "attempt": refund.attempt + 1,
            }
        )
        self.refunds[refund_id] = reopened
        self._record(
            RefundRecorded,
            actor=actor,
            refund_id=refund_id,
            amount=str(refund.amount.amount),
            status=RefundStatus.PENDING.value,
        )
        return reopened

    def record_gateway_refund(
        self,
        gateway_refund_id: str,
        amount: Money,
        actor: str,
        reference: str | None = None,
    ) -> list[SideEffect]:
        """
        Apply a refund reported by the gateway.

        Settles our own pending refund when the gateway echoes its reference,
        otherwise records a refund issued directly at the gateway.
        """
        if reference:
            # Re-opened refunds travel as "<refund id>:<attempt>"
            reference = reference.split(":", 1)[0]
        if reference and reference in self.refunds:
            return self.complete_refund(reference, gateway_refund_id, actor)
        if self.find_refund_by_gateway_id(gateway_refund_id) is not None:
            return []

        if self.status not in REFUNDABLE and self.status != PaymentStatus.DISPUTED:
            raise IllegalTransition("payment", self.id, self.status.value, "refund")
        if self.total_refunded + self.in_flight_refunds + amount > self.refundable_amount:
            raise InvariantViolation(
                f"Gateway refund {gateway_refund_id} of {amount} exceeds refundable {self.refundable_amount}",
                payment_id=self.id,
            )

        refund_id = generate_reference("REF")
        self.refunds[refund_id] = RefundRecord(
            id=refund_id,
            amount=amount,
            reason=RefundReason.OTHER,
            status=RefundStatus.COMPLETED,
            requested_by=actor,
            processed_at=utcnow(),
            gateway_refund_id=gateway_refund_id,
            initiated_by_gateway=True,
        )
        self._record(
            RefundRecorded,
            actor=actor,
            refund_id=refund_id,
            amount=str(amount.amount),
            status=RefundStatus.COMPLETED.value,
        )
        self._apply_refunded_status(actor, f"Gateway refund {gateway_refund_id} of {amount}")
        return []

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def get_dispute(self, dispute_id: str) -> DisputeRecord:
        if dispute_id not in self.disputes:
            raise NotFoundError("dispute", dispute_id)
        return self.disputes[dispute_id]

    def find_dispute_by_gateway_id(self, gateway_dispute_id: str) -> DisputeRecord | None:
        for dispute in self.disputes.values():
            if dispute.gateway_dispute_id == gateway_dispute_id:
                return dispute
        return None

    def open_dispute(
        self,
        dispute_id: str,
        amount: Money,
        reason: str,
        actor: str,
        gateway_dispute_id: str | None = None,
        due_date: datetime | None = None,
    ) -> list[SideEffect]:
        if gateway_dispute_id and self.find_dispute_by_gateway_id(gateway_dispute_id):
            return []
        if dispute_id in self.disputes:
            raise InvariantViolation(f"Dispute {dispute_id} already exists", payment_id=self.id)
        self._require(REFUNDABLE | {PaymentStatus.DISPUTED}, PaymentStatus.DISPUTED.value)
        if amount.currency != self.amount.currency:
            raise ValidationError(f"Dispute currency {amount.currency.value} != {self.amount.currency.value}")
        if not amount.is_positive or amount > self.refundable_amount:
            raise InvalidAmount(f"Dispute amount must be within (0, {self.refundable_amount}], got {amount}")

        self.disputes[dispute_id] = DisputeRecord(
            id=dispute_id,
            amount=amount,
            reason=reason,
            gateway_dispute_id=gateway_dispute_id,
            opened_by=actor,
            due_date=due_date,
        )
        self._record(
            DisputeRecorded,
            actor=actor,
            dispute_id=dispute_id,
            amount=str(amount.amount),
            status=DisputeStatus.OPEN.value,
        )
        if self.status != PaymentStatus.DISPUTED:
            self.status_before_dispute = self.status
            self._transition(PaymentStatus.DISPUTED, actor, f"Dispute {dispute_id}: {reason}")
        return [
            Notification(
                recipient="admin",
                template="dispute_opened",
                data={
                    "order_number": self.order_number,
                    "payment_id": self.id,
                    "dispute_id": dispute_id,
                    "amount": str(amount),
                    "reason": reason,
                },
            )
        ]

    def review_dispute(self, dispute_id: str, actor: str) -> list[SideEffect]:
        dispute = self.get_dispute(dispute_id)
        if dispute.status == DisputeStatus.UNDER_REVIEW:
            return []
        if dispute.status != DisputeStatus.OPEN:
            raise IllegalTransition("dispute", dispute_id, dispute.status.value, DisputeStatus.UNDER_REVIEW.value)
        self.disputes[dispute_id] = dispute.model_copy(update={"status": DisputeStatus.UNDER_REVIEW})
        self._record(
            DisputeRecorded,
            actor=actor,
            dispute_id=dispute_id,
            amount=str(dispute.amount.amount),
            status=DisputeStatus.UNDER_REVIEW.value,
        )
        return []

    def resolve_dispute(
        self,
        dispute_id: str,
        outcome: DisputeStatus | str,
        actor: str,
        note: str | None = None,
    ) -> list[SideEffect]:
        """
        Close a dispute.

        Once the last active dispute closes the payment returns to its
        pre-dispute status, or to refunded if any of them was lost.
        """
        outcome = parse_dispute_outcome(outcome)
        dispute = self.get_dispute(dispute_id)
        if dispute.status == outcome:
            return []
        if dispute.status not in ACTIVE_DISPUTE:
            raise IllegalTransition("dispute", dispute_id, dispute.status.value, outcome.value)

        self.disputes[dispute_id] = dispute.model_copy(
            update={"status": outcome, "resolved_at": utcnow(), "resolution_note": note}
        )
        self._record(
            DisputeRecorded,
            actor=actor,
            dispute_id=dispute_id,
            amount=str(dispute.amount.amount),
            status=outcome.value,
        )
        if outcome == DisputeStatus.LOST:
            self.status_before_dispute = PaymentStatus.REFUNDED

        if not self.active_disputes and self.status == PaymentStatus.DISPUTED:
            restored = self.status_before_dispute or PaymentStatus.COMPLETED
            self.status_before_dispute = None
            self._transition(restored, actor, note or f"Dispute {dispute_id} {outcome.value}")
        return [
            Notification(
                recipient=self.buyer_id,
                template="dispute_resolved",
                data={"order_number": self.order_number, "dispute_id": dispute_id, "outcome": outcome.value},
            )
        ]
