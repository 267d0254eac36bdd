"""
Unit tests for the Payment aggregate.
"""
from decimal import Decimal

import pytest

from marketplace_settlement.domain.errors import (
    CorruptAggregateError,
    DisputeLocked,
    IllegalTransition,
    InvalidAmount,
    InvariantViolation,
    ValidationError,
)
from marketplace_settlement.domain.payment import (
    DisputeStatus,
    PaymentAggregate,
    PaymentFees,
    PaymentStatus,
    RefundStatus,
)
from marketplace_settlement.domain.value_objects import Money


def new_payment(amount: str = "150.00") -> PaymentAggregate:
    return PaymentAggregate.initiate(
        order_id="OID-1",
        order_number="ORD-1",
        buyer_id="buyer-1",
        amount=Money.of(amount),
        method="card",
        actor="buyer-1",
        payment_id="PAY-1",
    )


def completed_payment(amount: str = "150.00") -> PaymentAggregate:
    payment = new_payment(amount)
    payment.authorize("pi_1", "gateway")
    payment.capture(payment.amount, "gateway")
    payment.complete("gateway")
    return payment


class TestLifecycle:
    """Test suite for the payment state machine."""

    @pytest.mark.unit
    def test_initiate_requires_positive_amount(self) -> None:
        """Test that a zero payment can not exist."""
        with pytest.raises(InvalidAmount):
            new_payment("0.00")

    @pytest.mark.unit
    def test_happy_path_history(self) -> None:
        """Test pending → authorized → captured → completed."""
        payment = completed_payment()

        assert payment.status == PaymentStatus.COMPLETED
        assert [h.status for h in payment.status_history] == ["pending", "authorized", "captured", "completed"]
        assert payment.captured_amount == Money.of("150.00")
        assert payment.completed_at is not None

    @pytest.mark.unit
    def test_partial_capture_releases_remainder(self) -> None:
        """Test capture of less than authorized."""
        payment = new_payment()
        payment.authorize("pi_1", "gateway")

        payment.capture(Money.of("100.00"), "admin")

        assert payment.released_amount == Money.of("50.00")
        assert payment.refundable_amount == Money.of("100.00")

    @pytest.mark.unit
    def test_capture_more_than_authorized_is_refused(self) -> None:
        """Test capture bound."""
        payment = new_payment()
        payment.authorize("pi_1", "gateway")

        with pytest.raises(InvalidAmount):
            payment.capture(Money.of("150.01"), "admin")

    @pytest.mark.unit
    def test_gateway_success_fast_forwards(self) -> None:
        """Test a gateway-confirmed success from pending or failed."""
        payment = new_payment()
        payment.fail("insufficient_funds", "gateway")

        payment.complete("gateway", from_gateway=True)

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.failure_reason is None

    @pytest.mark.unit
    def test_local_complete_requires_capture(self) -> None:
        """Test that a pending payment is not completed without the gateway."""
        with pytest.raises(IllegalTransition):
            new_payment().complete("admin")

    @pytest.mark.unit
    def test_no_transition_out_of_terminal_states(self) -> None:
        """Test cancelled and expired payments stay put."""
        cancelled = new_payment()
        cancelled.void("admin")
        expired = new_payment()
        expired.expire("system")

        for payment in (cancelled, expired):
            with pytest.raises(IllegalTransition):
                payment.authorize("pi_2", "gateway")
            with pytest.raises(IllegalTransition):
                payment.complete("gateway", from_gateway=True)

    @pytest.mark.unit
    def test_transaction_binding_is_permanent(self) -> None:
        """Test a payment can not switch gateway transactions."""
        payment = new_payment()
        payment.authorize("pi_1", "gateway")

        with pytest.raises(InvariantViolation):
            payment.attach_transaction("pi_2")

    @pytest.mark.unit
    def test_record_fees(self) -> None:
        """Test fee breakdown."""
        payment = completed_payment()
        fees = PaymentFees(
            gateway_fee=Money.of("4.65"), platform_fee=Money.of("1.00"), processing_fee=Money.of("0.30")
        )

        payment.record_fees(fees, "system")

        assert payment.fees.total == Money.of("5.95")


class TestRefunds:
    """Test suite for refund invariants."""

    @pytest.mark.unit
    def test_refunds_are_bounded_by_captured_amount(self) -> None:
        """Test sum of refunds never exceeds what was collected."""
        payment = completed_payment()
        payment.open_refund("REF-1", Money.of("100.00"), "requested_by_customer", "admin")

        with pytest.raises(InvalidAmount):
            payment.open_refund("REF-2", Money.of("50.01"), "requested_by_customer", "admin")
        payment.open_refund("REF-2", Money.of("50.00"), "requested_by_customer", "admin")
        assert payment.remaining_refundable == Money.zero()

    @pytest.mark.unit
    def test_failed_refund_frees_the_amount(self) -> None:
        """Test a failed refund no longer counts against the bound."""
        payment = completed_payment()
        payment.open_refund("REF-1", Money.of("150.00"), "duplicate", "admin")
        payment.fail_refund("REF-1", "insufficient balance", "gateway")

        assert payment.remaining_refundable == Money.of("150.00")
        assert payment.status == PaymentStatus.COMPLETED

    @pytest.mark.unit
    def test_reopened_refund_gets_new_idempotency_key(self) -> None:
        """Test attempts are distinguishable at the gateway."""
        payment = completed_payment()
        payment.open_refund("REF-1", Money.of("10.00"), "other", "admin")
        assert payment.refunds["REF-1"].idempotency_key == "REF-1"
        payment.fail_refund("REF-1", "timeout", "gateway")

        reopened = payment.reopen_refund("REF-1", "admin")

        assert reopened.status == RefundStatus.PENDING
        assert reopened.idempotency_key == "REF-1:2"

    @pytest.mark.unit
    def test_refund_status_follows_ratio(self) -> None:
        """Test partially_refunded then refunded."""
        payment = completed_payment()
        payment.open_refund("REF-1", Money.of("50.00"), "other", "admin")
        payment.complete_refund("REF-1", "re_1", "gateway")
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED

        payment.open_refund("REF-2", Money.of("100.00"), "other", "admin")
        payment.complete_refund("REF-2", "re_2", "gateway")
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.total_refunded == Money.of("150.00")

    @pytest.mark.unit
    def test_unpaid_payment_is_not_refundable(self) -> None:
        """Test refunds need collected funds."""
        with pytest.raises(IllegalTransition):
            new_payment().open_refund("REF-1", Money.of("1.00"), "other", "admin")

    @pytest.mark.unit
    def test_unknown_reason_is_rejected(self) -> None:
        """Test refund reasons are an enumeration."""
        with pytest.raises(ValidationError):
            completed_payment().open_refund("REF-1", Money.of("1.00"), "felt like it", "admin")

    @pytest.mark.unit
    def test_gateway_refund_with_our_reference_settles_pending(self) -> None:
        """Test charge.refunded echoing our refund id (with attempt suffix)."""
        payment = completed_payment()
        payment.open_refund("REF-1", Money.of("30.00"), "other", "admin")
        payment.fail_refund("REF-1", "declined", "gateway")
        payment.reopen_refund("REF-1", "admin")

        payment.record_gateway_refund("re_9", Money.of("30.00"), "gateway", reference="REF-1:2")

        assert payment.refunds["REF-1"].status == RefundStatus.COMPLETED
        assert payment.refunds["REF-1"].gateway_refund_id == "re_9"
        assert len(payment.refunds) == 1

    @pytest.mark.unit
    def test_gateway_initiated_refund_is_recorded_once(self) -> None:
        """Test a dashboard refund is adopted and deduplicated by gateway id."""
        payment = completed_payment()

        payment.record_gateway_refund("re_dash", Money.of("25.00"), "gateway")
        payment.record_gateway_refund("re_dash", Money.of("25.00"), "gateway")

        assert len(payment.refunds) == 1
        assert next(iter(payment.refunds.values())).initiated_by_gateway
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED

    @pytest.mark.unit
    def test_integrity_check_catches_over_refund(self) -> None:
        """Test a stored document with too much refunded is corrupt."""
        payment = completed_payment()
        payment.open_refund("REF-1", Money.of("150.00"), "other", "admin")
        payment.complete_refund("REF-1", "re_1", "gateway")
        payment.refunds["REF-1"] = payment.refunds["REF-1"].model_copy(update={"amount": Money.of("151.00")})

        with pytest.raises(CorruptAggregateError):
            payment.verify_integrity()


class TestDisputes:
    """Test suite for disputes."""

    @pytest.mark.unit
    def test_open_dispute_locks_refunds(self) -> None:
        """Test no refund while a dispute is active."""
        payment = completed_payment()
        payment.open_dispute("DIS-1", Money.of("150.00"), "fraudulent", "gateway", gateway_dispute_id="dp_1")

        assert payment.status == PaymentStatus.DISPUTED
        with pytest.raises(DisputeLocked):
            payment.open_refund("REF-1", Money.of("10.00"), "other", "admin")

        payment.review_dispute("DIS-1", "admin")
        with pytest.raises(DisputeLocked):
            payment.open_refund("REF-1", Money.of("10.00"), "other", "admin")

    @pytest.mark.unit
    def test_duplicate_gateway_dispute_is_noop(self) -> None:
        """Test the same gateway dispute opened twice."""
        payment = completed_payment()
        payment.open_dispute("DIS-1", Money.of("10.00"), "fraudulent", "gateway", gateway_dispute_id="dp_1")

        assert payment.open_dispute("DIS-2", Money.of("10.00"), "fraudulent", "gateway", gateway_dispute_id="dp_1") == []
        assert list(payment.disputes) == ["DIS-1"]

    @pytest.mark.unit
    def test_won_dispute_restores_prior_status(self) -> None:
        """Test won → status before the dispute."""
        payment = completed_payment()
        payment.open_refund("REF-1", Money.of("50.00"), "other", "admin")
        payment.complete_refund("REF-1", "re_1", "gateway")
        payment.open_dispute("DIS-1", Money.of("100.00"), "fraudulent", "gateway")

        payment.resolve_dispute("DIS-1", DisputeStatus.WON, "admin")

        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED

    @pytest.mark.unit
    def test_lost_dispute_ends_refunded(self) -> None:
        """Test lost → refunded."""
        payment = completed_payment()
        payment.open_dispute("DIS-1", Money.of("150.00"), "fraudulent", "gateway")

        payment.resolve_dispute("DIS-1", "lost", "admin")

        assert payment.status == PaymentStatus.REFUNDED
        assert payment.disputes["DIS-1"].resolved_at is not None

    @pytest.mark.unit
    def test_payment_stays_disputed_until_last_dispute_closes(self) -> None:
        """Test two concurrent disputes."""
        payment = completed_payment()
        payment.open_dispute("DIS-1", Money.of("10.00"), "fraudulent", "gateway")
        payment.open_dispute("DIS-2", Money.of("20.00"), "duplicate", "gateway")

        payment.resolve_dispute("DIS-1", "won", "admin")
        assert payment.status == PaymentStatus.DISPUTED

        payment.resolve_dispute("DIS-2", "won", "admin")
        assert payment.status == PaymentStatus.COMPLETED

    @pytest.mark.unit
    def test_resolution_must_be_final(self) -> None:
        """Test resolving to open is refused."""
        payment = completed_payment()
        payment.open_dispute("DIS-1", Money.of("10.00"), "fraudulent", "gateway")

        with pytest.raises(ValidationError):
            payment.resolve_dispute("DIS-1", "open", "admin")

    @pytest.mark.unit
    def test_dispute_amount_is_bounded(self) -> None:
        """Test a dispute can not exceed what was collected."""
        with pytest.raises(InvalidAmount):
            completed_payment().open_dispute("DIS-1", Money.of("150.01"), "fraudulent", "gateway")

    @pytest.mark.unit
    def test_events_carry_sequence_numbers(self) -> None:
        """Test uncommitted events are numbered from the stored version."""
        payment = completed_payment()

        events = payment.get_uncommitted_events()

        assert [e.metadata.sequence_number for e in events] == list(range(1, len(events) + 1))
        assert events[0].event_type == "PaymentInitiated"
        assert Decimal(events[0].amount) == Decimal("150.00")
