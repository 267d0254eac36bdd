"""
Refund and dispute scenarios through the settlement service.
"""
import asyncio
from typing import List

import pytest

from marketplace_settlement.core.service import SettlementService
from marketplace_settlement.domain.errors import GatewayError
from marketplace_settlement.domain.order import CartLine
from marketplace_settlement.domain.value_objects import Money
from marketplace_settlement.infrastructure.repository import InMemoryPaymentRepository
from marketplace_settlement.integrations.collaborators import InMemoryInventoryService
from tests.conftest import FakeGateway, deliver_all, gateway_event, place, place_and_pay


class TestRequestRefund:
    """Test suite for RefundDisputeManager.request_refund via the service."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_over_refund_rejected_then_full_refund(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """
        Test Scenario: refund above the captured amount, then the full amount

        Expected: $160 rejected without a gateway call; $150 refunds both
        the payment and the order.
        """
        order_id, payment_id = await place_and_pay(service, cart)

        rejected = await service.request_refund(payment_id, Money.of("160.00"), "requested_by_customer", "admin")

        assert not rejected.ok
        assert rejected.status == "rejected"
        assert rejected.error["code"] == "invalid_amount"
        assert rejected.payment["status"] == "completed"
        assert gateway.calls_to("refund") == []

        result = await service.request_refund(payment_id, Money.of("150.00"), "requested_by_customer", "admin")

        assert result.ok, result.error
        assert result.data["refund_status"] == "completed"
        assert result.payment["status"] == "refunded"
        assert result.order["id"] == order_id
        assert result.order["status"] == "refunded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund(self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway) -> None:
        """Test partial refund moves both aggregates to partially_refunded."""
        _, payment_id = await place_and_pay(service, cart)

        result = await service.request_refund(payment_id, Money.of("40.00"), "product_unacceptable", "admin")

        assert result.ok, result.error
        assert result.payment["status"] == "partially_refunded"
        assert result.order["status"] == "partially_refunded"
        call = gateway.calls_to("refund")[0]
        assert call["amount"] == Money.of("40.00")
        assert call["idempotency_key"] == result.data["refund_id"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_refund_id_is_idempotent(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test a repeated request returns the completed refund without another gateway call."""
        _, payment_id = await place_and_pay(service, cart)

        first = await service.request_refund(payment_id, Money.of("10.00"), "other", "admin", refund_id="REF-fixed")
        second = await service.request_refund(payment_id, Money.of("10.00"), "other", "admin", refund_id="REF-fixed")

        assert first.ok and second.ok
        assert second.data == {"refund_id": "REF-fixed", "refund_status": "completed"}
        assert len(gateway.calls_to("refund")) == 1
        assert second.payment["status"] == "partially_refunded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_refund_id_with_other_amount_is_rejected(
        self, service: SettlementService, cart: List[CartLine]
    ) -> None:
        """Test a refund id is bound to its amount."""
        _, payment_id = await place_and_pay(service, cart)
        await service.request_refund(payment_id, Money.of("10.00"), "other", "admin", refund_id="REF-fixed")

        result = await service.request_refund(payment_id, Money.of("11.00"), "other", "admin", refund_id="REF-fixed")

        assert result.status == "rejected"
        assert result.error["code"] == "validation_error"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unpaid_payment_is_not_refundable(self, service: SettlementService, cart: List[CartLine]) -> None:
        """Test refunds before collection are rejected."""
        _, payment_id = await place(service, cart)

        result = await service.request_refund(payment_id, Money.of("10.00"), "other", "admin")

        assert result.status == "rejected"
        assert result.error["code"] == "illegal_transition"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_refunds_never_exceed_captured(
        self,
        service: SettlementService,
        cart: List[CartLine],
        payment_repo: InMemoryPaymentRepository,
    ) -> None:
        """
        Test Scenario: two $100 refunds race on a $150 payment

        Expected: the pending refund of the first counts against the bound
        of the second, so exactly one succeeds.
        """
        _, payment_id = await place_and_pay(service, cart)

        results = await asyncio.gather(
            service.request_refund(payment_id, Money.of("100.00"), "other", "admin"),
            service.request_refund(payment_id, Money.of("100.00"), "other", "admin"),
        )

        assert sorted(r.status for r in results) == ["ok", "rejected"]
        payment = await payment_repo.get(payment_id)
        assert payment.total_refunded == Money.of("100.00")


class TestGatewayOutcomes:
    """Test suite for refund gateway failures and unknown outcomes."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_failure_marks_refund_failed(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test a refused refund fails and leaves the order untouched, then a retry succeeds."""
        _, payment_id = await place_and_pay(service, cart)
        gateway.errors["refund"] = GatewayError("charge already refunded", operation="refund")

        failed = await service.request_refund(payment_id, Money.of("25.00"), "other", "admin", refund_id="REF-1")

        assert failed.status == "gateway_error"
        assert failed.payment["refunds"]["REF-1"]["status"] == "failed"
        assert failed.payment["status"] == "completed"
        assert failed.order["status"] == "payment_confirmed"

        del gateway.errors["refund"]
        retried = await service.request_refund(payment_id, Money.of("25.00"), "other", "admin", refund_id="REF-1")

        assert retried.ok, retried.error
        assert retried.data["refund_status"] == "completed"
        assert gateway.calls_to("refund")[-1]["idempotency_key"] == "REF-1:2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_leaves_refund_pending_until_reconciled(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """
        Test Scenario: the refund call times out

        Expected: gateway_error with unknown outcome, refund stays pending
        and blocks its amount; the reconciliation pass settles it.
        """
        _, payment_id = await place_and_pay(service, cart)
        gateway.delays["refund"] = 1.0

        result = await service.request_refund(payment_id, Money.of("150.00"), "other", "admin", refund_id="REF-1")

        assert result.status == "gateway_error"
        assert result.error["code"] == "gateway_timeout"
        assert result.error["unknown_outcome"] is True
        assert result.payment["refunds"]["REF-1"]["status"] == "pending"
        blocked = await service.request_refund(payment_id, Money.of("1.00"), "other", "admin")
        assert blocked.error["code"] == "invalid_amount"

        del gateway.delays["refund"]
        stats = await service.retry_pending_refunds()

        assert stats == {"completed": 1, "pending": 0, "failed": 0}
        settled = await service.get_payment(payment_id)
        assert settled.payment["status"] == "refunded"
        assert settled.order["status"] == "refunded"
        assert {c["idempotency_key"] for c in gateway.calls_to("refund")} == {"REF-1"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_settled_by_webhook(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test charge.refunded echoing our reference completes the pending refund."""
        _, payment_id = await place_and_pay(service, cart)
        gateway.delays["refund"] = 1.0
        await service.request_refund(payment_id, Money.of("50.00"), "other", "admin", refund_id="REF-1")
        payment = (await service.get_payment(payment_id)).payment

        result = await service.apply_gateway_event(
            gateway_event(
                "charge.refunded",
                "evt_refund_1",
                payment["transaction_id"],
                refunds=[
                    {"gateway_refund_id": "re_1", "amount_cents": 5000, "reference": "REF-1", "status": "succeeded"}
                ],
            )
        )

        assert result.data["outcome"] == "applied"
        assert result.payment["refunds"]["REF-1"]["status"] == "completed"
        assert result.payment["refunds"]["REF-1"]["gateway_refund_id"] == "re_1"
        assert result.order["status"] == "partially_refunded"


class TestDisputes:
    """Test suite for dispute handling via the service."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_dispute_freezes_refunds_and_flags_order(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test disputed payment rejects refunds and the order needs review."""
        _, payment_id = await place_and_pay(service, cart)

        opened = await service.open_dispute(payment_id, Money.of("150.00"), "fraudulent", "gateway", dispute_id="DIS-1")

        assert opened.ok, opened.error
        assert opened.data["dispute_id"] == "DIS-1"
        assert opened.payment["status"] == "disputed"
        assert opened.order["status"] == "disputed"
        assert opened.order["needs_review"] is True

        refund = await service.request_refund(payment_id, Money.of("10.00"), "other", "admin")
        assert refund.status == "rejected"
        assert refund.error["code"] == "dispute_locked"
        assert gateway.calls_to("refund") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_won_dispute_restores_order(self, service: SettlementService, cart: List[CartLine]) -> None:
        """Test won → payment completed, order back to payment_confirmed."""
        _, payment_id = await place_and_pay(service, cart)
        await service.open_dispute(payment_id, Money.of("150.00"), "fraudulent", "gateway", dispute_id="DIS-1")
        reviewed = await service.review_dispute(payment_id, "DIS-1", "admin")
        assert reviewed.payment["disputes"]["DIS-1"]["status"] == "under_review"

        result = await service.resolve_dispute(payment_id, "DIS-1", "won", "admin", note="evidence accepted")

        assert result.payment["status"] == "completed"
        assert result.order["status"] == "payment_confirmed"
        assert result.order["needs_review"] is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lost_dispute_refunds_order(self, service: SettlementService, cart: List[CartLine]) -> None:
        """Test lost → payment and order refunded."""
        _, payment_id = await place_and_pay(service, cart)
        await service.open_dispute(payment_id, Money.of("150.00"), "fraudulent", "gateway", dispute_id="DIS-1")

        result = await service.resolve_dispute(payment_id, "DIS-1", "lost", "admin")

        assert result.payment["status"] == "refunded"
        assert result.order["status"] == "refunded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_dispute_is_not_found(self, service: SettlementService, cart: List[CartLine]) -> None:
        """Test resolving a dispute that does not exist."""
        _, payment_id = await place_and_pay(service, cart)

        result = await service.resolve_dispute(payment_id, "DIS-missing", "won", "admin")

        assert result.status == "not_found"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_outcome_is_rejected(self, service: SettlementService, cart: List[CartLine]) -> None:
        """Test an outcome other than won or lost leaves the dispute open."""
        _, payment_id = await place_and_pay(service, cart)
        await service.open_dispute(payment_id, Money.of("150.00"), "fraudulent", "gateway", dispute_id="DIS-1")

        for outcome in ("maybe", "under_review"):
            result = await service.resolve_dispute(payment_id, "DIS-1", outcome, "admin")

            assert result.status == "rejected"
            assert result.error["code"] == "validation_error"
            assert result.payment["status"] == "disputed"
            assert result.payment["disputes"]["DIS-1"]["status"] == "open"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispute_in_another_currency_is_rejected(
        self, service: SettlementService, cart: List[CartLine]
    ) -> None:
        """Test a dispute amount must be in the payment currency."""
        _, payment_id = await place_and_pay(service, cart)

        result = await service.open_dispute(payment_id, Money.of("10.00", "EUR"), "fraudulent", "admin")

        assert result.status == "rejected"
        assert result.payment["status"] == "completed"


class TestReturnRefunds:
    """Test suite for refunds issued for returns."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_return_refund_flow(
        self,
        service: SettlementService,
        cart: List[CartLine],
        inventory: InMemoryInventoryService,
    ) -> None:
        """
        Test Scenario: buyer returns one of two copies of item-1

        Expected: $50 refund, return refunded, order partially_refunded,
        stock released back to available.
        """
        order_id, _ = await place_and_pay(service, cart)
        await deliver_all(service, order_id)
        assert (await service.get_order(order_id)).order["status"] == "completed"

        requested = await service.request_return(order_id, {"item-1": 1}, "defective", "buyer-1")
        return_id = requested.data["return_id"]
        await service.approve_return(order_id, return_id, "vendor-a")
        await service.receive_return(order_id, return_id, "vendor-a")

        result = await service.refund_return(order_id, return_id, "admin")

        assert result.ok, result.error
        assert result.data["refund_status"] == "completed"
        assert result.order["returns"][return_id]["status"] == "refunded"
        assert result.order["items"]["item-1"]["returned_quantity"] == 1
        assert result.order["status"] == "partially_refunded"
        assert result.payment["status"] == "partially_refunded"
        assert result.payment["refunds"][result.data["refund_id"]]["reason"] == "item_returned"
        assert inventory.available["prod-1"] == 9

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requested_return_can_not_be_refunded(self, service: SettlementService, cart: List[CartLine]) -> None:
        """Test a return must be approved before it is refunded."""
        order_id, _ = await place_and_pay(service, cart)
        await deliver_all(service, order_id)
        requested = await service.request_return(order_id, {"item-2": 1}, "changed_mind", "buyer-1")

        result = await service.refund_return(order_id, requested.data["return_id"], "admin")

        assert result.status == "rejected"
        assert result.error["code"] == "illegal_transition"
