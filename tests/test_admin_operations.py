"""
Admin operations through the service: void, capture bounds, fees and erasure.
"""
from typing import List

import pytest

from marketplace_settlement.core.service import SettlementService
from marketplace_settlement.domain.errors import GatewayError
from marketplace_settlement.domain.order import CartLine
from marketplace_settlement.domain.payment import PaymentFees
from marketplace_settlement.domain.value_objects import Money
from marketplace_settlement.integrations.gateway import GatewayStatus
from tests.conftest import FakeGateway, place, place_and_pay


class TestVoidPayment:
    """Test suite for SettlementService.void_payment."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_void_authorized_payment(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test the hold is released at the gateway before the status moves."""
        _, payment_id = await place(service, cart)
        await service.authorize_payment(payment_id, actor="buyer-1")

        result = await service.void_payment(payment_id, actor="admin", note="fraud review")

        assert result.status == "ok", result.error
        assert result.payment["status"] == "cancelled"
        assert len(gateway.calls_to("void")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_void_is_idempotent(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test a second void is a no-op."""
        _, payment_id = await place(service, cart)
        await service.authorize_payment(payment_id, actor="buyer-1")
        await service.void_payment(payment_id, actor="admin")

        result = await service.void_payment(payment_id, actor="admin")

        assert result.status == "ok"
        assert len(gateway.calls_to("void")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_collected_payment_cannot_be_voided(
        self, service: SettlementService, cart: List[CartLine]
    ) -> None:
        """Test money already taken must be refunded instead."""
        _, payment_id = await place_and_pay(service, cart)

        result = await service.void_payment(payment_id, actor="admin")

        assert result.status == "rejected"
        assert result.error["code"] == "illegal_transition"
        assert (await service.get_payment(payment_id)).payment["status"] == "completed"


class TestCapturePayment:
    """Test suite for SettlementService.capture_payment."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_above_authorization_is_rejected(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test captured amount never exceeds the authorized amount."""
        _, payment_id = await place(service, cart)
        authorized = await service.authorize_payment(payment_id, actor="buyer-1")
        too_much = Money.of(authorized.payment["amount"]["amount"]) + Money.of("0.01")

        result = await service.capture_payment(payment_id, actor="admin", amount=too_much)

        assert result.status == "rejected"
        assert gateway.calls_to("capture") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_requires_authorization(
        self, service: SettlementService, cart: List[CartLine]
    ) -> None:
        """Test a pending payment cannot be captured."""
        _, payment_id = await place(service, cart)

        result = await service.capture_payment(payment_id, actor="admin")

        assert result.status == "rejected"


class TestPaymentFees:
    """Test suite for SettlementService.record_payment_fees."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fees_recorded_with_total(self, service: SettlementService, cart: List[CartLine]) -> None:
        """Test the fee breakdown lands on the payment."""
        _, payment_id = await place_and_pay(service, cart)
        fees = PaymentFees(
            gateway_fee=Money.of("4.65"),
            platform_fee=Money.of("1.00"),
            processing_fee=Money.of("0.35"),
        )

        result = await service.record_payment_fees(payment_id, fees, actor="system")

        assert result.status == "ok", result.error
        stored = PaymentFees.model_validate(result.payment["fees"])
        assert stored.total == Money.of("6.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fee_currency_must_match(self, service: SettlementService, cart: List[CartLine]) -> None:
        """Test fees in another currency are rejected."""
        _, payment_id = await place_and_pay(service, cart)
        fees = PaymentFees(
            gateway_fee=Money.of("1.00", "EUR"),
            platform_fee=Money.of("1.00", "EUR"),
            processing_fee=Money.of("1.00", "EUR"),
        )

        result = await service.record_payment_fees(payment_id, fees, actor="system")

        assert result.status == "rejected"
        assert (await service.get_payment(payment_id)).payment["fees"] is None


class TestEraseOrder:
    """Test suite for SettlementService.erase_order."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_erase_cancelled_order(self, service: SettlementService, cart: List[CartLine]) -> None:
        """
        Test Scenario: buyer asks for erasure of a cancelled order

        Expected: personal data is dropped, amounts and history stay.
        """
        order_id, _ = await place(service, cart)
        cancelled = await service.cancel_order(order_id, "changed my mind", actor="buyer-1")
        total = cancelled.order["pricing"]["total"]
        history = len(cancelled.order["status_history"])

        result = await service.erase_order(order_id, actor="admin")

        assert result.status == "ok", result.error
        assert result.order["buyer_id"] == "erased"
        assert result.order["shipping"]["address"] == {}
        assert result.order["deleted_at"] is not None
        assert result.order["pricing"]["total"] == total
        assert len(result.order["status_history"]) == history

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_order_cannot_be_erased(self, service: SettlementService, cart: List[CartLine]) -> None:
        """Test erasure waits for a terminal status."""
        order_id, _ = await place(service, cart)

        result = await service.erase_order(order_id, actor="admin")

        assert result.status == "rejected"
        assert (await service.get_order(order_id)).order["buyer_id"] == "buyer-1"


class TestGatewayRefusals:
    """Test suite for capture and void when the gateway does not go along."""

    @staticmethod
    async def _authorized(service: SettlementService, cart: List[CartLine]) -> tuple:
        _, payment_id = await place(service, cart)
        authorized = await service.authorize_payment(payment_id, actor="buyer-1")
        assert authorized.status == "ok", authorized.error
        return payment_id, authorized.payment["version"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("reported", [GatewayStatus.FAILED, GatewayStatus.CANCELLED])
    async def test_refused_capture_leaves_payment_authorized(
        self,
        service: SettlementService,
        cart: List[CartLine],
        gateway: FakeGateway,
        reported: GatewayStatus,
    ) -> None:
        """
        Test Scenario: gateway answers the capture with a failed/cancelled status

        Expected: gateway_error, payment still authorized, nothing written.
        """
        payment_id, version = await self._authorized(service, cart)
        gateway.statuses["capture"] = reported

        result = await service.capture_payment(payment_id, actor="admin")

        assert result.status == "gateway_error"
        assert result.error["operation"] == "capture"
        assert result.payment["status"] == "authorized"
        assert result.payment["captured_amount"] is None
        assert result.payment["version"] == version

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_error_leaves_payment_authorized(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test a raised gateway error changes nothing locally."""
        payment_id, version = await self._authorized(service, cart)
        gateway.errors["capture"] = GatewayError("Your card was declined.", operation="capture")

        result = await service.capture_payment(payment_id, actor="admin")

        assert result.status == "gateway_error"
        assert result.payment["status"] == "authorized"
        assert result.payment["version"] == version

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refused_void_leaves_payment_authorized(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test the authorization stays when the gateway would not cancel it."""
        payment_id, version = await self._authorized(service, cart)
        gateway.statuses["void"] = GatewayStatus.FAILED

        result = await service.void_payment(payment_id, actor="admin")

        assert result.status == "gateway_error"
        assert result.error["operation"] == "void"
        assert result.payment["status"] == "authorized"
        assert result.payment["version"] == version

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_void_error_leaves_payment_authorized(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test a raised gateway error on void changes nothing locally."""
        payment_id, version = await self._authorized(service, cart)
        gateway.errors["void"] = GatewayError("Gateway unavailable", operation="void", retryable=True)

        result = await service.void_payment(payment_id, actor="admin")

        assert result.status == "gateway_error"
        assert result.payment["status"] == "authorized"
        assert result.payment["version"] == version

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_in_another_currency_is_rejected(
        self, service: SettlementService, cart: List[CartLine], gateway: FakeGateway
    ) -> None:
        """Test the currency is checked before any amount comparison."""
        payment_id, version = await self._authorized(service, cart)

        result = await service.capture_payment(payment_id, actor="admin", amount=Money.of("10.00", "EUR"))

        assert result.status == "rejected"
        assert result.error["code"] == "validation_error"
        assert result.payment["version"] == version
        assert gateway.calls_to("capture") == []
