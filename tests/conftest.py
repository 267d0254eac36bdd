"""
Pytest configuration and fixtures.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from marketplace_settlement.bootstrap import create_service
from marketplace_settlement.config import Settings
from marketplace_settlement.core.service import SettlementService
from marketplace_settlement.domain.commission import CommissionResolver
from marketplace_settlement.domain.errors import GatewayError, InvalidSignature
from marketplace_settlement.domain.order import CartLine
from marketplace_settlement.domain.value_objects import Money
from marketplace_settlement.infrastructure.deferred_queue import InMemoryDeferredCommandQueue
from marketplace_settlement.infrastructure.event_log import InMemoryProcessedEventLog
from marketplace_settlement.infrastructure.repository import (
    InMemoryOrderRepository,
    InMemoryPaymentRepository,
)
from marketplace_settlement.integrations.collaborators import InMemoryInventoryService
from marketplace_settlement.integrations.gateway import GatewayEvent, GatewayResult, GatewayStatus

VALID_SIGNATURE = "t=1,v1=valid"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")


class FakeGateway:
    """
    Scriptable PaymentGateway.

    ``statuses`` sets what each operation reports, ``errors`` makes an
    operation raise, ``delays`` makes it hang (to hit the call timeout).
    """

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.statuses: Dict[str, GatewayStatus] = {
            "authorize": GatewayStatus.AUTHORIZED,
            "capture": GatewayStatus.SUCCEEDED,
            "void": GatewayStatus.CANCELLED,
            "retrieve": GatewayStatus.SUCCEEDED,
            "refund": GatewayStatus.SUCCEEDED,
        }
        self.errors: Dict[str, Exception] = {}
        self.delays: Dict[str, float] = {}

    def calls_to(self, operation: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["operation"] == operation]

    async def _respond(
        self, operation: str, transaction_id: str, reference: Optional[str] = None, **details: Any
    ) -> GatewayResult:
        self.calls.append({"operation": operation, "transaction_id": transaction_id, **details})
        if operation in self.delays:
            await asyncio.sleep(self.delays[operation])
        if operation in self.errors:
            raise self.errors[operation]
        return GatewayResult(
            transaction_id=transaction_id,
            status=self.statuses[operation],
            reference=reference,
        )

    async def authorize(
        self, amount: Money, method: str, idempotency_key: str, metadata: Optional[Dict[str, str]] = None
    ) -> GatewayResult:
        return await self._respond(
            "authorize",
            f"pi_{idempotency_key}",
            amount=amount,
            idempotency_key=idempotency_key,
            metadata=metadata or {},
        )

    async def capture(self, transaction_id: str, amount: Money) -> GatewayResult:
        return await self._respond("capture", transaction_id, amount=amount)

    async def refund(self, transaction_id: str, amount: Money, idempotency_key: str) -> GatewayResult:
        return await self._respond(
            "refund",
            transaction_id,
            reference=f"re_{idempotency_key}",
            amount=amount,
            idempotency_key=idempotency_key,
        )

    async def void(self, transaction_id: str) -> GatewayResult:
        return await self._respond("void", transaction_id)

    async def retrieve(self, transaction_id: str) -> GatewayResult:
        return await self._respond("retrieve", transaction_id)

    def verify_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        if signature != VALID_SIGNATURE:
            raise InvalidSignature("Invalid webhook signature")
        return GatewayEvent.model_validate(json.loads(payload))


class RecordingNotifier:
    """Notification dispatcher that records what was sent and can be made to fail."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None

    async def notify(self, recipient: str, template: str, data: Dict[str, Any]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"recipient": recipient, "template": template, "data": data})

    def templates(self) -> List[str]:
        return [n["template"] for n in self.sent]


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        app_name="marketplace-settlement-test",
        app_env="test",
        log_level="DEBUG",
        vendor_commission_rates={"vendor-a": "10", "vendor-b": "15"},
        conflict_retry_base_delay=0.0,
        gateway_timeout_seconds=0.05,
        database_url=None,
        redis_url=None,
        deferred_max_attempts=2,
    )


@pytest.fixture
def resolver(test_settings: Settings) -> CommissionResolver:
    return CommissionResolver.from_settings(test_settings)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def inventory() -> InMemoryInventoryService:
    return InMemoryInventoryService({"prod-1": 10, "prod-2": 10, "prod-3": 10})


@pytest.fixture
def order_repo() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def payment_repo() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()


@pytest.fixture
def ledger() -> InMemoryProcessedEventLog:
    return InMemoryProcessedEventLog()


@pytest.fixture
def queue() -> InMemoryDeferredCommandQueue:
    return InMemoryDeferredCommandQueue()


@pytest.fixture
def service(
    test_settings: Settings,
    gateway: FakeGateway,
    inventory: InMemoryInventoryService,
    notifier: RecordingNotifier,
    order_repo: InMemoryOrderRepository,
    payment_repo: InMemoryPaymentRepository,
    ledger: InMemoryProcessedEventLog,
    queue: InMemoryDeferredCommandQueue,
) -> SettlementService:
    """Settlement service wired to in-memory stores and the fake gateway."""
    return create_service(
        settings=test_settings,
        gateway=gateway,
        inventory=inventory,
        notifier=notifier,
        orders=order_repo,
        payments=payment_repo,
        ledger=ledger,
        queue=queue,
    )


@pytest.fixture
def cart() -> List[CartLine]:
    """Two vendors: vendor-a sells $100 worth, vendor-b $50."""
    return [
        CartLine(
            product_id="prod-1",
            vendor_id="vendor-a",
            store_id="store-a",
            category="books",
            name="Field Guide",
            unit_price=Money.of("50.00"),
            quantity=2,
        ),
        CartLine(
            product_id="prod-2",
            vendor_id="vendor-b",
            store_id="store-b",
            category="games",
            name="Board Game",
            unit_price=Money.of("50.00"),
            quantity=1,
        ),
    ]


async def place(service: SettlementService, cart: List[CartLine]) -> tuple:
    """Place an order; returns (order_id, payment_id)."""
    result = await service.place_order("buyer-1", cart, "card", actor="buyer-1")
    assert result.ok, result.error
    return result.order["id"], result.payment["id"]


async def place_and_pay(service: SettlementService, cart: List[CartLine]) -> tuple:
    """Place an order and collect its payment (authorize, then capture)."""
    order_id, payment_id = await place(service, cart)
    authorized = await service.authorize_payment(payment_id, actor="buyer-1")
    assert authorized.ok, authorized.error
    captured = await service.capture_payment(payment_id, actor="system")
    assert captured.ok, captured.error
    return order_id, payment_id


async def deliver_all(service: SettlementService, order_id: str) -> None:
    """Walk a confirmed order through fulfillment until every item is delivered."""
    for status in ("processing", "ready", "shipped"):
        result = await service.update_order_status(order_id, status, actor="vendor-a")
        assert result.ok, result.error
    order = (await service.get_order(order_id)).order
    for item_id in order["items"]:
        result = await service.mark_item_delivered(order_id, item_id, actor="carrier")
        assert result.ok, result.error


@pytest_asyncio.fixture
async def paid_order(service: SettlementService, cart: List[CartLine]) -> tuple:
    """An order whose payment is completed: (order_id, payment_id)."""
    return await place_and_pay(service, cart)


def gateway_event(
    event_type: str,
    event_id: str,
    transaction_id: Optional[str] = None,
    **payload: Any,
) -> GatewayEvent:
    return GatewayEvent(event_id=event_id, type=event_type, transaction_id=transaction_id, payload=payload)
