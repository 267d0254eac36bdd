"""
Wiring for the settlement core.

Storage is picked from settings: SQL repositories, ledger and queue when
``DATABASE_URL`` is set, a Redis ledger when ``REDIS_URL`` is set, in-memory
stores otherwise. Everything can be overridden, which is what tests do.
"""

from __future__ import annotations

from typing import Optional

import structlog

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.core.coordinator import ReconciliationCoordinator
from marketplace_settlement.core.effects import SideEffectExecutor
from marketplace_settlement.core.orders import OrderWorkflow
from marketplace_settlement.core.payments import PaymentWorkflow
from marketplace_settlement.core.refunds import RefundDisputeManager
from marketplace_settlement.core.service import SettlementService
from marketplace_settlement.core.transactions import AggregateMutator
from marketplace_settlement.domain.commission import CommissionRateSource, CommissionResolver
from marketplace_settlement.domain.errors import ConfigurationError
from marketplace_settlement.infrastructure.connection import create_engine, make_session_factory
from marketplace_settlement.infrastructure.deferred_queue import (
    DeferredCommandQueue,
    InMemoryDeferredCommandQueue,
)
from marketplace_settlement.infrastructure.event_log import (
    InMemoryProcessedEventLog,
    ProcessedEventLog,
    RedisProcessedEventLog,
)
from marketplace_settlement.infrastructure.repository import (
    InMemoryOrderRepository,
    InMemoryPaymentRepository,
    OrderRepository,
    PaymentRepository,
)
from marketplace_settlement.infrastructure.sql_repository import (
    SqlAlchemyOrderRepository,
    SqlAlchemyPaymentRepository,
    SqlDeferredCommandQueue,
    SqlProcessedEventLog,
)
from marketplace_settlement.integrations.collaborators import (
    InMemoryInventoryService,
    InventoryService,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
)
from marketplace_settlement.integrations.gateway import PaymentGateway
from marketplace_settlement.integrations.stripe_gateway import StripeGateway

logger = structlog.get_logger(__name__)


def create_service(
    settings: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
    inventory: Optional[InventoryService] = None,
    notifier: Optional[NotificationDispatcher] = None,
    orders: Optional[OrderRepository] = None,
    payments: Optional[PaymentRepository] = None,
    ledger: Optional[ProcessedEventLog] = None,
    queue: Optional[DeferredCommandQueue] = None,
    resolver: Optional[CommissionRateSource] = None,
) -> SettlementService:
    """Assemble a SettlementService; call ``init_db`` first when using SQL storage."""
    settings = settings or get_settings()

    if settings.database_url and None in (orders, payments, queue):
        session_factory = make_session_factory(create_engine(settings))
        orders = orders or SqlAlchemyOrderRepository(session_factory)
        payments = payments or SqlAlchemyPaymentRepository(session_factory)
        queue = queue or SqlDeferredCommandQueue(session_factory)
        if ledger is None and not settings.redis_url:
            ledger = SqlProcessedEventLog(session_factory)

    if ledger is None and settings.redis_url:
        ledger = RedisProcessedEventLog.from_url(settings.redis_url, settings.processed_event_ttl_seconds)

    if inventory is None:
        if settings.is_production and not settings.allow_in_memory_inventory:
            raise ConfigurationError(
                "No inventory service configured; pass inventory= to create_service "
                "(or set ALLOW_IN_MEMORY_INVENTORY for a single-process deployment)"
            )
        logger.warning("inventory_service_not_configured", fallback="in_memory", app_env=settings.app_env)
        inventory = InMemoryInventoryService()

    mutator = AggregateMutator(
        orders or InMemoryOrderRepository(),
        payments or InMemoryPaymentRepository(),
        settings,
    )
    executor = SideEffectExecutor(
        inventory,
        notifier or LoggingNotificationDispatcher(),
        queue or InMemoryDeferredCommandQueue(),
        settings,
    )
    gateway = gateway or StripeGateway(settings)

    order_workflow = OrderWorkflow(mutator, executor, resolver or CommissionResolver.from_settings(settings), settings)
    payment_workflow = PaymentWorkflow(mutator, gateway, executor, settings)
    refund_manager = RefundDisputeManager(mutator, gateway, executor, settings)
    coordinator = ReconciliationCoordinator(
        mutator,
        gateway,
        ledger or InMemoryProcessedEventLog(settings.processed_event_ttl_seconds),
        executor,
        payment_workflow,
        settings,
    )

    # Dependent steps that run after a committed write and are retried from the queue
    executor.register_handler("refund_request", refund_manager.refund_for_order)
    executor.register_handler("payment_cancellation", payment_workflow.cancel_for_order)
    executor.register_handler("order_payment_sync", order_workflow.handle_sync)

    logger.info(
        "settlement_service_created",
        storage="sql" if settings.database_url else "memory",
        ledger=type(coordinator.ledger).__name__,
        gateway=type(gateway).__name__,
    )
    return SettlementService(
        mutator=mutator,
        executor=executor,
        orders=order_workflow,
        payments=payment_workflow,
        refunds=refund_manager,
        coordinator=coordinator,
        settings=settings,
    )
