"""Persistence adapters: repositories, processed-event ledger, deferred queue."""
from marketplace_settlement.infrastructure.deferred_queue import (
    DeferredCommand,
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

__all__ = [
    "DeferredCommand",
    "DeferredCommandQueue",
    "InMemoryDeferredCommandQueue",
    "InMemoryOrderRepository",
    "InMemoryPaymentRepository",
    "InMemoryProcessedEventLog",
    "OrderRepository",
    "PaymentRepository",
    "ProcessedEventLog",
    "RedisProcessedEventLog",
]
