"""External integrations: payment gateway, inventory and notifications."""
from marketplace_settlement.integrations.collaborators import (
    InMemoryInventoryService,
    InventoryService,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
)
from marketplace_settlement.integrations.gateway import (
    GatewayEvent,
    GatewayResult,
    GatewayStatus,
    PaymentGateway,
    call_gateway,
)

__all__ = [
    "GatewayEvent",
    "GatewayResult",
    "GatewayStatus",
    "InMemoryInventoryService",
    "InventoryService",
    "LoggingNotificationDispatcher",
    "NotificationDispatcher",
    "PaymentGateway",
    "call_gateway",
]
