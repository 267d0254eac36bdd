"""Catalog/inventory and notification collaborators."""

from __future__ import annotations

from typing import Any, Protocol

import structlog

from marketplace_settlement.domain.errors import InvariantViolation

logger = structlog.get_logger(__name__)


class InventoryService(Protocol):
    async def reserve(self, product_id: str, quantity: int, order_id: str) -> None:
        ...

    async def release(self, product_id: str, quantity: int, order_id: str) -> None:
        ...

    async def decrement(self, product_id: str, quantity: int, order_id: str) -> None:
        ...


class NotificationDispatcher(Protocol):
    """Fire-and-forget delivery (email, push, in-app)."""

    async def notify(self, recipient: str, template: str, data: dict[str, Any]) -> None:
        ...


class LoggingNotificationDispatcher:
    """Dispatcher for local runs: writes notifications to the log."""

    async def notify(self, recipient: str, template: str, data: dict[str, Any]) -> None:
        logger.info("notification_dispatched", recipient=recipient, template=template, data=data)


class InMemoryInventoryService:
    """
    Stock ledger for tests and local runs.

    reserve moves stock from available to reserved, decrement consumes a
    reservation, release gives it back (or restocks returned goods).
    """

    def __init__(self, stock: dict[str, int] | None = None):
        self.available: dict[str, int] = dict(stock or {})
        self.reserved: dict[str, int] = {}

    async def reserve(self, product_id: str, quantity: int, order_id: str) -> None:
        if self.available.get(product_id, 0) < quantity:
            raise InvariantViolation(
                f"Insufficient stock for {product_id}", product_id=product_id, order_id=order_id
            )
        self.available[product_id] -= quantity
        self.reserved[product_id] = self.reserved.get(product_id, 0) + quantity

    async def decrement(self, product_id: str, quantity: int, order_id: str) -> None:
        self.reserved[product_id] = max(self.reserved.get(product_id, 0) - quantity, 0)

    async def release(self, product_id: str, quantity: int, order_id: str) -> None:
        held = self.reserved.get(product_id, 0)
        self.reserved[product_id] = max(held - quantity, 0)
        self.available[product_id] = self.available.get(product_id, 0) + quantity
