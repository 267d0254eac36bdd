"""
Side-effect execution after commit.

Intents returned by aggregate transitions are executed here once the
aggregate is persisted. A failing intent never propagates: it is logged,
counted and handed to the deferred queue, where ``retry_deferred`` picks it
up with backoff until it succeeds or is dead-lettered.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable

import structlog

from marketplace_settlement.config import Settings
from marketplace_settlement.domain.effects import (
    InventoryAdjustment,
    Notification,
    SideEffect,
    parse_side_effect,
)
from marketplace_settlement.infrastructure.deferred_queue import DeferredCommandQueue
from marketplace_settlement.integrations.collaborators import InventoryService, NotificationDispatcher
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class SideEffectExecutor:
    """Runs side-effect intents, deferring the ones that fail."""

    def __init__(
        self,
        inventory: InventoryService,
        notifier: NotificationDispatcher,
        queue: DeferredCommandQueue,
        settings: Settings,
    ):
        self.inventory = inventory
        self.notifier = notifier
        self.queue = queue
        self.settings = settings
        self._handlers: dict[str, Handler] = {
            "inventory": self._adjust_inventory,
            "notification": self._notify,
        }

    def register_handler(self, kind: str, handler: Handler) -> None:
        """Wire a dependent step (refund, void, order sync) owned by another component."""
        self._handlers[kind] = handler

    async def _adjust_inventory(self, effect: InventoryAdjustment) -> None:
        action = getattr(self.inventory, effect.action)
        await action(effect.product_id, effect.quantity, effect.order_id)

    async def _notify(self, effect: Notification) -> None:
        await self.notifier.notify(effect.recipient, effect.template, effect.data)

    async def dispatch(self, effect: SideEffect) -> None:
        """Run one intent. Raises whatever the handler raises."""
        handler = self._handlers.get(effect.kind)
        if handler is None:
            raise LookupError(f"No handler registered for side effect {effect.kind!r}")
        await handler(effect)

    async def execute(self, effects: Iterable[SideEffect]) -> list[str]:
        """
        Run intents in order, fire-and-forget.

        Returns:
            Ids of the deferred commands created for intents that failed
        """
        deferred: list[str] = []
        for effect in effects:
            try:
                await self.dispatch(effect)
            except Exception as e:
                metrics.record_side_effect_failure(effect.kind)
                logger.error(
                    "side_effect_failed",
                    kind=effect.kind,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                deferred.append(await self.queue.enqueue(effect, error=str(e)))
        if deferred:
            metrics.set_deferred_queue_depth(await self.queue.pending_count())
        return deferred

    async def retry_deferred(self, limit: int = 100) -> dict[str, int]:
        """Retry due deferred commands once each."""
        stats = {"succeeded": 0, "failed": 0, "dead_lettered": 0}
        for command in await self.queue.due(limit=limit):
            try:
                await self.dispatch(parse_side_effect(command.payload))
            except Exception as e:
                dead = await self.queue.mark_failed(
                    command.id, str(e), max_attempts=self.settings.deferred_max_attempts
                )
                if dead:
                    stats["dead_lettered"] += 1
                    metrics.record_dead_letter(command.kind)
                    logger.critical(
                        "deferred_command_dead_lettered",
                        command_id=command.id,
                        kind=command.kind,
                        attempts=command.attempts + 1,
                        error=str(e),
                    )
                else:
                    stats["failed"] += 1
                    logger.warning(
                        "deferred_command_retry_failed",
                        command_id=command.id,
                        kind=command.kind,
                        attempts=command.attempts + 1,
                        error=str(e),
                    )
                continue

            await self.queue.mark_done(command.id)
            stats["succeeded"] += 1
            logger.info("deferred_command_completed", command_id=command.id, kind=command.kind)

        metrics.set_deferred_queue_depth(await self.queue.pending_count())
        return stats
