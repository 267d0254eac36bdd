"""
Deferred command worker.

Polls the deferred queue and retries side effects and dependent steps
(notifications, inventory, order syncs, cancellation refunds and voids)
that failed after their aggregate was committed.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from marketplace_settlement.bootstrap import create_service
from marketplace_settlement.config import get_settings
from marketplace_settlement.core.service import SettlementService
from marketplace_settlement.infrastructure.connection import close_db, init_db
from marketplace_settlement.monitoring.logging import settlement_context, setup_logging

logger = structlog.get_logger(__name__)


async def run_deferred_pass(service: SettlementService, batch_size: int = 100) -> Dict[str, int]:
    """Retry one batch of due commands."""
    with settlement_context(worker="deferred"):
        stats = await service.retry_deferred(limit=batch_size)
    if any(stats.values()):
        logger.info("deferred_pass_completed", **stats)
    return stats


async def start_deferred_worker(
    service: Optional[SettlementService] = None,
    poll_interval_seconds: Optional[float] = None,
    batch_size: int = 100,
) -> None:
    """
    Start the deferred command worker.

    Runs continuously until SIGINT/SIGTERM.
    """
    setup_logging()
    settings = get_settings()
    if service is None:
        if settings.database_url:
            await init_db()
        service = create_service(settings)
    interval = poll_interval_seconds or settings.deferred_poll_interval_seconds

    logger.info("deferred_worker_starting", poll_interval_seconds=interval, batch_size=batch_size)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("deferred_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_deferred_pass(service, batch_size)
            except Exception as e:
                # Keep polling; the queue is the source of truth
                logger.error("deferred_pass_error", error=str(e))
            await asyncio.sleep(interval)
    finally:
        if settings.database_url:
            await close_db()
        logger.info("deferred_worker_stopped")


def main() -> None:
    asyncio.run(start_deferred_worker())


if __name__ == "__main__":
    main()
