"""
Reconciliation background worker.

Every ``reconciliation_interval_seconds``:
- expires payments the buyer abandoned past the payment window (the gateway
  is asked first, so a payment that actually went through is completed)
- re-drives refunds whose gateway outcome is still unknown
"""
import asyncio
import signal
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from marketplace_settlement.bootstrap import create_service
from marketplace_settlement.config import get_settings
from marketplace_settlement.core.service import SettlementService
from marketplace_settlement.infrastructure.connection import close_db, init_db
from marketplace_settlement.monitoring.logging import settlement_context, setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation_pass(
    service: SettlementService, now: Optional[datetime] = None
) -> Dict[str, Dict[str, int]]:
    """Run one scheduled reconciliation pass."""
    with settlement_context(worker="reconciliation"):
        logger.info("reconciliation_pass_started")
        expiry = await service.expire_stale_payments(now)
        refunds = await service.retry_pending_refunds()

    if expiry["failed"] or refunds["pending"]:
        logger.warning(
            "reconciliation_items_outstanding",
            expiry_failures=expiry["failed"],
            refunds_still_pending=refunds["pending"],
        )

    logger.info("reconciliation_pass_completed", expiry=expiry, refunds=refunds)
    return {"expiry": expiry, "refunds": refunds}


async def start_reconciliation_worker(
    service: Optional[SettlementService] = None,
    interval_seconds: Optional[float] = None,
) -> None:
    """
    Start the reconciliation worker.

    Runs until SIGINT/SIGTERM.
    """
    setup_logging()
    settings = get_settings()
    if service is None:
        if settings.database_url:
            await init_db()
        service = create_service(settings)
    interval = interval_seconds or settings.reconciliation_interval_seconds

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_reconciliation_pass(service)
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e))
                # Continue running even if one pass fails

            # Sleep in short slices so a shutdown signal is noticed promptly
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        if settings.database_url:
            await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    asyncio.run(start_reconciliation_worker())


if __name__ == "__main__":
    main()
