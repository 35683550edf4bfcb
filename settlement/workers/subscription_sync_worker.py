"""
Subscription status sync background worker.

Periodically reads every live subscription back from the gateway so
statuses stay correct when webhooks are missed.
"""
import asyncio
import signal
from typing import Any

import structlog

from settlement.config import get_settings
from settlement.core.reconciliation import SubscriptionReconciler
from settlement.core.subscription_ledger import SubscriptionLedger
from settlement.database.connection import close_db, get_session_factory
from settlement.integrations.razorpay_client import RazorpayClient
from settlement.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_subscription_sync(reconciler: SubscriptionReconciler) -> None:
    """Run one refresh pass in its own session."""
    logger.info("subscription_sync_started")
    session_factory = get_session_factory()
    async with session_factory() as db:
        report = await reconciler.refresh_statuses(db)

    if report.errors:
        logger.warning(
            "subscription_sync_incomplete",
            failed=len(report.errors),
            subscription_ids=report.errors,
        )


async def start_subscription_sync_worker() -> None:
    """
    Start the subscription sync worker.

    Runs every ``subscription_sync_interval_seconds`` until stopped.
    """
    setup_logging()
    settings = get_settings()
    interval = settings.subscription_sync_interval_seconds

    logger.info("subscription_sync_worker_starting", interval_seconds=interval)

    gateway = RazorpayClient(settings)
    reconciler = SubscriptionReconciler(SubscriptionLedger(gateway, settings))
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("subscription_sync_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_subscription_sync(reconciler)
            except Exception as e:
                # Keep the worker alive; the next pass retries everything.
                logger.error("subscription_sync_failed", error=str(e))

            # Sleep in short steps so a shutdown signal is noticed promptly.
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 5.0)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        await gateway.close()
        await close_db()
        logger.info("subscription_sync_worker_stopped")


def main() -> None:
    asyncio.run(start_subscription_sync_worker())


if __name__ == "__main__":
    main()
