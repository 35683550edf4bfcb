"""
Subscription status reconciliation against the gateway.

Subscription status is gateway-owned. This engine reads every
non-terminal subscription back from the gateway and records any change,
so missed or delayed webhooks are eventually corrected.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.core.subscription_ledger import SubscriptionLedger
from settlement.database.models import LIVE_SUBSCRIPTION_STATUSES, Subscription
from settlement.integrations.razorpay_client import GatewayError
from settlement.monitoring.metrics import metrics
from settlement.timeutils import to_naive_utc

logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationReport:
    checked: int = 0
    changed: int = 0
    errors: List[str] = field(default_factory=list)


class SubscriptionReconciler:
    """Refreshes local subscription statuses from the gateway."""

    def __init__(self, subscription_ledger: SubscriptionLedger):
        self.subscription_ledger = subscription_ledger
        self.gateway = subscription_ledger.gateway
        logger.info("subscription_reconciler_initialized")

    async def refresh_statuses(
        self, db: AsyncSession, limit: Optional[int] = None
    ) -> ReconciliationReport:
        """
        Fetch each non-terminal subscription and record status changes.

        A gateway failure for one subscription is logged and skipped; the
        rest of the run continues.
        """
        stmt = (
            select(Subscription.razorpay_subscription_id)
            .where(Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES))
            .order_by(Subscription.updated_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        gateway_ids = list((await db.execute(stmt)).scalars().all())

        report = ReconciliationReport()
        logger.info("subscription_refresh_started", count=len(gateway_ids))

        for gateway_id in gateway_ids:
            report.checked += 1
            try:
                remote = await self.gateway.fetch_subscription(gateway_id)
            except GatewayError as e:
                report.errors.append(gateway_id)
                logger.error(
                    "subscription_refresh_failed",
                    subscription_id=gateway_id,
                    error_code=e.code,
                    error=e.message,
                )
                continue

            ended_at = None
            if remote.ended_at:
                ended_at = to_naive_utc(
                    datetime.fromtimestamp(remote.ended_at, tz=timezone.utc)
                )
            transition = await self.subscription_ledger.update_status(
                db, gateway_id, remote.status, source="reconciliation", ended_at=ended_at
            )
            if transition.changed:
                report.changed += 1

        metrics.mark_subscription_sync_run()
        logger.info(
            "subscription_refresh_completed",
            checked=report.checked,
            changed=report.changed,
            errors=len(report.errors),
        )
        return report
