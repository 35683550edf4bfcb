"""
Subscription ledger for recurring billing.

Plans are created lazily, once per sport. Concurrent first-time callers
for the same sport are serialized by a per-sport lock, and the plan id is
persisted with a compare-and-set so only the first writer wins even
across processes; a loser re-reads and uses the winner's plan.

Subscription creation is serialized per (user, batch) the same way, and a
partial unique index keeps a second live row out when two processes race.
"""
import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import Settings, get_settings
from settlement.core.outbox import write_outbox_event
from settlement.core.payment_ledger import parse_uuid
from settlement.database.models import (
    LIVE_SUBSCRIPTION_STATUSES,
    TERMINAL_SUBSCRIPTION_STATUSES,
    Batch,
    Sport,
    Subscription,
    User,
)
from settlement.exceptions import NotFoundError, ValidationError
from settlement.integrations.razorpay_client import RazorpayClient
from settlement.monitoring.metrics import metrics
from settlement.timeutils import utcnow

logger = structlog.get_logger(__name__)


@dataclass
class SubscriptionTransition:
    subscription: Subscription
    changed: bool


def subscription_payload(subscription: Subscription) -> Dict[str, Any]:
    return {
        "subscription_id": str(subscription.id),
        "razorpay_subscription_id": subscription.razorpay_subscription_id,
        "user_id": str(subscription.user_id),
        "batch_id": str(subscription.batch_id),
        "sport_id": str(subscription.sport_id),
        "plan_id": subscription.plan_id,
        "status": subscription.status,
        "amount": subscription.amount,
        "currency": subscription.currency,
    }


class SubscriptionLedger:
    """Owns plan caching and the Subscription record lifecycle."""

    def __init__(
        self,
        gateway: Optional[RazorpayClient] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway or RazorpayClient(self.settings)
        self._plan_locks: Dict[uuid.UUID, asyncio.Lock] = {}
        self._subscriber_locks: Dict[Tuple[uuid.UUID, uuid.UUID], asyncio.Lock] = {}

    def _plan_lock(self, sport_id: uuid.UUID) -> asyncio.Lock:
        return self._plan_locks.setdefault(sport_id, asyncio.Lock())

    def _subscriber_lock(self, user_id: uuid.UUID, batch_id: uuid.UUID) -> asyncio.Lock:
        return self._subscriber_locks.setdefault((user_id, batch_id), asyncio.Lock())

    async def _get_sport(self, db: AsyncSession, sport_id: uuid.UUID) -> Sport:
        sport = await db.get(Sport, sport_id, populate_existing=True)
        if sport is None:
            raise NotFoundError("Sport", sport_id)
        return sport

    async def ensure_plan(self, db: AsyncSession, sport_id: Any) -> str:
        """
        Return the sport's gateway plan id, creating the plan on first use.

        Raises:
            NotFoundError: If the sport is missing
            ConfigurationError: If gateway credentials are missing
            GatewayError: If plan creation fails (nothing is persisted)
        """
        sid = parse_uuid(sport_id, "Sport")
        sport = await self._get_sport(db, sid)
        if sport.razorpay_plan_id:
            metrics.record_plan_cache("hit")
            return sport.razorpay_plan_id

        async with self._plan_lock(sid):
            sport = await self._get_sport(db, sid)
            if sport.razorpay_plan_id:
                metrics.record_plan_cache("hit")
                return sport.razorpay_plan_id

            plan = await self.gateway.create_plan(
                name=f"{sport.name} Subscription",
                amount=sport.price_per_month,
                currency=self.settings.default_currency,
                description=sport.description or "Subscription plan",
                period=self.settings.subscription_period,
            )

            result = await db.execute(
                update(Sport)
                .where(Sport.id == sid, Sport.razorpay_plan_id.is_(None))
                .values(razorpay_plan_id=plan.id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

            if result.rowcount == 1:
                metrics.record_plan_cache("created")
                logger.info("plan_cached", sport_id=str(sid), plan_id=plan.id)
                return plan.id

            # Another process cached a plan first; ours is left unused on the gateway.
            sport = await self._get_sport(db, sid)
            metrics.record_plan_cache("lost_race")
            logger.warning(
                "plan_cache_race_lost",
                sport_id=str(sid),
                plan_id=sport.razorpay_plan_id,
                orphaned_plan_id=plan.id,
            )
            return sport.razorpay_plan_id

    async def find_live_subscription(
        self, db: AsyncSession, user_id: uuid.UUID, batch_id: uuid.UUID
    ) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.batch_id == batch_id,
                Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
            )
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _reject_live_duplicate(
        self, db: AsyncSession, user_id: uuid.UUID, batch_id: uuid.UUID, batch_name: str
    ) -> None:
        existing = await self.find_live_subscription(db, user_id, batch_id)
        if existing is None:
            return
        logger.warning(
            "duplicate_subscription_rejected",
            user_id=str(user_id),
            batch_id=str(batch_id),
            subscription_id=existing.razorpay_subscription_id,
            status=existing.status,
        )
        raise ValidationError(
            f"User already has a {existing.status} subscription for batch {batch_name}"
        )

    async def create_subscription(
        self,
        db: AsyncSession,
        user_id: Any,
        batch_id: Any,
        sport_id: Any,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a gateway subscription and persist it.

        Returns the parameters the checkout needs: subscription id, public
        key, plan id, amount, currency and display names.

        Raises:
            ConfigurationError: If gateway credentials are missing
            NotFoundError: If the user, batch or sport is missing
            ValidationError: If the batch is not for this sport, or the user
                already holds a live subscription for the batch
            GatewayError: If plan or subscription creation fails
        """
        key_id = self.gateway.key_id

        uid = parse_uuid(user_id, "User")
        bid = parse_uuid(batch_id, "Batch")
        sid = parse_uuid(sport_id, "Sport")
        if await db.get(User, uid) is None:
            raise NotFoundError("User", user_id)
        batch = await db.get(Batch, bid)
        if batch is None:
            raise NotFoundError("Batch", batch_id)
        sport = await self._get_sport(db, sid)
        if batch.sport_id != sport.id:
            raise ValidationError(f"Batch {batch.id} does not belong to sport {sport.id}")

        batch_name, sport_name = batch.name, sport.name

        async with self._subscriber_lock(uid, bid):
            await self._reject_live_duplicate(db, uid, bid, batch_name)

            plan_id = await self.ensure_plan(db, sid)
            remote = await self.gateway.create_subscription(
                plan_id=plan_id,
                total_count=self.settings.subscription_total_count,
                notes={"batch": batch_name, "sport": sport_name, "user_id": str(uid)},
            )

            subscription = Subscription(
                id=uuid.uuid4(),
                idempotency_key=idempotency_key,
                user_id=uid,
                batch_id=bid,
                sport_id=sid,
                razorpay_subscription_id=remote.id,
                status=remote.status,
                plan_id=plan_id,
                amount=sport.price_per_month,
                currency=self.settings.default_currency,
                start_date=utcnow(),
            )
            db.add(subscription)
            write_outbox_event(
                db,
                subscription.id,
                "subscription",
                "subscription.created",
                subscription_payload(subscription),
            )
            try:
                await db.commit()
            except IntegrityError:
                # Another process stored a live subscription for this seat first.
                await db.rollback()
                logger.error(
                    "duplicate_subscription_orphaned",
                    user_id=str(uid),
                    batch_id=str(bid),
                    orphaned_subscription_id=remote.id,
                )
                await self._reject_live_duplicate(db, uid, bid, batch_name)
                raise

        metrics.record_subscription_created()
        logger.info(
            "subscription_created",
            subscription_id=remote.id,
            user_id=str(uid),
            batch_id=str(bid),
            plan_id=plan_id,
            status=remote.status,
        )
        return {
            "id": str(subscription.id),
            "subscription_id": remote.id,
            "key": key_id,
            "plan_id": plan_id,
            "amount": subscription.amount,
            "currency": subscription.currency,
            "batch_name": batch_name,
            "sport_name": sport_name,
        }

    async def get_by_gateway_id(
        self, db: AsyncSession, razorpay_subscription_id: str
    ) -> Subscription:
        stmt = (
            select(Subscription)
            .where(Subscription.razorpay_subscription_id == razorpay_subscription_id)
            .execution_options(populate_existing=True)
        )
        subscription = (await db.execute(stmt)).scalar_one_or_none()
        if subscription is None:
            raise NotFoundError("Subscription", razorpay_subscription_id)
        return subscription

    async def update_status(
        self,
        db: AsyncSession,
        razorpay_subscription_id: str,
        status: str,
        source: str,
        only_from: Optional[Sequence[str]] = None,
        ended_at: Optional[datetime] = None,
    ) -> SubscriptionTransition:
        """
        Record a gateway-reported status.

        The write is conditioned on the status it was read with, so a
        concurrent refresh cannot be overwritten blindly. ``only_from``
        restricts which current statuses may be replaced.

        Raises:
            NotFoundError: If no subscription has this gateway id
        """
        subscription = await self.get_by_gateway_id(db, razorpay_subscription_id)
        previous = subscription.status
        if previous == status or (only_from is not None and previous not in only_from):
            return SubscriptionTransition(subscription, False)

        values: Dict[str, Any] = {"status": status, "updated_at": utcnow()}
        if status in TERMINAL_SUBSCRIPTION_STATUSES and subscription.end_date is None:
            values["end_date"] = ended_at or utcnow()

        result = await db.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id, Subscription.status == previous)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            subscription = await self.get_by_gateway_id(db, razorpay_subscription_id)
            logger.info(
                "subscription_status_changed_concurrently",
                subscription_id=razorpay_subscription_id,
                status=subscription.status,
            )
            return SubscriptionTransition(subscription, False)

        subscription = await self.get_by_gateway_id(db, razorpay_subscription_id)
        payload = subscription_payload(subscription)
        payload["previous_status"] = previous
        payload["source"] = source
        write_outbox_event(
            db, subscription.id, "subscription", "subscription.status_changed", payload
        )
        await db.commit()

        metrics.record_subscription_status_change(source, status)
        logger.info(
            "subscription_status_changed",
            subscription_id=razorpay_subscription_id,
            previous_status=previous,
            status=status,
            source=source,
        )
        return SubscriptionTransition(subscription, True)

    async def list_subscriptions(
        self,
        db: AsyncSession,
        user_id: Any = None,
        batch_id: Any = None,
        status: Optional[str] = None,
        live_only: bool = False,
    ) -> List[Subscription]:
        stmt = select(Subscription)
        if user_id is not None:
            stmt = stmt.where(Subscription.user_id == parse_uuid(user_id, "User"))
        if batch_id is not None:
            stmt = stmt.where(Subscription.batch_id == parse_uuid(batch_id, "Batch"))
        if status is not None:
            stmt = stmt.where(Subscription.status == status)
        if live_only:
            stmt = stmt.where(Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES))
        stmt = stmt.order_by(Subscription.created_at.desc())
        return list((await db.execute(stmt)).scalars().all())
