"""
Tests for plan caching and the subscription lifecycle.
"""
import asyncio
import uuid

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings
from settlement.core.subscription_ledger import SubscriptionLedger
from settlement.database.models import Batch, OutboxEvent, Sport, Subscription
from settlement.exceptions import ConfigurationError, NotFoundError, ValidationError
from settlement.integrations.razorpay_client import GatewayError, RazorpayClient
from tests.conftest import Catalog, FakeRazorpay


async def stored_plan_id(session_factory: async_sessionmaker[AsyncSession], sport_id: uuid.UUID) -> str | None:
    async with session_factory() as session:
        return (await session.get(Sport, sport_id)).razorpay_plan_id


class TestPlanCache:
    """Test suite for lazy per-sport plan creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plan_created_once_and_cached(
        self,
        db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        subscription_ledger: SubscriptionLedger,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test the first call creates the plan and later calls reuse it."""
        first = await subscription_ledger.ensure_plan(db, catalog.sport.id)
        second = await subscription_ledger.ensure_plan(db, catalog.sport.id)

        assert first == second
        assert await stored_plan_id(session_factory, catalog.sport.id) == first
        (request,) = fake_gateway.calls("POST", "/plans")
        body = fake_gateway.body(request)
        assert body["item"]["name"] == "Badminton Subscription"
        assert body["item"]["amount"] == 150000
        assert body["item"]["description"] == "Evening badminton coaching"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plan_creation_failure_persists_nothing(
        self,
        db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        subscription_ledger: SubscriptionLedger,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test a rejected plan leaves the sport without a cached plan."""
        fake_gateway.fail("POST", "/plans", description="Invalid plan amount")

        with pytest.raises(GatewayError):
            await subscription_ledger.ensure_plan(db, catalog.sport.id)

        assert await stored_plan_id(session_factory, catalog.sport.id) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_sport(self, db: AsyncSession, subscription_ledger: SubscriptionLedger) -> None:
        with pytest.raises(NotFoundError):
            await subscription_ledger.ensure_plan(db, uuid.uuid4())

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_first_calls_create_one_plan(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        subscription_ledger: SubscriptionLedger,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test concurrent callers in one process share a single plan."""
        fake_gateway.delay = 0.05

        async def ensure() -> str:
            async with session_factory() as session:
                return await subscription_ledger.ensure_plan(session, catalog.sport.id)

        plan_ids = await asyncio.gather(*(ensure() for _ in range(5)))

        assert len(set(plan_ids)) == 1
        assert len(fake_gateway.calls("POST", "/plans")) == 1
        assert await stored_plan_id(session_factory, catalog.sport.id) == plan_ids[0]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cross_process_race_converges_on_first_writer(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        gateway: RazorpayClient,
        test_settings: Settings,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test two ledgers without a shared lock still persist one plan id."""
        fake_gateway.delay = 0.05
        ledgers = [SubscriptionLedger(gateway, test_settings) for _ in range(2)]

        async def ensure(ledger: SubscriptionLedger) -> str:
            async with session_factory() as session:
                return await ledger.ensure_plan(session, catalog.sport.id)

        plan_ids = await asyncio.gather(*(ensure(ledger) for ledger in ledgers))

        stored = await stored_plan_id(session_factory, catalog.sport.id)
        assert plan_ids[0] == plan_ids[1] == stored
        # Both reached the gateway; the loser's plan is orphaned there.
        assert len(fake_gateway.calls("POST", "/plans")) == 2


class TestCreateSubscription:
    """Test suite for subscription creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_subscription(
        self,
        db: AsyncSession,
        catalog: Catalog,
        subscription_ledger: SubscriptionLedger,
        fake_gateway: FakeRazorpay,
        test_settings: Settings,
    ) -> None:
        """Test checkout parameters and the persisted record."""
        result = await subscription_ledger.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )

        assert result["subscription_id"].startswith("sub_")
        assert result["key"] == test_settings.gateway_key_id
        assert result["amount"] == 150000
        assert result["currency"] == "INR"
        assert result["batch_name"] == "Evening Batch A"
        assert result["sport_name"] == "Badminton"

        body = fake_gateway.body(fake_gateway.calls("POST", "/subscriptions")[0])
        assert body["total_count"] == 12
        assert body["plan_id"] == result["plan_id"]
        assert body["notes"]["user_id"] == str(catalog.user.id)

        record = await subscription_ledger.get_by_gateway_id(db, result["subscription_id"])
        assert record.status == "created"
        assert record.plan_id == result["plan_id"]
        assert str(record.id) == result["id"]
        outbox = (
            await db.execute(
                select(func.count()).select_from(OutboxEvent).where(
                    OutboxEvent.event_type == "subscription.created"
                )
            )
        ).scalar_one()
        assert outbox == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_subscription_reuses_plan(
        self,
        db: AsyncSession,
        catalog: Catalog,
        subscription_ledger: SubscriptionLedger,
        fake_gateway: FakeRazorpay,
    ) -> None:
        first = await subscription_ledger.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )
        second = await subscription_ledger.create_subscription(
            db, catalog.other_user.id, catalog.batch.id, catalog.sport.id
        )

        assert first["plan_id"] == second["plan_id"]
        assert len(fake_gateway.calls("POST", "/plans")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_live_duplicate_rejected(
        self,
        db: AsyncSession,
        catalog: Catalog,
        subscription_ledger: SubscriptionLedger,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test one live subscription per user and batch."""
        await subscription_ledger.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )

        with pytest.raises(ValidationError, match="already has"):
            await subscription_ledger.create_subscription(
                db, catalog.user.id, catalog.batch.id, catalog.sport.id
            )
        assert len(fake_gateway.calls("POST", "/subscriptions")) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_creates_keep_one_live_subscription(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        subscription_ledger: SubscriptionLedger,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test concurrent checkouts for one seat create a single subscription."""
        fake_gateway.delay = 0.05

        async def create() -> object:
            async with session_factory() as session:
                return await subscription_ledger.create_subscription(
                    session, catalog.user.id, catalog.batch.id, catalog.sport.id
                )

        outcomes = await asyncio.gather(create(), create(), return_exceptions=True)

        created = [o for o in outcomes if isinstance(o, dict)]
        rejected = [o for o in outcomes if isinstance(o, ValidationError)]
        assert len(created) == 1 and len(rejected) == 1
        assert len(fake_gateway.calls("POST", "/subscriptions")) == 1
        async with session_factory() as session:
            live = await subscription_ledger.list_subscriptions(session, live_only=True)
        assert [s.razorpay_subscription_id for s in live] == [created[0]["subscription_id"]]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cross_process_creates_keep_one_live_subscription(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        gateway: RazorpayClient,
        test_settings: Settings,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test two ledgers without a shared lock still store one live subscription."""
        fake_gateway.delay = 0.05
        ledgers = [SubscriptionLedger(gateway, test_settings) for _ in range(2)]

        async def create(ledger: SubscriptionLedger) -> object:
            async with session_factory() as session:
                return await ledger.create_subscription(
                    session, catalog.user.id, catalog.batch.id, catalog.sport.id
                )

        outcomes = await asyncio.gather(
            *(create(ledger) for ledger in ledgers), return_exceptions=True
        )

        created = [o for o in outcomes if isinstance(o, dict)]
        rejected = [o for o in outcomes if isinstance(o, ValidationError)]
        assert len(created) == 1 and len(rejected) == 1
        # Both reached the gateway; the loser's subscription is orphaned there.
        assert len(fake_gateway.calls("POST", "/subscriptions")) == 2
        async with session_factory() as session:
            live = await ledgers[0].list_subscriptions(session, live_only=True)
        assert [s.razorpay_subscription_id for s in live] == [created[0]["subscription_id"]]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resubscribe_after_cancellation(
        self,
        db: AsyncSession,
        catalog: Catalog,
        subscription_ledger: SubscriptionLedger,
    ) -> None:
        """Test a terminal subscription no longer blocks a new one."""
        first = await subscription_ledger.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )
        await subscription_ledger.update_status(
            db, first["subscription_id"], "cancelled", source="webhook"
        )

        second = await subscription_ledger.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )

        assert second["subscription_id"] != first["subscription_id"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_must_belong_to_sport(
        self,
        db: AsyncSession,
        catalog: Catalog,
        subscription_ledger: SubscriptionLedger,
        fake_gateway: FakeRazorpay,
    ) -> None:
        tennis = Sport(id=uuid.uuid4(), name="Tennis", price_per_month=200000)
        db.add(tennis)
        await db.commit()

        with pytest.raises(ValidationError, match="does not belong"):
            await subscription_ledger.create_subscription(
                db, catalog.user.id, catalog.batch.id, tennis.id
            )
        assert fake_gateway.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_references(
        self, db: AsyncSession, catalog: Catalog, subscription_ledger: SubscriptionLedger
    ) -> None:
        with pytest.raises(NotFoundError):
            await subscription_ledger.create_subscription(
                db, uuid.uuid4(), catalog.batch.id, catalog.sport.id
            )
        with pytest.raises(NotFoundError):
            await subscription_ledger.create_subscription(
                db, catalog.user.id, uuid.uuid4(), catalog.sport.id
            )
        with pytest.raises(NotFoundError):
            await subscription_ledger.create_subscription(
                db, catalog.user.id, catalog.batch.id, uuid.uuid4()
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_credentials(
        self, db: AsyncSession, catalog: Catalog, fake_gateway: FakeRazorpay
    ) -> None:
        """Test missing keys fail before any lookup or gateway call."""
        settings = Settings(_env_file=None, gateway_key_id=None, gateway_key_secret=None)
        http_client = httpx.AsyncClient(
            base_url="https://api.razorpay.test/v1",
            transport=httpx.MockTransport(fake_gateway.handler),
        )
        ledger = SubscriptionLedger(RazorpayClient(settings, http_client=http_client), settings)

        with pytest.raises(ConfigurationError):
            await ledger.create_subscription(db, catalog.user.id, catalog.batch.id, catalog.sport.id)

        assert fake_gateway.requests == []
        assert (await db.execute(select(func.count()).select_from(Subscription))).scalar_one() == 0
        await http_client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_subscription_failure_persists_nothing(
        self,
        db: AsyncSession,
        catalog: Catalog,
        subscription_ledger: SubscriptionLedger,
        fake_gateway: FakeRazorpay,
    ) -> None:
        fake_gateway.fail("POST", "/subscriptions", description="Plan is inactive")

        with pytest.raises(GatewayError, match="Plan is inactive"):
            await subscription_ledger.create_subscription(
                db, catalog.user.id, catalog.batch.id, catalog.sport.id
            )

        assert await subscription_ledger.list_subscriptions(db) == []


class TestSubscriptionStatus:
    """Test suite for gateway-reported status updates."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_status_records_change(
        self, db: AsyncSession, catalog: Catalog, subscription_ledger: SubscriptionLedger
    ) -> None:
        created = await subscription_ledger.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )
        gateway_id = created["subscription_id"]

        active = await subscription_ledger.update_status(db, gateway_id, "active", source="webhook")
        repeat = await subscription_ledger.update_status(db, gateway_id, "active", source="webhook")

        assert active.changed is True
        assert active.subscription.status == "active"
        assert active.subscription.end_date is None
        assert repeat.changed is False

        events = (
            await db.execute(
                select(OutboxEvent).where(OutboxEvent.event_type == "subscription.status_changed")
            )
        ).scalars().all()
        assert len(events) == 1
        assert events[0].payload["previous_status"] == "created"
        assert events[0].payload["source"] == "webhook"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_terminal_status_sets_end_date(
        self, db: AsyncSession, catalog: Catalog, subscription_ledger: SubscriptionLedger
    ) -> None:
        created = await subscription_ledger.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )

        transition = await subscription_ledger.update_status(
            db, created["subscription_id"], "completed", source="reconciliation"
        )

        assert transition.subscription.end_date is not None
        assert await subscription_ledger.list_subscriptions(db, live_only=True) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_from_guards_later_statuses(
        self, db: AsyncSession, catalog: Catalog, subscription_ledger: SubscriptionLedger
    ) -> None:
        """Test a checkout confirmation cannot move an active subscription back."""
        created = await subscription_ledger.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )
        await subscription_ledger.update_status(db, created["subscription_id"], "active", source="webhook")

        transition = await subscription_ledger.update_status(
            db,
            created["subscription_id"],
            "authenticated",
            source="checkout",
            only_from=("created",),
        )

        assert transition.changed is False
        assert transition.subscription.status == "active"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_subscription(self, db: AsyncSession, subscription_ledger: SubscriptionLedger) -> None:
        with pytest.raises(NotFoundError):
            await subscription_ledger.update_status(db, "sub_missing", "active", source="webhook")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_subscriptions_filters(
        self, db: AsyncSession, catalog: Catalog, subscription_ledger: SubscriptionLedger
    ) -> None:
        await subscription_ledger.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )
        other_batch = Batch(id=uuid.uuid4(), sport_id=catalog.sport.id, name="Morning Batch B")
        db.add(other_batch)
        await db.commit()
        await subscription_ledger.create_subscription(
            db, catalog.user.id, other_batch.id, catalog.sport.id
        )

        assert len(await subscription_ledger.list_subscriptions(db, user_id=catalog.user.id)) == 2
        by_batch = await subscription_ledger.list_subscriptions(db, batch_id=other_batch.id)
        assert [s.batch_id for s in by_batch] == [other_batch.id]
        assert await subscription_ledger.list_subscriptions(db, status="active") == []
