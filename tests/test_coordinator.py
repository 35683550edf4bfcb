"""
End-to-end settlement tests through the coordinator.

The gateway is the in-process fake; everything else is real.
"""
import asyncio
import uuid

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings
from settlement.core.coordinator import SettlementCoordinator
from settlement.core.idempotency import IdempotencyManager
from settlement.database.models import IdempotencyRecord, OutboxEvent, Payment
from settlement.exceptions import (
    ConfigurationError,
    IdempotencyConflictError,
    NotFoundError,
    ValidationError,
)
from settlement.integrations.razorpay_client import GatewayError, RazorpayClient
from tests.conftest import Catalog, FakeRazorpay, callback_for, sign


async def count(db: AsyncSession, model: type, *conditions: object) -> int:
    stmt = select(func.count()).select_from(model)
    if conditions:
        stmt = stmt.where(*conditions)
    return (await db.execute(stmt)).scalar_one()


class TestOrderSettlement:
    """One-shot order flow: create order, receive callback, settle."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_valid_callback_completes_payment(
        self, db: AsyncSession, catalog: Catalog, coordinator: SettlementCoordinator
    ) -> None:
        """Test order creation followed by an authentic callback."""
        order = await coordinator.create_order(
            db, catalog.user.id, catalog.enrollment.id, amount=50000, currency="INR", receipt="r1"
        )

        assert order["amount"] == 50000
        assert order["receipt"] == "r1"
        assert order["key"] == coordinator.settings.gateway_key_id
        pending = await coordinator.payment_ledger.get_payment(db, order["payment_id"])
        assert pending.status == "pending"
        assert pending.method == "razorpay"
        assert pending.gateway_order_id == order["order_id"]

        callback = callback_for(order["order_id"], "pay_29QQoUBi66xm2f")
        result = await coordinator.handle_callback(db, **callback)

        assert result.verified is True
        assert result.changed is True
        assert result.status == "completed"
        assert result.transaction_id == "pay_29QQoUBi66xm2f"
        payment = await coordinator.payment_ledger.get_payment(db, order["payment_id"])
        assert payment.status == "completed"
        assert payment.transaction_id == "pay_29QQoUBi66xm2f"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tampered_signature_fails_payment(
        self, db: AsyncSession, catalog: Catalog, coordinator: SettlementCoordinator
    ) -> None:
        """Test a signature mismatch settles the payment as failed."""
        order = await coordinator.create_order(
            db, catalog.user.id, catalog.enrollment.id, amount=50000, receipt="r1"
        )
        callback = callback_for(order["order_id"])
        callback["razorpay_signature"] = "0" * 64

        result = await coordinator.handle_callback(db, **callback)

        assert result.verified is False
        assert result.status == "failed"
        payment = await coordinator.payment_ledger.get_payment(db, order["payment_id"])
        assert payment.status == "failed"
        assert payment.transaction_id is None
        assert payment.failure_reason == "signature_mismatch"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_after_settlement(
        self, db: AsyncSession, catalog: Catalog, coordinator: SettlementCoordinator
    ) -> None:
        """Test a partial refund on a completed order."""
        order = await coordinator.create_order(
            db, catalog.user.id, catalog.enrollment.id, amount=50000, receipt="r1"
        )
        await coordinator.handle_callback(db, **callback_for(order["order_id"]))

        payment = await coordinator.refund(db, order["payment_id"], 20000, "customer request")

        assert payment.refunded is True
        assert payment.refund_amount == 20000
        assert payment.amount == 50000
        assert payment.status == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_callbacks_settle_once(
        self, db: AsyncSession, catalog: Catalog, coordinator: SettlementCoordinator
    ) -> None:
        """Test two deliveries of the same callback emit one completion."""
        order = await coordinator.create_order(
            db, catalog.user.id, catalog.enrollment.id, amount=50000, receipt="r1"
        )
        callback = callback_for(order["order_id"])

        first = await coordinator.handle_callback(db, **callback)
        second = await coordinator.handle_callback(db, **callback)

        assert (first.changed, second.changed) == (True, False)
        assert first.status == second.status == "completed"
        assert await count(db, OutboxEvent, OutboxEvent.event_type == "payment.completed") == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_callbacks_settle_once(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        db: AsyncSession,
        catalog: Catalog,
        coordinator: SettlementCoordinator,
    ) -> None:
        """Test simultaneous deliveries on separate sessions."""
        order = await coordinator.create_order(
            db, catalog.user.id, catalog.enrollment.id, amount=50000, receipt="r1"
        )
        callback = callback_for(order["order_id"])

        async def deliver() -> bool:
            async with session_factory() as session:
                return (await coordinator.handle_callback(session, **callback)).changed

        results = await asyncio.gather(*(deliver() for _ in range(3)))

        assert sorted(results) == [False, False, True]
        assert await count(db, OutboxEvent, OutboxEvent.event_type == "payment.completed") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tampered_replay_cannot_undo_completion(
        self, db: AsyncSession, catalog: Catalog, coordinator: SettlementCoordinator
    ) -> None:
        """Test a forged callback after completion leaves the payment completed."""
        order = await coordinator.create_order(
            db, catalog.user.id, catalog.enrollment.id, amount=50000, receipt="r1"
        )
        await coordinator.handle_callback(db, **callback_for(order["order_id"], "pay_1"))

        forged = callback_for(order["order_id"], "pay_1")
        forged["razorpay_signature"] = sign("something else")
        result = await coordinator.handle_callback(db, **forged)

        assert result.verified is False
        assert result.changed is False
        assert result.status == "completed"
        assert result.transaction_id == "pay_1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_callback_for_unknown_order(
        self, db: AsyncSession, coordinator: SettlementCoordinator
    ) -> None:
        with pytest.raises(NotFoundError):
            await coordinator.handle_callback(db, **callback_for("order_unknown"))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_rejection_creates_no_payment(
        self,
        db: AsyncSession,
        catalog: Catalog,
        coordinator: SettlementCoordinator,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test a failed order aborts before any local write."""
        fake_gateway.fail("POST", "/orders", description="Authentication failed")

        with pytest.raises(GatewayError, match="Authentication failed"):
            await coordinator.create_order(
                db, catalog.user.id, catalog.enrollment.id, amount=50000, receipt="r1"
            )

        assert await count(db, Payment) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_enrollment_never_reaches_gateway(
        self,
        db: AsyncSession,
        catalog: Catalog,
        coordinator: SettlementCoordinator,
        fake_gateway: FakeRazorpay,
    ) -> None:
        with pytest.raises(NotFoundError):
            await coordinator.create_order(db, catalog.user.id, uuid.uuid4(), amount=50000)

        assert fake_gateway.requests == []


class TestIdempotentOrderCreation:
    """Idempotency keys on order creation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeated_key_replays_first_response(
        self,
        db: AsyncSession,
        catalog: Catalog,
        coordinator: SettlementCoordinator,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test a double-click opens one remote order."""
        kwargs = dict(amount=50000, receipt="r1", idempotency_key="click-1")

        first = await coordinator.create_order(db, catalog.user.id, catalog.enrollment.id, **kwargs)
        second = await coordinator.create_order(db, catalog.user.id, catalog.enrollment.id, **kwargs)

        assert first == second
        assert len(fake_gateway.calls("POST", "/orders")) == 1
        assert await count(db, Payment) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_key_reused_for_different_request(
        self, db: AsyncSession, catalog: Catalog, coordinator: SettlementCoordinator
    ) -> None:
        await coordinator.create_order(
            db, catalog.user.id, catalog.enrollment.id, amount=50000, idempotency_key="k"
        )

        with pytest.raises(IdempotencyConflictError):
            await coordinator.create_order(
                db, catalog.user.id, catalog.enrollment.id, amount=60000, idempotency_key="k"
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_failure_releases_key(
        self,
        db: AsyncSession,
        catalog: Catalog,
        coordinator: SettlementCoordinator,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test a key can be retried after the gateway rejected the first attempt."""
        fake_gateway.fail("POST", "/orders", status_code=503, code="SERVER_ERROR")

        with pytest.raises(GatewayError):
            await coordinator.create_order(
                db, catalog.user.id, catalog.enrollment.id, amount=50000, idempotency_key="retry-me"
            )
        assert await count(db, IdempotencyRecord) == 0

        order = await coordinator.create_order(
            db, catalog.user.id, catalog.enrollment.id, amount=50000, idempotency_key="retry-me"
        )
        assert order["order_id"].startswith("order_")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_requests_with_same_key(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        coordinator: SettlementCoordinator,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test an in-flight key rejects the concurrent duplicate."""
        fake_gateway.delay = 0.1

        async def attempt() -> str:
            async with session_factory() as session:
                try:
                    await coordinator.create_order(
                        session,
                        catalog.user.id,
                        catalog.enrollment.id,
                        amount=50000,
                        idempotency_key="double-click",
                    )
                except IdempotencyConflictError:
                    return "conflict"
                return "created"

        outcomes = await asyncio.gather(attempt(), attempt())

        assert sorted(outcomes) == ["conflict", "created"]
        assert len(fake_gateway.calls("POST", "/orders")) == 1


class TestInvoiceCharging:
    """Charging an existing invoice through a gateway order."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_for_invoice_is_reused(
        self,
        db: AsyncSession,
        catalog: Catalog,
        coordinator: SettlementCoordinator,
        fake_gateway: FakeRazorpay,
    ) -> None:
        invoice = await coordinator.generate_invoice(db, catalog.user.id, catalog.enrollment.id, 150000)

        first = await coordinator.create_order_for_invoice(db, invoice.id)
        second = await coordinator.create_order_for_invoice(db, invoice.id)

        assert first == second
        assert first["receipt"] == invoice.receipt_number
        assert len(fake_gateway.calls("POST", "/orders")) == 1
        payment = await coordinator.payment_ledger.get_payment(db, invoice.id)
        assert payment.status == "attempted"

        result = await coordinator.handle_callback(db, **callback_for(first["order_id"]))
        assert result.status == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_settled_invoice_cannot_be_charged(
        self, db: AsyncSession, catalog: Catalog, coordinator: SettlementCoordinator
    ) -> None:
        invoice = await coordinator.generate_invoice(db, catalog.user.id, catalog.enrollment.id, 150000)
        await coordinator.payment_ledger.mark_paid(db, invoice.id, "cash")

        with pytest.raises(ValidationError, match="already completed"):
            await coordinator.create_order_for_invoice(db, invoice.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_invoice_pending(
        self,
        db: AsyncSession,
        catalog: Catalog,
        coordinator: SettlementCoordinator,
        fake_gateway: FakeRazorpay,
    ) -> None:
        invoice = await coordinator.generate_invoice(db, catalog.user.id, catalog.enrollment.id, 150000)
        fake_gateway.fail("POST", "/orders")

        with pytest.raises(GatewayError):
            await coordinator.create_order_for_invoice(db, invoice.id)

        payment = await coordinator.payment_ledger.get_payment(db, invoice.id)
        assert payment.status == "pending"
        assert payment.gateway_order_id is None

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_charges_share_one_order(
        self,
        db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        coordinator: SettlementCoordinator,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test a double click on an invoice opens a single gateway order."""
        invoice = await coordinator.generate_invoice(db, catalog.user.id, catalog.enrollment.id, 150000)
        fake_gateway.delay = 0.05

        async def charge() -> dict:
            async with session_factory() as session:
                return await coordinator.create_order_for_invoice(session, invoice.id)

        first, second = await asyncio.gather(charge(), charge())

        assert first == second
        assert len(fake_gateway.calls("POST", "/orders")) == 1
        payment = await coordinator.payment_ledger.get_payment(db, invoice.id)
        assert payment.gateway_order_id == first["order_id"]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cross_process_charges_converge_on_first_order(
        self,
        db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        coordinator: SettlementCoordinator,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test two coordinators without a shared lock both return the stored order."""
        invoice = await coordinator.generate_invoice(db, catalog.user.id, catalog.enrollment.id, 150000)
        other = SettlementCoordinator(
            gateway=coordinator.gateway,
            payment_ledger=coordinator.payment_ledger,
            subscription_ledger=coordinator.subscription_ledger,
            idempotency_manager=coordinator.idempotency_manager,
            verifier=coordinator.verifier,
            settings=coordinator.settings,
        )
        fake_gateway.delay = 0.05

        async def charge(instance: SettlementCoordinator) -> dict:
            async with session_factory() as session:
                return await instance.create_order_for_invoice(session, invoice.id)

        first, second = await asyncio.gather(charge(coordinator), charge(other))

        payment = await coordinator.payment_ledger.get_payment(db, invoice.id)
        assert first["order_id"] == second["order_id"] == payment.gateway_order_id
        assert payment.status == "attempted"
        # Both reached the gateway; the loser's order is orphaned there.
        assert len(fake_gateway.calls("POST", "/orders")) == 2


class TestSubscriptionCheckout:
    """Subscription creation and checkout confirmation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirmation_marks_authenticated(
        self, db: AsyncSession, catalog: Catalog, coordinator: SettlementCoordinator
    ) -> None:
        created = await coordinator.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )
        sub_id = created["subscription_id"]

        result = await coordinator.confirm_subscription_checkout(
            db, "pay_S1", sub_id, sign(f"pay_S1|{sub_id}")
        )

        assert result.verified is True
        assert result.changed is True
        assert result.status == "authenticated"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirmation_with_bad_signature_changes_nothing(
        self, db: AsyncSession, catalog: Catalog, coordinator: SettlementCoordinator
    ) -> None:
        created = await coordinator.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id
        )

        result = await coordinator.confirm_subscription_checkout(
            db, "pay_S1", created["subscription_id"], "f" * 64
        )

        assert result.verified is False
        assert result.status == "created"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_subscription_idempotency_key(
        self,
        db: AsyncSession,
        catalog: Catalog,
        coordinator: SettlementCoordinator,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test a retried subscription request replays instead of failing as a duplicate."""
        first = await coordinator.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id, idempotency_key="sub-1"
        )
        second = await coordinator.create_subscription(
            db, catalog.user.id, catalog.batch.id, catalog.sport.id, idempotency_key="sub-1"
        )

        assert first == second
        assert len(fake_gateway.calls("POST", "/subscriptions")) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_without_key_is_rejected(
        self, db: AsyncSession, catalog: Catalog, coordinator: SettlementCoordinator
    ) -> None:
        await coordinator.create_subscription(db, catalog.user.id, catalog.batch.id, catalog.sport.id)

        with pytest.raises(ValidationError):
            await coordinator.create_subscription(
                db, catalog.user.id, catalog.batch.id, catalog.sport.id, idempotency_key="new-key"
            )
        assert await count(db, IdempotencyRecord) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_credentials_leave_key_unclaimed(
        self,
        db: AsyncSession,
        catalog: Catalog,
        idempotency_manager: IdempotencyManager,
        fake_gateway: FakeRazorpay,
    ) -> None:
        """Test a configuration failure does not strand the key in flight."""
        settings = Settings(_env_file=None, gateway_key_id=None, gateway_key_secret=None)
        http_client = httpx.AsyncClient(
            base_url="https://api.razorpay.test/v1",
            transport=httpx.MockTransport(fake_gateway.handler),
        )
        unconfigured = SettlementCoordinator(
            gateway=RazorpayClient(settings, http_client=http_client),
            idempotency_manager=idempotency_manager,
            settings=settings,
        )

        with pytest.raises(ConfigurationError):
            await unconfigured.create_subscription(
                db, catalog.user.id, catalog.batch.id, catalog.sport.id, idempotency_key="sub-cfg"
            )

        assert await db.get(IdempotencyRecord, "sub-cfg") is None
        assert fake_gateway.requests == []
        await http_client.aclose()
