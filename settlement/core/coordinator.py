"""
Settlement coordinator.

Orchestrates the one-shot payment flow:
1. Claim the caller's idempotency key (if any)
2. Validate user and enrollment
3. Create the gateway order (aborts before any local write on failure)
4. Create the pending payment bound to the order
5. Receive the checkout callback, verify its signature
6. Complete or fail the payment through the ledger

Also drives invoice charging, refunds, bulk invoices and subscription
checkout.
"""
import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import Settings, get_settings
from settlement.core.idempotency import IdempotencyManager
from settlement.core.payment_ledger import BulkInvoiceResult, PaymentLedger
from settlement.core.subscription_ledger import SubscriptionLedger
from settlement.database.models import Payment
from settlement.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from settlement.integrations.razorpay_client import GatewayError, RazorpayClient
from settlement.integrations.signature import SignatureVerifier
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class SettlementResult:
    """
    Outcome of a checkout callback.

    ``verified`` is False for a signature mismatch; ``changed`` is False
    when the callback was a duplicate of one already applied.
    """

    payment_id: uuid.UUID
    status: str
    verified: bool
    changed: bool
    transaction_id: Optional[str] = None


@dataclass
class SubscriptionConfirmation:
    subscription_id: str
    status: str
    verified: bool
    changed: bool


class SettlementCoordinator:
    """
    Main settlement orchestrator.

    Holds no per-request state; every method takes the caller's session.
    Invoice order creation is serialized per payment within the process.
    """

    def __init__(
        self,
        gateway: Optional[RazorpayClient] = None,
        payment_ledger: Optional[PaymentLedger] = None,
        subscription_ledger: Optional[SubscriptionLedger] = None,
        idempotency_manager: Optional[IdempotencyManager] = None,
        verifier: Optional[SignatureVerifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway or RazorpayClient(self.settings)
        self.payment_ledger = payment_ledger or PaymentLedger(self.settings.default_currency)
        self.subscription_ledger = subscription_ledger or SubscriptionLedger(
            self.gateway, self.settings
        )
        self.idempotency_manager = idempotency_manager or IdempotencyManager(
            settings=self.settings
        )
        self._verifier = verifier
        self._invoice_locks: Dict[uuid.UUID, asyncio.Lock] = {}

        logger.info("settlement_coordinator_initialized")

    def _invoice_lock(self, payment_id: uuid.UUID) -> asyncio.Lock:
        return self._invoice_locks.setdefault(payment_id, asyncio.Lock())

    @property
    def verifier(self) -> SignatureVerifier:
        """Signature verifier, built from settings on first use."""
        if self._verifier is None:
            self._verifier = SignatureVerifier.from_settings(self.settings)
        return self._verifier

    # Orders ---------------------------------------------------------------

    async def create_order(
        self,
        db: AsyncSession,
        user_id: Any,
        enrollment_id: Any,
        amount: int,
        currency: Optional[str] = None,
        receipt: Optional[str] = None,
        method: str = "razorpay",
        payment_period: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Open a gateway order and record its pending payment.

        A repeated ``idempotency_key`` returns the first response instead of
        ordering again.

        Returns:
            Checkout parameters: payment id, order id, amount, currency, public key

        Raises:
            ConfigurationError: If gateway credentials are missing
            ValidationError / NotFoundError: If inputs or references are invalid
            IdempotencyConflictError: If the key is in flight or was reused
            GatewayError: If the gateway rejects the order (no payment is created)
        """
        currency = (currency or self.settings.default_currency).upper()
        key_id = self.gateway.key_id

        if idempotency_key:
            cached = await self.idempotency_manager.claim(
                db,
                idempotency_key,
                "order",
                {
                    "user_id": str(user_id),
                    "enrollment_id": str(enrollment_id),
                    "amount": amount,
                    "currency": currency,
                },
            )
            if cached is not None:
                return cached

        try:
            await self.payment_ledger.ensure_references(db, user_id, enrollment_id)
            receipt = receipt or f"rcpt_{uuid.uuid4().hex[:16]}"
            order = await self.gateway.create_order(
                amount=amount,
                currency=currency,
                receipt=receipt,
                notes={"user_id": str(user_id), "enrollment_id": str(enrollment_id)},
            )
            payment_id = await self.payment_ledger.create_pending(
                db,
                user_id,
                enrollment_id,
                order.amount,
                method,
                currency=order.currency,
                gateway_order_id=order.id,
                idempotency_key=idempotency_key,
                payment_period=payment_period,
            )
        except (GatewayError, ValidationError) as e:
            if idempotency_key:
                await self.idempotency_manager.release(db, idempotency_key)
            logger.error(
                "order_creation_failed",
                user_id=str(user_id),
                enrollment_id=str(enrollment_id),
                amount=amount,
                error_code=getattr(e, "code", None),
                error=str(e),
            )
            raise

        response = {
            "payment_id": str(payment_id),
            "order_id": order.id,
            "amount": order.amount,
            "currency": order.currency,
            "receipt": order.receipt,
            "key": key_id,
        }
        if idempotency_key:
            await self.idempotency_manager.complete(db, idempotency_key, response)

        metrics.record_order_created(order.currency)
        logger.info(
            "order_created",
            payment_id=str(payment_id),
            order_id=order.id,
            amount=order.amount,
        )
        return response

    async def create_order_for_invoice(
        self, db: AsyncSession, payment_id: Any
    ) -> Dict[str, Any]:
        """
        Open (or reuse) a gateway order to charge an existing invoice.

        An invoice already carrying an order is returned as is, so a retried
        click never orders twice. Concurrent callers in one process share a
        single gateway order; a caller that loses the race to another
        process returns the winner's order.

        Raises:
            NotFoundError: If the payment is missing
            ValidationError: If the invoice is already settled
            GatewayError: If the gateway rejects the order (invoice stays pending)
        """
        key_id = self.gateway.key_id
        payment = await self.payment_ledger.get_payment(db, payment_id)

        async with self._invoice_lock(payment.id):
            payment = await self.payment_ledger.get_payment(db, payment.id)
            if payment.status not in ("pending", "attempted"):
                raise ValidationError(f"Invoice {payment.id} is already {payment.status}")

            if payment.gateway_order_id is None:
                payment = await self._open_invoice_order(db, payment)

        return {
            "payment_id": str(payment.id),
            "order_id": payment.gateway_order_id,
            "amount": payment.amount,
            "currency": payment.currency,
            "receipt": payment.receipt_number,
            "key": key_id,
        }

    async def _open_invoice_order(self, db: AsyncSession, payment: Payment) -> Payment:
        payment_id = payment.id
        receipt = payment.receipt_number or f"inv_{payment.id.hex}"
        try:
            order = await self.gateway.create_order(
                amount=payment.amount,
                currency=payment.currency,
                receipt=receipt,
                notes={"payment_id": str(payment.id)},
            )
        except GatewayError as e:
            logger.error(
                "invoice_order_creation_failed",
                payment_id=str(payment.id),
                error_code=e.code,
                error=e.message,
            )
            raise

        try:
            transition = await self.payment_ledger.attach_order(db, payment.id, order.id)
        except InvalidTransitionError:
            # Another process attached its order first; ours is left unused on the gateway.
            await db.rollback()
            winner = await self.payment_ledger.get_payment(db, payment_id)
            if winner.gateway_order_id is None:
                raise
            logger.warning(
                "invoice_order_race_lost",
                payment_id=str(payment_id),
                order_id=winner.gateway_order_id,
                orphaned_order_id=order.id,
            )
            return winner

        metrics.record_order_created(order.currency)
        return transition.payment

    # Callbacks ------------------------------------------------------------

    async def handle_callback(
        self,
        db: AsyncSession,
        razorpay_payment_id: str,
        razorpay_order_id: str,
        razorpay_signature: str,
    ) -> SettlementResult:
        """
        Settle a checkout callback.

        A valid signature completes the payment; a mismatch fails it. Both
        are idempotent, so duplicate deliveries converge on one state.

        Raises:
            ConfigurationError: If the key secret is missing
            NotFoundError: If no payment is bound to the order
        """
        payment = await self.payment_ledger.find_by_order_id(db, razorpay_order_id)
        if payment is None:
            logger.error(
                "callback_for_unknown_order",
                order_id=razorpay_order_id,
                gateway_payment_id=razorpay_payment_id,
            )
            raise NotFoundError("Payment for order", razorpay_order_id)

        verified = self.verifier.verify(
            razorpay_order_id, razorpay_payment_id, razorpay_signature
        )
        metrics.record_callback_verification(verified)

        if verified:
            transition = await self.payment_ledger.mark_completed(
                db, payment.id, transaction_id=razorpay_payment_id
            )
            return SettlementResult(
                payment_id=payment.id,
                status=transition.payment.status,
                verified=True,
                changed=transition.changed,
                transaction_id=transition.payment.transaction_id,
            )

        if payment.status == "completed":
            # A forged or corrupted replay cannot undo a verified settlement.
            logger.warning(
                "signature_mismatch_on_completed_payment",
                payment_id=str(payment.id),
                order_id=razorpay_order_id,
                gateway_payment_id=razorpay_payment_id,
            )
            return SettlementResult(
                payment_id=payment.id,
                status=payment.status,
                verified=False,
                changed=False,
                transaction_id=payment.transaction_id,
            )

        transition = await self.payment_ledger.mark_failed(
            db, payment.id, reason="signature_mismatch"
        )
        logger.error(
            "payment_verification_failed",
            payment_id=str(payment.id),
            order_id=razorpay_order_id,
            gateway_payment_id=razorpay_payment_id,
        )
        return SettlementResult(
            payment_id=payment.id,
            status=transition.payment.status,
            verified=False,
            changed=transition.changed,
        )

    # Invoices and refunds -------------------------------------------------

    async def generate_invoice(
        self,
        db: AsyncSession,
        user_id: Any,
        enrollment_id: Any,
        amount: int,
        method: str = "invoice",
        payment_period: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Payment:
        return await self.payment_ledger.generate_invoice(
            db, user_id, enrollment_id, amount, method, payment_period, notes
        )

    async def generate_bulk_invoices(
        self,
        db: AsyncSession,
        enrollment_id: Any,
        amount: int,
        user_ids: Iterable[Any],
        payment_period: Optional[str] = None,
    ) -> List[BulkInvoiceResult]:
        return await self.payment_ledger.generate_bulk_invoices(
            db, enrollment_id, amount, list(user_ids), payment_period
        )

    async def refund(
        self, db: AsyncSession, payment_id: Any, refund_amount: int, refund_reason: str
    ) -> Payment:
        """Record a refund on a completed payment."""
        logger.info(
            "refund_started", payment_id=str(payment_id), refund_amount=refund_amount
        )
        return await self.payment_ledger.process_refund(
            db, payment_id, refund_amount, refund_reason
        )

    # Subscriptions --------------------------------------------------------

    async def create_subscription(
        self,
        db: AsyncSession,
        user_id: Any,
        batch_id: Any,
        sport_id: Any,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a subscription, replaying the first response for a repeated key.

        Raises:
            ConfigurationError: If gateway credentials are missing (the key is not claimed)
            IdempotencyConflictError: If the key is in flight or was reused
        """
        # Missing credentials fail before the key is claimed.
        self.gateway.key_id

        if idempotency_key:
            cached = await self.idempotency_manager.claim(
                db,
                idempotency_key,
                "subscription",
                {"user_id": str(user_id), "batch_id": str(batch_id), "sport_id": str(sport_id)},
            )
            if cached is not None:
                return cached

        try:
            response = await self.subscription_ledger.create_subscription(
                db, user_id, batch_id, sport_id, idempotency_key=idempotency_key
            )
        except (GatewayError, ValidationError) as e:
            if idempotency_key:
                await self.idempotency_manager.release(db, idempotency_key)
            logger.error(
                "subscription_creation_failed",
                user_id=str(user_id),
                batch_id=str(batch_id),
                sport_id=str(sport_id),
                error_code=getattr(e, "code", None),
                error=str(e),
            )
            raise

        if idempotency_key:
            await self.idempotency_manager.complete(db, idempotency_key, response)
        return response

    async def confirm_subscription_checkout(
        self,
        db: AsyncSession,
        razorpay_payment_id: str,
        razorpay_subscription_id: str,
        razorpay_signature: str,
    ) -> SubscriptionConfirmation:
        """
        Verify a subscription checkout and mark the subscription authenticated.

        A status the gateway reported later than ``created`` is never moved back.
        """
        subscription = await self.subscription_ledger.get_by_gateway_id(
            db, razorpay_subscription_id
        )
        verified = self.verifier.verify_subscription(
            razorpay_subscription_id, razorpay_payment_id, razorpay_signature
        )
        metrics.record_callback_verification(verified)
        if not verified:
            return SubscriptionConfirmation(
                subscription_id=razorpay_subscription_id,
                status=subscription.status,
                verified=False,
                changed=False,
            )

        transition = await self.subscription_ledger.update_status(
            db,
            razorpay_subscription_id,
            "authenticated",
            source="checkout",
            only_from=("created",),
        )
        return SubscriptionConfirmation(
            subscription_id=razorpay_subscription_id,
            status=transition.subscription.status,
            verified=True,
            changed=transition.changed,
        )
