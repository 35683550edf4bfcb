"""
Gateway webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification over the raw body
- Event deduplication using Redis (``X-Razorpay-Event-Id``)
- Event type routing to ledger transitions

Deduplication only saves work: every handler drives an idempotent ledger
transition, so a redelivered event converges on the same state.
"""
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import Settings, get_settings
from settlement.core.payment_ledger import PaymentLedger
from settlement.core.subscription_ledger import SubscriptionLedger
from settlement.exceptions import InvalidTransitionError, NotFoundError, SettlementError
from settlement.integrations.signature import SignatureVerifier
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Handler = Callable[[Dict[str, Any], AsyncSession], Awaitable[Dict[str, Any]]]


class WebhookError(SettlementError):
    """Raised when a webhook cannot be authenticated or parsed."""

    pass


class WebhookHandler:
    """
    Handles gateway webhook events with deduplication and processing.

    Routes payment and subscription events to the ledgers.
    """

    def __init__(
        self,
        payment_ledger: PaymentLedger,
        subscription_ledger: SubscriptionLedger,
        verifier: Optional[SignatureVerifier] = None,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.payment_ledger = payment_ledger
        self.subscription_ledger = subscription_ledger
        self._verifier = verifier
        self.redis_client = redis_client
        self._owns_redis = False
        self.event_handlers: Dict[str, Handler] = {}

        self.register_handler("payment.captured", self.handle_payment_captured)
        self.register_handler("order.paid", self.handle_order_paid)
        self.register_handler("payment.failed", self.handle_payment_failed)
        for status in (
            "authenticated",
            "activated",
            "charged",
            "pending",
            "halted",
            "paused",
            "resumed",
            "cancelled",
            "completed",
        ):
            self.register_handler(f"subscription.{status}", self.handle_subscription_event)

        logger.info("webhook_handler_initialized")

    @property
    def verifier(self) -> SignatureVerifier:
        if self._verifier is None:
            self._verifier = SignatureVerifier.from_settings(self.settings)
        return self._verifier

    def _redis(self) -> Optional[aioredis.Redis]:
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_redis = True
        return self.redis_client

    def register_handler(self, event_type: str, handler: Handler) -> None:
        """Register a handler for a gateway event type."""
        self.event_handlers[event_type] = handler

    def verify_and_parse(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate a webhook body and decode it.

        Raises:
            ConfigurationError: If no webhook secret is configured
            WebhookError: If the signature or body is invalid
        """
        if not self.verifier.verify_webhook(body, signature or ""):
            raise WebhookError("Invalid webhook signature")
        try:
            event = json.loads(body)
        except ValueError as e:
            raise WebhookError(f"Webhook body is not valid JSON: {e}") from e
        if not isinstance(event, dict) or "event" not in event:
            raise WebhookError("Webhook body has no event type")
        return event

    async def is_event_processed(self, event_id: str) -> bool:
        redis = self._redis()
        if redis is None:
            return False
        try:
            return bool(await redis.exists(f"webhook:processed:{event_id}"))
        except RedisError as e:
            # If Redis is down, process the event anyway; transitions are idempotent.
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        redis = self._redis()
        if redis is None:
            return
        try:
            await redis.setex(
                f"webhook:processed:{event_id}", self.settings.webhook_dedup_ttl, "1"
            )
        except RedisError as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def process_event(
        self,
        event: Dict[str, Any],
        db: AsyncSession,
        event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Returns:
            Dict[str, Any]: Processing result with a ``status`` of
            ``success``, ``duplicate`` or ``ignored``
        """
        event_type = event.get("event", "")
        start_time = time.time()
        logger.info("processing_webhook_event", event_id=event_id, event_type=event_type)

        if event_id and await self.is_event_processed(event_id):
            metrics.record_webhook_event(event_type, "duplicate", time.time() - start_time)
            logger.info("webhook_event_already_processed", event_id=event_id)
            return {"status": "duplicate", "event_id": event_id, "event_type": event_type}

        handler = self.event_handlers.get(event_type)
        if handler is None:
            metrics.record_webhook_event(event_type, "ignored", time.time() - start_time)
            logger.info("webhook_no_handler", event_id=event_id, event_type=event_type)
            if event_id:
                await self.mark_event_processed(event_id)
            return {"status": "ignored", "event_id": event_id, "event_type": event_type}

        try:
            result = await handler(event.get("payload") or {}, db)
        except Exception as e:
            metrics.record_webhook_event(event_type, "error", time.time() - start_time)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            raise

        if event_id:
            await self.mark_event_processed(event_id)
        metrics.record_webhook_event(event_type, "success", time.time() - start_time)
        logger.info(
            "webhook_event_processed_successfully",
            event_id=event_id,
            event_type=event_type,
            result=result.get("status"),
        )
        return {
            "status": "success",
            "event_id": event_id,
            "event_type": event_type,
            "result": result,
        }

    @staticmethod
    def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
        entity = (payload.get(name) or {}).get("entity")
        if not isinstance(entity, dict):
            raise WebhookError(f"Webhook payload has no {name} entity")
        return entity

    @staticmethod
    def _field(entity: Dict[str, Any], field: str, name: str) -> str:
        value = entity.get(field)
        if not value:
            raise WebhookError(f"Webhook {name} entity has no {field}")
        return value

    async def _complete_order(
        self, db: AsyncSession, order_id: Optional[str], gateway_payment_id: str
    ) -> Dict[str, Any]:
        if not order_id:
            return {"status": "skipped", "reason": "no order id"}
        payment = await self.payment_ledger.find_by_order_id(db, order_id)
        if payment is None:
            logger.warning("webhook_order_not_found", order_id=order_id)
            return {"status": "skipped", "reason": "unknown order", "order_id": order_id}

        try:
            transition = await self.payment_ledger.mark_completed(
                db, payment.id, transaction_id=gateway_payment_id
            )
        except InvalidTransitionError as e:
            # Gateway captured money for a payment already settled as failed.
            logger.error(
                "captured_payment_for_failed_invoice",
                payment_id=str(payment.id),
                order_id=order_id,
                gateway_payment_id=gateway_payment_id,
                status=e.current_status,
            )
            return {"status": "rejected", "payment_id": str(payment.id)}

        return {
            "status": "completed",
            "payment_id": str(payment.id),
            "changed": transition.changed,
        }

    async def handle_payment_captured(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        payment = self._entity(payload, "payment")
        return await self._complete_order(
            db, payment.get("order_id"), self._field(payment, "id", "payment")
        )

    async def handle_order_paid(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        order = self._entity(payload, "order")
        payment = self._entity(payload, "payment")
        return await self._complete_order(
            db, self._field(order, "id", "order"), self._field(payment, "id", "payment")
        )

    async def handle_payment_failed(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        entity = self._entity(payload, "payment")
        order_id = entity.get("order_id")
        payment = (
            await self.payment_ledger.find_by_order_id(db, order_id) if order_id else None
        )
        if payment is None:
            logger.warning("webhook_order_not_found", order_id=order_id)
            return {"status": "skipped", "reason": "unknown order", "order_id": order_id}

        reason = entity.get("error_description") or entity.get("error_code")
        try:
            transition = await self.payment_ledger.mark_failed(db, payment.id, reason=reason)
        except InvalidTransitionError:
            # A later attempt on the same order already succeeded.
            logger.info(
                "payment_failed_event_after_completion",
                payment_id=str(payment.id),
                order_id=order_id,
                gateway_payment_id=entity.get("id"),
            )
            return {"status": "ignored", "payment_id": str(payment.id)}

        return {
            "status": "failed",
            "payment_id": str(payment.id),
            "changed": transition.changed,
        }

    async def handle_subscription_event(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        entity = self._entity(payload, "subscription")
        subscription_id = self._field(entity, "id", "subscription")
        status = self._field(entity, "status", "subscription")
        try:
            transition = await self.subscription_ledger.update_status(
                db, subscription_id, status, source="webhook"
            )
        except NotFoundError:
            logger.warning("webhook_subscription_not_found", subscription_id=subscription_id)
            return {"status": "skipped", "reason": "unknown subscription"}
        return {
            "status": transition.subscription.status,
            "subscription_id": subscription_id,
            "changed": transition.changed,
        }

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
            self.redis_client = None
