"""
API routes for settlement.

Domain errors propagate to the exception handlers registered in
``settlement.api.main``, which map them to HTTP statuses.
"""
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.core.coordinator import SettlementCoordinator
from settlement.core.reconciliation import SubscriptionReconciler
from settlement.database.connection import get_db
from settlement.integrations.webhook_handler import WebhookHandler
from settlement.monitoring.health import HealthCheck

from .schemas import (
    BulkInvoiceRequest,
    BulkInvoiceResponse,
    CheckoutOrderResponse,
    CreateInvoiceRequest,
    CreateOrderRequest,
    CreateSubscriptionRequest,
    HealthCheckResponse,
    MarkPaidRequest,
    PaymentCallbackRequest,
    PaymentDetailResponse,
    PaymentResponse,
    PaymentStatsResponse,
    RefundRequest,
    SettlementResponse,
    SubscriptionCallbackRequest,
    SubscriptionCheckoutResponse,
    SubscriptionConfirmationResponse,
    SubscriptionResponse,
    SubscriptionSyncResponse,
    UpdatePaymentRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
invoice_router = APIRouter(prefix="/invoices", tags=["invoices"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


# Services are built lazily so a missing gateway key fails the first
# request that needs it rather than application startup.
@lru_cache
def get_coordinator() -> SettlementCoordinator:
    return SettlementCoordinator()


@lru_cache
def get_webhook_handler() -> WebhookHandler:
    coordinator = get_coordinator()
    return WebhookHandler(coordinator.payment_ledger, coordinator.subscription_ledger)


@lru_cache
def get_reconciler() -> SubscriptionReconciler:
    return SubscriptionReconciler(get_coordinator().subscription_ledger)


@lru_cache
def get_health_check() -> HealthCheck:
    return HealthCheck()


# Orders and invoices ------------------------------------------------------


@order_router.post(
    "",
    response_model=CheckoutOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a gateway order",
    description="Open a gateway order and record its pending payment",
)
async def create_order(
    request: CreateOrderRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """
    Create a gateway order.

    Supplying ``Idempotency-Key`` makes retries return the first response.
    """
    logger.info(
        "api_create_order_request",
        user_id=str(request.user_id),
        enrollment_id=str(request.enrollment_id),
        amount=request.amount,
    )
    return await coordinator.create_order(
        db,
        user_id=request.user_id,
        enrollment_id=request.enrollment_id,
        amount=request.amount,
        currency=request.currency,
        receipt=request.receipt,
        payment_period=request.payment_period,
        idempotency_key=idempotency_key,
    )


@invoice_router.post(
    "",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Generate an invoice",
)
async def create_invoice(
    request: CreateInvoiceRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Any:
    return await coordinator.generate_invoice(
        db,
        request.user_id,
        request.enrollment_id,
        request.amount,
        method=request.method,
        payment_period=request.payment_period,
        notes=request.notes,
    )


@invoice_router.post(
    "/bulk",
    response_model=BulkInvoiceResponse,
    summary="Generate invoices for many users",
    description="Per-user results; one failing user does not abort the batch",
)
async def create_bulk_invoices(
    request: BulkInvoiceRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    results = await coordinator.generate_bulk_invoices(
        db,
        request.enrollment_id,
        request.amount,
        request.user_ids,
        payment_period=request.payment_period,
    )
    created = sum(1 for r in results if r.success)
    return {"created": created, "failed": len(results) - created, "results": results}


@invoice_router.post(
    "/{payment_id}/order",
    response_model=CheckoutOrderResponse,
    summary="Charge an invoice",
    description="Open (or reuse) the gateway order for an existing invoice",
)
async def create_invoice_order(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    return await coordinator.create_order_for_invoice(db, payment_id)


# Payments -----------------------------------------------------------------


@payment_router.post(
    "/callback",
    response_model=SettlementResponse,
    summary="Checkout callback",
    description="Verify a checkout callback and settle the payment",
    responses={400: {"description": "Signature mismatch; the payment is failed"}},
)
async def payment_callback(
    request: PaymentCallbackRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Any:
    result = await coordinator.handle_callback(
        db,
        razorpay_payment_id=request.razorpay_payment_id,
        razorpay_order_id=request.razorpay_order_id,
        razorpay_signature=request.razorpay_signature,
    )
    body = SettlementResponse.model_validate(result, from_attributes=True)
    if not result.verified:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "signature_mismatch",
                "message": "Payment signature verification failed",
                "details": body.model_dump(mode="json"),
            },
        )
    return body


@payment_router.get("", response_model=List[PaymentResponse], summary="List payments")
async def list_payments(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    user_id: Optional[str] = None,
    enrollment_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    sport_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Any:
    """Filter by status, user, enrollment, batch, sport and an inclusive created-at range."""
    return await coordinator.payment_ledger.list_payments(
        db,
        status=status_filter,
        user_id=user_id,
        enrollment_id=enrollment_id,
        batch_id=batch_id,
        sport_id=sport_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )


@payment_router.get("/stats", response_model=PaymentStatsResponse, summary="Payment statistics")
async def payment_stats(
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    ledger = coordinator.payment_ledger
    stats = await ledger.payment_stats(db)
    body = PaymentStatsResponse.model_validate(stats, from_attributes=True).model_dump()
    body["revenue_last_30_days"] = await ledger.total_revenue_since(db, days=30)
    return body


@payment_router.get(
    "/{payment_id}", response_model=PaymentDetailResponse, summary="Get payment"
)
async def get_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    details = await coordinator.payment_ledger.get_payment_details(db, payment_id)
    body = PaymentResponse.model_validate(details["payment"]).model_dump()
    user = details["user"] or {}
    body.update(
        user_name=user.get("name"),
        user_email=user.get("email"),
        sport_name=details["sport_name"],
        batch_name=details["batch_name"],
    )
    return body


@payment_router.patch(
    "/{payment_id}", response_model=PaymentResponse, summary="Edit payment details"
)
async def update_payment(
    payment_id: str,
    request: UpdatePaymentRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Any:
    return await coordinator.payment_ledger.update_payment_details(
        db, payment_id, **request.model_dump(exclude_unset=True)
    )


@payment_router.post(
    "/{payment_id}/refund", response_model=PaymentResponse, summary="Refund a payment"
)
async def refund_payment(
    payment_id: str,
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Any:
    logger.info(
        "api_refund_payment_request",
        payment_id=payment_id,
        refund_amount=request.refund_amount,
    )
    return await coordinator.refund(db, payment_id, request.refund_amount, request.refund_reason)


@payment_router.post(
    "/{payment_id}/mark-paid",
    response_model=PaymentResponse,
    summary="Record an offline payment",
)
async def mark_paid(
    payment_id: str,
    request: MarkPaidRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Any:
    transition = await coordinator.payment_ledger.mark_paid(
        db, payment_id, request.method, reference=request.reference, notes=request.notes
    )
    return transition.payment


# Subscriptions ------------------------------------------------------------


@subscription_router.post(
    "",
    response_model=SubscriptionCheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription",
)
async def create_subscription(
    request: CreateSubscriptionRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    logger.info(
        "api_create_subscription_request",
        user_id=str(request.user_id),
        batch_id=str(request.batch_id),
        sport_id=str(request.sport_id),
    )
    return await coordinator.create_subscription(
        db,
        request.user_id,
        request.batch_id,
        request.sport_id,
        idempotency_key=idempotency_key,
    )


@subscription_router.get(
    "", response_model=List[SubscriptionResponse], summary="List subscriptions"
)
async def list_subscriptions(
    user_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Any:
    return await coordinator.subscription_ledger.list_subscriptions(
        db, user_id=user_id, batch_id=batch_id, status=status_filter
    )


@subscription_router.post(
    "/callback",
    response_model=SubscriptionConfirmationResponse,
    summary="Subscription checkout callback",
    responses={400: {"description": "Signature mismatch"}},
)
async def subscription_callback(
    request: SubscriptionCallbackRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Any:
    result = await coordinator.confirm_subscription_checkout(
        db,
        razorpay_payment_id=request.razorpay_payment_id,
        razorpay_subscription_id=request.razorpay_subscription_id,
        razorpay_signature=request.razorpay_signature,
    )
    body = SubscriptionConfirmationResponse.model_validate(result)
    if not result.verified:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "signature_mismatch",
                "message": "Subscription signature verification failed",
                "details": body.model_dump(mode="json"),
            },
        )
    return body


# Webhooks -----------------------------------------------------------------


@webhook_router.post(
    "/razorpay",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Handle gateway webhook events",
)
async def razorpay_webhook(
    request: Request,
    razorpay_signature: str = Header(..., alias="X-Razorpay-Signature"),
    event_id: Optional[str] = Header(default=None, alias="X-Razorpay-Event-Id"),
    db: AsyncSession = Depends(get_db),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    """
    Handle gateway webhook events.

    Verifies the signature over the raw body and processes events with
    deduplication.
    """
    body = await request.body()
    event = handler.verify_and_parse(body, razorpay_signature)
    logger.info("api_webhook_received", event_id=event_id, event_type=event.get("event"))
    return await handler.process_event(event, db, event_id=event_id)


# Admin --------------------------------------------------------------------


@admin_router.post(
    "/subscriptions/sync",
    response_model=SubscriptionSyncResponse,
    summary="Refresh subscription statuses",
    description="Read every live subscription back from the gateway",
)
async def sync_subscriptions(
    db: AsyncSession = Depends(get_db),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> Any:
    logger.info("api_subscription_sync_started")
    return await reconciler.refresh_statuses(db)


# Monitoring ---------------------------------------------------------------


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
