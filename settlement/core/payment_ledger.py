"""
Payment ledger: the lifecycle of the Payment (invoice) record.

Every status change is a single compare-and-set UPDATE guarded by the
states it may leave from, so duplicate or concurrent callbacks collapse
onto one final state:

    pending ──attach_order──► attempted
    pending | attempted ──mark_completed──► completed ──process_refund──► refunded
    pending | attempted ──mark_failed─────► failed

Effective transitions write an audit ``PaymentEvent`` and an outbox event
in the same transaction. Repeated transitions are no-ops and write nothing.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import get_settings
from settlement.core.outbox import write_outbox_event
from settlement.database.models import (
    OPEN_PAYMENT_STATUSES,
    PAYMENT_STATUSES,
    Batch,
    Enrollment,
    Payment,
    PaymentEvent,
    Sport,
    User,
)
from settlement.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from settlement.monitoring.metrics import metrics
from settlement.timeutils import to_naive_utc, utcnow

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = ("notes", "receipt_number", "payment_period")


@dataclass
class LedgerTransition:
    """Outcome of a ledger transition; ``changed`` is False for idempotent repeats."""

    payment: Payment
    changed: bool


@dataclass
class BulkInvoiceResult:
    """Per-user outcome of bulk invoice generation."""

    user_id: str
    success: bool
    payment_id: Optional[uuid.UUID] = None
    error: Optional[str] = None


@dataclass
class PaymentStats:
    """Aggregate payment projection. Revenue counts completed payments only."""

    total_revenue: int = 0
    refunded_total: int = 0
    net_revenue: int = 0
    completed_payments: int = 0
    pending_payments: int = 0
    attempted_payments: int = 0
    failed_payments: int = 0
    revenue_by_method: Dict[str, int] = field(default_factory=dict)
    revenue_by_sport: Dict[str, int] = field(default_factory=dict)
    revenue_by_batch: Dict[str, int] = field(default_factory=dict)


def parse_uuid(value: Any, entity: str) -> uuid.UUID:
    """Coerce an id to UUID; malformed ids cannot exist, so they are not found."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(entity, value)


def generate_receipt_number() -> str:
    return f"REC-{utcnow():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6].upper()}"


def current_payment_period() -> str:
    return utcnow().strftime("%Y-%m")


def payment_payload(payment: Payment) -> Dict[str, Any]:
    """Event payload shared by the outbox and audit trail."""
    return {
        "payment_id": str(payment.id),
        "user_id": str(payment.user_id),
        "enrollment_id": str(payment.enrollment_id),
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "method": payment.method,
        "gateway_order_id": payment.gateway_order_id,
        "transaction_id": payment.transaction_id,
        "receipt_number": payment.receipt_number,
        "payment_period": payment.payment_period,
        "refunded": payment.refunded,
        "refund_amount": payment.refund_amount,
    }


class PaymentLedger:
    """
    Owns Payment creation, transitions, refunds and query projections.

    Methods take the caller's session and commit their own transition.
    """

    def __init__(self, default_currency: Optional[str] = None):
        self.default_currency = default_currency or get_settings().default_currency

    # Creation -------------------------------------------------------------

    @staticmethod
    def _validate_amount(amount: Any, label: str = "Amount") -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(
                f"{label} must be a positive integer in the smallest currency unit"
            )

    async def get_payment(self, db: AsyncSession, payment_id: Any) -> Payment:
        """
        Load a payment, bypassing any stale identity-map copy.

        Raises:
            NotFoundError: If no such payment exists
        """
        pid = parse_uuid(payment_id, "Payment")
        payment = await db.get(Payment, pid, populate_existing=True)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def find_by_order_id(
        self, db: AsyncSession, gateway_order_id: str
    ) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.gateway_order_id == gateway_order_id)
        result = await db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def ensure_references(
        self, db: AsyncSession, user_id: Any, enrollment_id: Any
    ) -> Enrollment:
        """
        Check that the user and enrollment exist.

        Raises:
            NotFoundError: If either is missing
        """
        uid = parse_uuid(user_id, "User")
        eid = parse_uuid(enrollment_id, "Enrollment")
        if await db.get(User, uid) is None:
            raise NotFoundError("User", user_id)
        enrollment = await db.get(Enrollment, eid)
        if enrollment is None:
            raise NotFoundError("Enrollment", enrollment_id)
        return enrollment

    async def create_pending(
        self,
        db: AsyncSession,
        user_id: Any,
        enrollment_id: Any,
        amount: int,
        method: str,
        currency: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        payment_period: Optional[str] = None,
        receipt_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> uuid.UUID:
        """
        Create a payment in ``pending``; the only way a Payment comes into existence.

        Raises:
            ValidationError: If amount, method or currency are malformed
            NotFoundError: If the user or enrollment is missing
        """
        self._validate_amount(amount)
        if not method or not method.strip():
            raise ValidationError("Payment method is required")
        currency = (currency or self.default_currency).upper()
        if len(currency) != 3:
            raise ValidationError("Currency must be 3-letter code")

        await self.ensure_references(db, user_id, enrollment_id)

        payment = Payment(
            id=uuid.uuid4(),
            user_id=parse_uuid(user_id, "User"),
            enrollment_id=parse_uuid(enrollment_id, "Enrollment"),
            amount=amount,
            currency=currency,
            status="pending",
            method=method.strip(),
            gateway_order_id=gateway_order_id,
            idempotency_key=idempotency_key,
            payment_period=payment_period,
            receipt_number=receipt_number,
            notes=notes,
        )
        db.add(payment)
        self._record_event(
            db,
            payment.id,
            "payment.created",
            {"amount": amount, "currency": currency, "method": payment.method,
             "gateway_order_id": gateway_order_id},
        )
        await db.commit()

        logger.info(
            "payment_created",
            payment_id=str(payment.id),
            user_id=str(payment.user_id),
            enrollment_id=str(payment.enrollment_id),
            amount=amount,
            order_id=gateway_order_id,
        )
        return payment.id

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
        """Create a single pending invoice stamped with a receipt number and billing period."""
        payment_id = await self.create_pending(
            db,
            user_id,
            enrollment_id,
            amount,
            method,
            payment_period=payment_period or current_payment_period(),
            receipt_number=generate_receipt_number(),
            notes=notes,
        )
        return await self.get_payment(db, payment_id)

    async def generate_bulk_invoices(
        self,
        db: AsyncSession,
        enrollment_id: Any,
        amount: int,
        user_ids: Iterable[Any],
        payment_period: Optional[str] = None,
        method: str = "invoice",
    ) -> List[BulkInvoiceResult]:
        """
        Create one pending invoice per user for the same enrollment and amount.

        Each creation commits on its own; a failing user is reported in the
        result list and does not abort the batch.

        Raises:
            ValidationError: If the amount is malformed
            NotFoundError: If the enrollment is missing (nothing is created)
        """
        self._validate_amount(amount)
        eid = parse_uuid(enrollment_id, "Enrollment")
        if await db.get(Enrollment, eid) is None:
            raise NotFoundError("Enrollment", enrollment_id)
        period = payment_period or current_payment_period()

        results: List[BulkInvoiceResult] = []
        for raw_user_id in user_ids:
            try:
                uid = parse_uuid(raw_user_id, "User")
                if await db.get(User, uid) is None:
                    raise NotFoundError("User", raw_user_id)
                await self._reject_duplicate_invoice(db, uid, eid, period)
                payment_id = await self.create_pending(
                    db,
                    uid,
                    eid,
                    amount,
                    method,
                    payment_period=period,
                    receipt_number=generate_receipt_number(),
                )
            except ValidationError as e:
                await db.rollback()
                logger.warning(
                    "bulk_invoice_failed",
                    user_id=str(raw_user_id),
                    enrollment_id=str(eid),
                    error=str(e),
                )
                results.append(
                    BulkInvoiceResult(user_id=str(raw_user_id), success=False, error=str(e))
                )
            else:
                results.append(
                    BulkInvoiceResult(user_id=str(uid), success=True, payment_id=payment_id)
                )

        created = sum(1 for r in results if r.success)
        metrics.record_bulk_invoices(created, len(results) - created)
        logger.info(
            "bulk_invoices_generated",
            enrollment_id=str(eid),
            created=created,
            failed=len(results) - created,
        )
        return results

    async def _reject_duplicate_invoice(
        self, db: AsyncSession, user_id: uuid.UUID, enrollment_id: uuid.UUID, period: str
    ) -> None:
        stmt = select(func.count()).select_from(Payment).where(
            Payment.user_id == user_id,
            Payment.enrollment_id == enrollment_id,
            Payment.payment_period == period,
            Payment.status != "failed",
        )
        if (await db.execute(stmt)).scalar_one():
            raise ValidationError(
                f"User {user_id} already has an invoice for period {period}"
            )

    # Transitions ----------------------------------------------------------

    def _record_event(
        self,
        db: AsyncSession,
        payment_id: uuid.UUID,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: Optional[uuid.UUID] = None,
    ) -> None:
        db.add(
            PaymentEvent(
                payment_id=payment_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id or uuid.uuid4(),
            )
        )

    async def _compare_and_set(
        self,
        db: AsyncSession,
        payment_id: uuid.UUID,
        *conditions: Any,
        **values: Any,
    ) -> bool:
        values["updated_at"] = utcnow()
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def attach_order(
        self, db: AsyncSession, payment_id: Any, gateway_order_id: str
    ) -> LedgerTransition:
        """
        Record the gateway order opened for an existing invoice (pending -> attempted).

        Raises:
            NotFoundError: If the payment is missing
            InvalidTransitionError: If the payment is past ``pending`` with another order
        """
        payment = await self.get_payment(db, payment_id)
        applied = await self._compare_and_set(
            db,
            payment.id,
            Payment.status == "pending",
            status="attempted",
            gateway_order_id=gateway_order_id,
        )
        if applied:
            self._record_event(
                db, payment.id, "payment.attempted", {"gateway_order_id": gateway_order_id}
            )
            await db.commit()
            metrics.record_transition("attempted", "applied")
            logger.info(
                "payment_order_attached",
                payment_id=str(payment.id),
                order_id=gateway_order_id,
            )
            return LedgerTransition(await self.get_payment(db, payment.id), True)

        payment = await self.get_payment(db, payment.id)
        if payment.status == "attempted" and payment.gateway_order_id == gateway_order_id:
            metrics.record_transition("attempted", "noop")
            return LedgerTransition(payment, False)
        metrics.record_transition("attempted", "rejected")
        raise InvalidTransitionError(payment.id, payment.status, "attempted")

    async def mark_completed(
        self,
        db: AsyncSession,
        payment_id: Any,
        transaction_id: str,
        payment_date: Optional[datetime] = None,
        receipt_number: Optional[str] = None,
        method: Optional[str] = None,
        notes: Optional[str] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> LedgerTransition:
        """
        Settle a payment as completed.

        A payment that is already completed is left untouched and reported
        as an unchanged success, so duplicate callbacks are harmless.

        Raises:
            NotFoundError: If the payment is missing
            ValidationError: If the transaction id is empty
            InvalidTransitionError: If the payment already failed
        """
        if not transaction_id or not transaction_id.strip():
            raise ValidationError("Transaction id is required to complete a payment")
        payment = await self.get_payment(db, payment_id)

        values: Dict[str, Any] = {
            "status": "completed",
            "transaction_id": transaction_id,
            "payment_date": to_naive_utc(payment_date) if payment_date else utcnow(),
            "failure_reason": None,
            "receipt_number": receipt_number
            or func.coalesce(Payment.receipt_number, generate_receipt_number()),
        }
        if method:
            values["method"] = method
        if notes is not None:
            values["notes"] = notes

        applied = await self._compare_and_set(
            db, payment.id, Payment.status.in_(OPEN_PAYMENT_STATUSES), **values
        )
        if not applied:
            payment = await self.get_payment(db, payment.id)
            if payment.status == "completed":
                if payment.transaction_id != transaction_id:
                    logger.warning(
                        "payment_completed_with_different_transaction",
                        payment_id=str(payment.id),
                        order_id=payment.gateway_order_id,
                        transaction_id=payment.transaction_id,
                        supplied_transaction_id=transaction_id,
                    )
                metrics.record_transition("completed", "noop")
                logger.info("payment_already_completed", payment_id=str(payment.id))
                return LedgerTransition(payment, False)
            metrics.record_transition("completed", "rejected")
            logger.error(
                "payment_completion_rejected",
                payment_id=str(payment.id),
                order_id=payment.gateway_order_id,
                status=payment.status,
            )
            raise InvalidTransitionError(payment.id, payment.status, "completed")

        await db.execute(
            update(Enrollment)
            .where(Enrollment.id == payment.enrollment_id)
            .values(payment_status="paid")
            .execution_options(synchronize_session=False)
        )
        self._record_event(
            db,
            payment.id,
            "payment.completed",
            {"transaction_id": transaction_id, "method": method or payment.method},
            correlation_id,
        )
        payment = await self.get_payment(db, payment.id)
        write_outbox_event(
            db, payment.id, "payment", "payment.completed", payment_payload(payment)
        )
        await db.commit()

        metrics.record_transition("completed", "applied", payment.amount)
        logger.info(
            "payment_completed",
            payment_id=str(payment.id),
            order_id=payment.gateway_order_id,
            transaction_id=transaction_id,
            amount=payment.amount,
        )
        return LedgerTransition(payment, True)

    async def mark_failed(
        self,
        db: AsyncSession,
        payment_id: Any,
        reason: Optional[str] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> LedgerTransition:
        """
        Settle a payment as failed.

        Repeating it on a failed payment is a no-op.

        Raises:
            NotFoundError: If the payment is missing
            InvalidTransitionError: If the payment already completed
        """
        payment = await self.get_payment(db, payment_id)
        applied = await self._compare_and_set(
            db,
            payment.id,
            Payment.status.in_(OPEN_PAYMENT_STATUSES),
            status="failed",
            failure_reason=(reason or "payment failed")[:255],
        )
        if not applied:
            payment = await self.get_payment(db, payment.id)
            if payment.status == "failed":
                metrics.record_transition("failed", "noop")
                return LedgerTransition(payment, False)
            metrics.record_transition("failed", "rejected")
            raise InvalidTransitionError(payment.id, payment.status, "failed")

        self._record_event(
            db, payment.id, "payment.failed", {"reason": reason}, correlation_id
        )
        payment = await self.get_payment(db, payment.id)
        write_outbox_event(db, payment.id, "payment", "payment.failed", payment_payload(payment))
        await db.commit()

        metrics.record_transition("failed", "applied")
        logger.warning(
            "payment_failed",
            payment_id=str(payment.id),
            order_id=payment.gateway_order_id,
            reason=reason,
        )
        return LedgerTransition(payment, True)

    async def mark_paid(
        self,
        db: AsyncSession,
        payment_id: Any,
        method: str,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> LedgerTransition:
        """
        Complete a payment settled offline (cash, bank transfer).

        The reference, or a generated ``OFFLINE-`` id, becomes the transaction id.
        """
        if not method or not method.strip():
            raise ValidationError("Payment method is required")
        transaction_id = reference or f"OFFLINE-{uuid.uuid4().hex[:12].upper()}"
        return await self.mark_completed(
            db,
            payment_id,
            transaction_id=transaction_id,
            method=method.strip(),
            notes=notes,
        )

    async def process_refund(
        self,
        db: AsyncSession,
        payment_id: Any,
        refund_amount: int,
        refund_reason: str,
    ) -> Payment:
        """
        Record a refund on a completed payment.

        The four refund fields are written together in one statement; the
        payment keeps ``completed`` status and its original amount.

        Raises:
            NotFoundError: If the payment is missing
            ValidationError: If the payment is not completed, already refunded,
                or the amount is not within (0, amount]
        """
        self._validate_amount(refund_amount, "Refund amount")
        if not refund_reason or not refund_reason.strip():
            raise ValidationError("Refund reason is required")

        payment = await self.get_payment(db, payment_id)
        if payment.status != "completed":
            metrics.record_refund("rejected")
            raise ValidationError(
                f"Only completed payments can be refunded (payment is {payment.status})"
            )
        if payment.refunded:
            metrics.record_refund("rejected")
            raise ValidationError(f"Payment {payment.id} is already refunded")
        if refund_amount > payment.amount:
            metrics.record_refund("rejected")
            raise ValidationError(
                f"Refund amount {refund_amount} exceeds payment amount {payment.amount}"
            )

        refund_date = utcnow()
        applied = await self._compare_and_set(
            db,
            payment.id,
            Payment.status == "completed",
            Payment.refunded == False,  # noqa: E712
            refunded=True,
            refund_amount=refund_amount,
            refund_reason=refund_reason.strip(),
            refund_date=refund_date,
        )
        if not applied:
            metrics.record_refund("rejected")
            raise ValidationError(f"Payment {payment.id} is already refunded")

        self._record_event(
            db,
            payment.id,
            "payment.refunded",
            {"refund_amount": refund_amount, "refund_reason": refund_reason},
        )
        payment = await self.get_payment(db, payment.id)
        write_outbox_event(
            db, payment.id, "payment", "payment.refunded", payment_payload(payment)
        )
        await db.commit()

        metrics.record_refund("applied")
        logger.info(
            "payment_refunded",
            payment_id=str(payment.id),
            order_id=payment.gateway_order_id,
            refund_amount=refund_amount,
            amount=payment.amount,
        )
        return payment

    async def update_payment_details(
        self, db: AsyncSession, payment_id: Any, **changes: Any
    ) -> Payment:
        """
        Edit administrative fields (notes, receipt number, billing period).

        Status and money fields only change through transitions.

        Raises:
            ValidationError: If any other field is supplied
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Fields {sorted(unknown)} cannot be edited; use a ledger transition"
            )
        payment = await self.get_payment(db, payment_id)
        values = {k: v for k, v in changes.items() if v is not None}
        if not values:
            return payment

        await self._compare_and_set(db, payment.id, **values)
        self._record_event(db, payment.id, "payment.updated", values)
        await db.commit()
        logger.info("payment_details_updated", payment_id=str(payment.id), fields=sorted(values))
        return await self.get_payment(db, payment.id)

    # Queries --------------------------------------------------------------

    async def list_payments(
        self,
        db: AsyncSession,
        status: Optional[str] = None,
        user_id: Any = None,
        enrollment_id: Any = None,
        batch_id: Any = None,
        sport_id: Any = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Payment]:
        """
        List payments, newest first.

        Date bounds apply to ``created_at`` and are inclusive; either may be
        given alone. Batch and sport filters go through the enrollment.
        """
        stmt = select(Payment)
        if status is not None:
            if status not in PAYMENT_STATUSES:
                raise ValidationError(f"Unknown payment status {status!r}")
            stmt = stmt.where(Payment.status == status)
        if user_id is not None:
            stmt = stmt.where(Payment.user_id == parse_uuid(user_id, "User"))
        if enrollment_id is not None:
            stmt = stmt.where(Payment.enrollment_id == parse_uuid(enrollment_id, "Enrollment"))
        if batch_id is not None or sport_id is not None:
            stmt = stmt.join(Enrollment, Enrollment.id == Payment.enrollment_id)
            if batch_id is not None:
                stmt = stmt.where(Enrollment.batch_id == parse_uuid(batch_id, "Batch"))
            if sport_id is not None:
                stmt = stmt.where(Enrollment.sport_id == parse_uuid(sport_id, "Sport"))
        if start_date is not None:
            stmt = stmt.where(Payment.created_at >= to_naive_utc(start_date))
        if end_date is not None:
            stmt = stmt.where(Payment.created_at <= to_naive_utc(end_date))

        stmt = stmt.order_by(Payment.created_at.desc(), Payment.id).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def get_payment_details(self, db: AsyncSession, payment_id: Any) -> Dict[str, Any]:
        """Payment enriched with user, sport and batch display names."""
        payment = await self.get_payment(db, payment_id)
        user = await db.get(User, payment.user_id)
        enrollment = await db.get(Enrollment, payment.enrollment_id)
        sport = await db.get(Sport, enrollment.sport_id) if enrollment else None
        batch = await db.get(Batch, enrollment.batch_id) if enrollment else None
        return {
            "payment": payment,
            "user": {"name": user.name, "email": user.email} if user else None,
            "sport_name": sport.name if sport else None,
            "batch_name": batch.name if batch else None,
        }

    async def payment_stats(self, db: AsyncSession) -> PaymentStats:
        """Counts per status and completed revenue grouped by method, sport and batch."""
        stats = PaymentStats()

        counts = await db.execute(
            select(Payment.status, func.count()).group_by(Payment.status)
        )
        for status, count in counts.all():
            setattr(stats, f"{status}_payments", count)

        completed = Payment.status == "completed"
        stats.total_revenue = int(
            (await db.execute(select(func.coalesce(func.sum(Payment.amount), 0)).where(completed)))
            .scalar_one()
        )
        stats.refunded_total = int(
            (
                await db.execute(
                    select(func.coalesce(func.sum(Payment.refund_amount), 0)).where(
                        and_(completed, Payment.refunded == True)  # noqa: E712
                    )
                )
            ).scalar_one()
        )
        stats.net_revenue = stats.total_revenue - stats.refunded_total

        by_method = await db.execute(
            select(Payment.method, func.sum(Payment.amount)).where(completed).group_by(Payment.method)
        )
        stats.revenue_by_method = {method: int(total) for method, total in by_method.all()}

        by_sport = await db.execute(
            select(Sport.name, func.sum(Payment.amount))
            .join(Enrollment, Enrollment.id == Payment.enrollment_id)
            .join(Sport, Sport.id == Enrollment.sport_id)
            .where(completed)
            .group_by(Sport.name)
        )
        stats.revenue_by_sport = {name: int(total) for name, total in by_sport.all()}

        by_batch = await db.execute(
            select(Batch.name, func.sum(Payment.amount))
            .join(Enrollment, Enrollment.id == Payment.enrollment_id)
            .join(Batch, Batch.id == Enrollment.batch_id)
            .where(completed)
            .group_by(Batch.name)
        )
        stats.revenue_by_batch = {name: int(total) for name, total in by_batch.all()}
        return stats

    async def total_revenue_since(self, db: AsyncSession, days: int = 30) -> int:
        """Completed revenue for payments created in the trailing ``days`` window."""
        since = utcnow() - timedelta(days=days)
        stmt = select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.status == "completed",
            Payment.created_at >= since,
        )
        return int((await db.execute(stmt)).scalar_one())
