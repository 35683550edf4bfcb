"""SQLAlchemy database models for the settlement engine."""
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from settlement.timeutils import utcnow

# Portable column types: JSONB / BIGSERIAL on PostgreSQL, plain JSON / rowid on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

PAYMENT_STATUSES = ("pending", "attempted", "completed", "failed")
OPEN_PAYMENT_STATUSES = ("pending", "attempted")

# Gateway subscription statuses that still hold a seat in the batch.
LIVE_SUBSCRIPTION_STATUSES = ("created", "authenticated", "active", "pending", "halted", "paused")
TERMINAL_SUBSCRIPTION_STATUSES = ("cancelled", "completed", "expired")
_LIVE_SUBSCRIPTION_CLAUSE = text(
    "status IN (" + ", ".join(f"'{s}'" for s in LIVE_SUBSCRIPTION_STATUSES) + ")"
)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """Read model of a user owned by the user/role subsystem."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, name={self.name})>"


class Sport(Base):
    """
    Catalog sport.

    ``razorpay_plan_id`` caches the gateway recurring plan and is written
    once, by compare-and-set, on the first subscription attempt.
    """

    __tablename__ = "sports"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Smallest currency unit (paise).
    price_per_month: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    razorpay_plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<Sport(id={self.id}, name={self.name}, plan={self.razorpay_plan_id})>"


class Batch(Base):
    """Catalog batch (a scheduled group for one sport)."""

    __tablename__ = "batches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sport_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("sports.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Batch(id={self.id}, name={self.name})>"


class Enrollment(Base):
    """Enrollment of a user in a batch; ``payment_status`` is set to paid on settlement."""

    __tablename__ = "enrollments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("batches.id"), nullable=False, index=True
    )
    sport_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("sports.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    __table_args__ = (
        CheckConstraint(
            "payment_status IN ('pending', 'paid', 'overdue')",
            name="valid_enrollment_payment_status",
        ),
        Index("idx_enrollments_user_batch", "user_id", "batch_id"),
    )

    def __repr__(self) -> str:
        return f"<Enrollment(id={self.id}, user_id={self.user_id}, batch_id={self.batch_id})>"


class Payment(Base):
    """
    Payment (invoice) records table.

    One billing attempt and its outcome. Rows are never deleted; status
    only moves forward (pending/attempted -> completed|failed) and a
    completed payment may additionally carry refund fields.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("enrollments.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    gateway_order_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    receipt_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_period: Mapped[str | None] = mapped_column(String(32), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refund_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    payment_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'attempted', 'completed', 'failed')",
            name="valid_status",
        ),
        CheckConstraint(
            "(status = 'completed') = (transaction_id IS NOT NULL)",
            name="transaction_id_iff_completed",
        ),
        CheckConstraint(
            "NOT refunded OR (status = 'completed' AND refund_amount > 0 "
            "AND refund_amount <= amount AND refund_date IS NOT NULL)",
            name="refund_within_completed_amount",
        ),
        Index("idx_payments_user_status", "user_id", "status"),
        Index("idx_payments_enrollment_period", "enrollment_id", "payment_period"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Subscription(Base):
    """
    Recurring subscriptions created on the gateway.

    Status is whatever the gateway last reported; it is refreshed by
    webhooks and the subscription sync job, never invented locally.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("batches.id"), nullable=False, index=True
    )
    sport_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("sports.id"), nullable=False, index=True
    )
    razorpay_subscription_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_subscription_amount"),
        Index("idx_subscriptions_user_batch", "user_id", "batch_id"),
        # At most one live subscription per user and batch, across processes.
        Index(
            "uq_subscriptions_live_user_batch",
            "user_id",
            "batch_id",
            unique=True,
            sqlite_where=_LIVE_SUBSCRIPTION_CLAUSE,
            postgresql_where=_LIVE_SUBSCRIPTION_CLAUSE,
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, gateway_id={self.razorpay_subscription_id}, "
            f"status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores all events related to a payment for complete audit trail.
    Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as the ledger transition
    that caused them and delivered to collaborators by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_outbox_unpublished", "published", "created_at"),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


class IdempotencyRecord(Base):
    """
    Client idempotency keys for order and subscription creation.

    A key is claimed (``in_progress``) before the gateway is called and
    completed with the response that was returned to the caller.
    """

    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    scope: Mapped[str] = mapped_column(String(64), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="in_progress")
    response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed')", name="valid_idempotency_status"
        ),
    )

    def __repr__(self) -> str:
        return f"<IdempotencyRecord(key={self.key}, scope={self.scope}, status={self.status})>"
