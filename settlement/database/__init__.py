"""Database package for the settlement engine."""
from .connection import create_session_factory, get_db, get_session_factory, init_db
from .models import (
    Base,
    Batch,
    Enrollment,
    IdempotencyRecord,
    OutboxEvent,
    Payment,
    PaymentEvent,
    Sport,
    Subscription,
    User,
)

__all__ = [
    "Base",
    "Batch",
    "Enrollment",
    "IdempotencyRecord",
    "OutboxEvent",
    "Payment",
    "PaymentEvent",
    "Sport",
    "Subscription",
    "User",
    "create_session_factory",
    "get_db",
    "get_session_factory",
    "init_db",
]
