"""Core settlement logic."""
from .coordinator import SettlementCoordinator, SettlementResult
from settlement.exceptions import (
    ConfigurationError,
    IdempotencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from .idempotency import IdempotencyManager
from .outbox import OutboxPublisher
from .payment_ledger import PaymentLedger
from .reconciliation import SubscriptionReconciler
from .subscription_ledger import SubscriptionLedger

__all__ = [
    "ConfigurationError",
    "IdempotencyConflictError",
    "IdempotencyManager",
    "InvalidTransitionError",
    "NotFoundError",
    "OutboxPublisher",
    "PaymentLedger",
    "SettlementCoordinator",
    "SettlementError",
    "SettlementResult",
    "SubscriptionLedger",
    "SubscriptionReconciler",
    "ValidationError",
]
