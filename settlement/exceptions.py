"""
Settlement error taxonomy.

Configuration and validation errors are raised before any mutation.
Gateway failures are described by ``GatewayError`` in the gateway client
module. A signature mismatch is not an exception: it is a failed
settlement result.
"""


class SettlementError(Exception):
    """Base exception for settlement errors."""

    pass


class ConfigurationError(SettlementError):
    """Raised when required configuration (gateway credentials) is missing."""

    pass


class ValidationError(SettlementError):
    """Raised when a request is rejected before any state change."""

    pass


class NotFoundError(ValidationError):
    """Raised when a referenced payment, user, enrollment, batch or sport is missing."""

    def __init__(self, entity: str, entity_id: object):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(SettlementError):
    """Raised when a terminal payment is asked to move to another terminal state."""

    def __init__(self, payment_id: object, current_status: str, requested_status: str):
        super().__init__(
            f"Payment {payment_id} is {current_status}; cannot mark it {requested_status}"
        )
        self.payment_id = payment_id
        self.current_status = current_status
        self.requested_status = requested_status


class IdempotencyConflictError(SettlementError):
    """Raised when an idempotency key is in flight or reused for a different request."""

    pass
