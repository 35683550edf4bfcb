"""Background workers for async processing."""
from .outbox_publisher import start_outbox_publisher
from .subscription_sync_worker import start_subscription_sync_worker

__all__ = ["start_outbox_publisher", "start_subscription_sync_worker"]
