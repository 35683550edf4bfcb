"""
Delivery of outbox events to external collaborators.

Rewards, invoice-PDF and notification services each receive the events
they care about as a JSON POST. The outbox event id is sent as the
idempotency key, so redelivery after a partial failure is safe on their side.
"""
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from settlement.config import Settings, get_settings

logger = structlog.get_logger(__name__)

# Event type -> collaborators that receive it.
ROUTES: Dict[str, Tuple[str, ...]] = {
    "payment.completed": ("rewards", "invoice", "notification"),
    "payment.failed": ("notification",),
    "payment.refunded": ("rewards", "invoice", "notification"),
    "subscription.created": ("notification",),
    "subscription.status_changed": ("notification",),
}


class CollaboratorError(Exception):
    """Raised when a collaborator rejects or cannot receive an event."""

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class CollaboratorDispatcher:
    """Publisher function for ``OutboxPublisher`` that POSTs events to collaborators."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self.endpoints: Dict[str, Optional[str]] = {
            "rewards": self.settings.rewards_webhook_url,
            "invoice": self.settings.invoice_webhook_url,
            "notification": self.settings.notification_webhook_url,
        }

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.collaborator_timeout_seconds
            )
        return self._http_client

    def targets(self, event_type: str) -> List[Tuple[str, str]]:
        """Configured (collaborator, url) pairs for an event type."""
        return [
            (name, url)
            for name in ROUTES.get(event_type, ())
            if (url := self.endpoints.get(name))
        ]

    async def __call__(self, event_data: Dict[str, Any]) -> None:
        """
        Deliver one event to every configured collaborator.

        Raises:
            CollaboratorError: If any delivery fails (the event stays unpublished)
        """
        event_type = event_data["event_type"]
        targets = self.targets(event_type)
        if not targets:
            logger.debug("collaborator_event_unrouted", event_type=event_type)
            return

        headers = {
            "Idempotency-Key": f"outbox-{event_data['id']}",
            "X-Event-Type": event_type,
        }
        client = self._client()
        for name, url in targets:
            start_time = time.time()
            try:
                response = await client.post(url, json=event_data, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise CollaboratorError(name, f"HTTP {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise CollaboratorError(name, str(e) or type(e).__name__) from e

            logger.info(
                "collaborator_event_delivered",
                collaborator=name,
                event_id=event_data["id"],
                event_type=event_type,
                aggregate_id=event_data.get("aggregate_id"),
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )

    async def close(self) -> None:
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
