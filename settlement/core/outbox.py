"""
Transactional outbox pattern implementation.

Ledger transitions write their side-effect events to the database in the
same transaction as the state change; a background worker delivers them
to collaborators (rewards, invoice PDF, notifications) so settlement
never depends on those calls succeeding.
"""
import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.database.connection import get_session_factory
from settlement.database.models import OutboxEvent
from settlement.monitoring.metrics import metrics
from settlement.timeutils import utcnow

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[Any]]


def write_outbox_event(
    db: AsyncSession,
    aggregate_id: uuid.UUID,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """
    Stage an outbox event in the caller's transaction.

    Nothing is flushed or committed here; the event becomes visible only
    if the transition that produced it commits.
    """
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
    )
    db.add(event)
    return event


class OutboxPublisher:
    """
    Delivers events from the outbox table to collaborators.

    1. Read unpublished events in creation order
    2. Hand each to the publisher function
    3. Mark delivered events as published; failed ones stay for the next poll
    """

    def __init__(
        self,
        publisher_func: Optional[PublisherFunc] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine delivering one event (e.g. CollaboratorDispatcher)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
            session_factory: Session factory (defaults to the application one)
        """
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.session_factory = session_factory
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published == False)  # noqa: E712
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def to_event_data(event: OutboxEvent) -> Dict[str, Any]:
        """Wire shape of an outbox event."""
        return {
            "id": event.id,
            "aggregate_id": str(event.aggregate_id),
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat(),
        }

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            await self.publisher_func(self.to_event_data(event))
        except Exception as e:
            metrics.record_outbox_event_failed(event.event_type)
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                aggregate_id=str(event.aggregate_id),
                attempts=event.attempts + 1,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return True

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self._sessions()() as db:
            events = await self._fetch_unpublished_events(db)
            if not events:
                return 0

            logger.info("outbox_batch_processing_started", batch_size=len(events))

            published_ids: List[int] = []
            failed_ids: List[int] = []
            for event in events:
                if await self._publish_event(event):
                    published_ids.append(event.id)
                else:
                    failed_ids.append(event.id)

            if published_ids:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(published_ids))
                    .values(
                        published=True,
                        published_at=utcnow(),
                        attempts=OutboxEvent.attempts + 1,
                    )
                )
            if failed_ids:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(failed_ids))
                    .values(attempts=OutboxEvent.attempts + 1)
                )
            await db.commit()

            logger.info(
                "outbox_batch_processed",
                total=len(events),
                published=len(published_ids),
                failed=len(failed_ids),
            )
            return len(published_ids)

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events and publishes them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
                    continue

                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
                else:
                    # More may be waiting; poll again straight away.
                    await asyncio.sleep(0.1)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Number of unpublished events."""
        async with self._sessions()() as db:
            stmt = select(func.count()).select_from(OutboxEvent).where(
                OutboxEvent.published == False  # noqa: E712
            )
            return int((await db.execute(stmt)).scalar_one())
