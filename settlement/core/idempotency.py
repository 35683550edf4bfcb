"""
Idempotency keys for order and subscription creation.

A key is claimed in the database before the gateway is called, so a
double-click or retried request cannot open a second remote resource:

1. Redis cache for fast replay of completed responses (optional)
2. ``idempotency_records`` table as the source of truth
"""
import hashlib
import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import Settings, get_settings
from settlement.database.models import IdempotencyRecord
from settlement.exceptions import IdempotencyConflictError
from settlement.monitoring.metrics import metrics
from settlement.timeutils import utcnow

logger = structlog.get_logger(__name__)


class IdempotencyManager:
    """
    Claims idempotency keys and replays completed responses.

    A key is bound to a scope (``order``, ``subscription``) and to a
    fingerprint of the request it was first used with.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self._owns_redis = False

    def _redis(self) -> Optional[aioredis.Redis]:
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_redis = True
        return self.redis_client

    @staticmethod
    def fingerprint(request: Dict[str, Any]) -> str:
        """Stable hash of the request body a key was first used with."""
        canonical = json.dumps(request, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @staticmethod
    def _cache_key(key: str) -> str:
        return f"idempotency:{key}"

    async def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        redis = self._redis()
        if redis is None:
            return None
        try:
            cached = await redis.get(self._cache_key(key))
        except RedisError as e:
            logger.warning("redis_cache_error", error=str(e), idempotency_key=key)
            return None
        return json.loads(cached) if cached else None

    async def _cache_set(self, key: str, entry: Dict[str, Any]) -> None:
        redis = self._redis()
        if redis is None:
            return
        try:
            await redis.setex(
                self._cache_key(key),
                self.settings.idempotency_cache_ttl,
                json.dumps(entry, default=str),
            )
        except RedisError as e:
            logger.warning("redis_cache_set_error", error=str(e), idempotency_key=key)

    async def claim(
        self,
        db: AsyncSession,
        key: str,
        scope: str,
        request: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """
        Claim ``key`` for a new request, or replay its completed response.

        Args:
            db: Database session
            key: Client-supplied idempotency key
            scope: Operation the key belongs to
            request: Request body, fingerprinted to detect key reuse

        Returns:
            The cached response if the key already completed, else None
            (the caller now owns the key and must ``complete`` or ``release`` it)

        Raises:
            IdempotencyConflictError: If the key is in flight or was used
                for a different request
        """
        fingerprint = self.fingerprint(request)

        cached = await self._cache_get(key)
        if cached and cached.get("scope") == scope and cached.get("fingerprint") == fingerprint:
            metrics.record_idempotency_hit("redis")
            logger.info("idempotency_cache_hit", idempotency_key=key, source="redis")
            return cached["response"]

        record = await db.get(IdempotencyRecord, key)
        if record is None:
            db.add(
                IdempotencyRecord(
                    key=key, scope=scope, fingerprint=fingerprint, status="in_progress"
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                # Another request claimed the key between our read and insert.
                await db.rollback()
                record = await db.get(IdempotencyRecord, key, populate_existing=True)
                if record is None:
                    raise IdempotencyConflictError(
                        f"Idempotency key {key} is being processed"
                    )
            else:
                logger.info("idempotency_key_claimed", idempotency_key=key, scope=scope)
                return None

        if record.scope != scope or record.fingerprint != fingerprint:
            logger.warning(
                "idempotency_key_reused",
                idempotency_key=key,
                scope=scope,
                original_scope=record.scope,
            )
            raise IdempotencyConflictError(
                f"Idempotency key {key} was already used for a different request"
            )

        if record.status == "completed":
            metrics.record_idempotency_hit("database")
            logger.info("idempotency_cache_hit", idempotency_key=key, source="database")
            await self._cache_set(
                key,
                {"scope": scope, "fingerprint": fingerprint, "response": record.response},
            )
            return record.response

        raise IdempotencyConflictError(f"Idempotency key {key} is being processed")

    async def complete(
        self, db: AsyncSession, key: str, response: Dict[str, Any]
    ) -> None:
        """Record the response returned for a claimed key."""
        record = await db.get(IdempotencyRecord, key, populate_existing=True)
        if record is None:
            logger.warning("idempotency_key_missing_on_complete", idempotency_key=key)
            return
        record.status = "completed"
        record.response = response
        record.completed_at = utcnow()
        await db.commit()

        await self._cache_set(
            key,
            {"scope": record.scope, "fingerprint": record.fingerprint, "response": response},
        )
        logger.info("idempotency_key_completed", idempotency_key=key)

    async def release(self, db: AsyncSession, key: str) -> None:
        """
        Drop an in-flight claim so the same key may be retried.

        Used when the gateway call failed and nothing was written.
        """
        await db.rollback()
        stmt = delete(IdempotencyRecord).where(
            IdempotencyRecord.key == key,
            IdempotencyRecord.status == "in_progress",
        )
        await db.execute(stmt)
        await db.commit()
        logger.info("idempotency_key_released", idempotency_key=key)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
            self.redis_client = None
