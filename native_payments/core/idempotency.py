"""
Idempotency keys for one-time payment intents.

A key maps to exactly one payment. Lookups go to Redis first
(``idempotency:{key}``, a JSON payment snapshot with a TTL) and fall back to
the unique ``payments.idempotency_key`` column, which is the durable record;
Redis being unavailable only costs the fast path.

Replaying a key with a different amount, currency or provider is rejected
rather than answered with the first payment.
"""
import json
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.config import get_settings
from native_payments.core.exceptions import ConflictError
from native_payments.core.ledger import payment_snapshot
from native_payments.database.models import Payment
from native_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Request fields a replay must repeat unchanged
FINGERPRINT_FIELDS = ("provider_id", "amount_cents", "currency")


class IdempotencyManager:
    """Redis-backed cache in front of the payments table."""

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        self.settings = get_settings()
        self.redis_client = redis_client
        self._redis_initialized = redis_client is not None

    async def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None or not self._redis_initialized:
            self.redis_client = await aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    @staticmethod
    def cache_key(idempotency_key: str) -> str:
        return f"idempotency:{idempotency_key}"

    @staticmethod
    def new_key(prefix: str = "intent") -> str:
        """Key for a request that did not bring its own; it cannot be replayed."""
        return f"{prefix}:{uuid.uuid4()}"

    @staticmethod
    def ensure_same_request(
        idempotency_key: str, stored: Dict[str, Any], request: Optional[Dict[str, Any]]
    ) -> None:
        """
        Compare a replayed request with the payment its key already produced.

        Fields missing on either side are not compared.

        Raises:
            ConflictError: ``idempotency_key_reused`` when a field differs
        """
        if not request:
            return
        for field in FINGERPRINT_FIELDS:
            if field in stored and request.get(field) is not None:
                if stored[field] != request[field]:
                    logger.warning(
                        "idempotency_key_reused",
                        idempotency_key=idempotency_key,
                        field=field,
                    )
                    raise ConflictError(
                        "Idempotency key was already used with different request parameters",
                        error_code="idempotency_key_reused",
                        field=field,
                    )

    async def check_idempotency(
        self,
        idempotency_key: str,
        db: AsyncSession,
        request: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Return the payment already created for a key, if any.

        Args:
            idempotency_key: Client or generated key
            db: Database session
            request: Fingerprint of the incoming request (``provider_id``,
                ``amount_cents``, ``currency``)

        Returns:
            Optional[Dict[str, Any]]: Payment snapshot, or None for a new key

        Raises:
            ConflictError: If the key was used for a different request
        """
        cached: Optional[Dict[str, Any]] = None
        try:
            redis = await self._ensure_redis()
            raw = await redis.get(self.cache_key(idempotency_key))
            if raw:
                cached = json.loads(raw)
        except Exception as e:
            # Redis is only the fast path
            logger.warning("idempotency_redis_error", error=str(e), idempotency_key=idempotency_key)

        if cached is not None:
            metrics.record_idempotency_cache_hit("redis")
            self.ensure_same_request(idempotency_key, cached, request)
            logger.info("idempotency_hit", idempotency_key=idempotency_key, source="redis")
            return cached

        stmt = select(Payment).where(Payment.idempotency_key == idempotency_key)
        payment = (await db.execute(stmt)).scalar_one_or_none()
        if payment is None:
            metrics.record_idempotency_cache_hit("miss")
            return None

        metrics.record_idempotency_cache_hit("database")
        snapshot = payment_snapshot(payment)
        self.ensure_same_request(idempotency_key, snapshot, request)
        logger.info("idempotency_hit", idempotency_key=idempotency_key, source="database")
        await self.store_response(idempotency_key, snapshot)
        return snapshot

    async def store_response(self, idempotency_key: str, response: Dict[str, Any]) -> None:
        """Cache a payment snapshot under its key for ``idempotency_cache_ttl`` seconds."""
        try:
            redis = await self._ensure_redis()
            await redis.setex(
                self.cache_key(idempotency_key),
                self.settings.idempotency_cache_ttl,
                json.dumps(response, default=str),
            )
        except Exception as e:
            logger.warning(
                "idempotency_cache_store_error", error=str(e), idempotency_key=idempotency_key
            )

    async def invalidate(self, idempotency_key: str) -> None:
        """Drop the cached snapshot, e.g. after a refund changed the payment."""
        try:
            redis = await self._ensure_redis()
            await redis.delete(self.cache_key(idempotency_key))
        except Exception as e:
            logger.warning(
                "idempotency_cache_invalidate_error", error=str(e), idempotency_key=idempotency_key
            )

    async def close(self) -> None:
        if self.redis_client and self._redis_initialized:
            await self.redis_client.close()
