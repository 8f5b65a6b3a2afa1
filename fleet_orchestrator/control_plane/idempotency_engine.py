"""
Idempotency Engine

Prevents duplicate job and plan creation by tracking idempotency keys.
Uses Redis for fast lookups with configurable TTL.
"""
import logging
from typing import Optional
import redis.asyncio as redis

logger = logging.getLogger(__name__)


class IdempotencyEngine:
    """
    Maps idempotency keys to the id of the resource they created.

    If the same job or plan request is submitted twice (e.g. a UI retrying a
    timed out POST), the second call returns the first resource.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 86400, namespace: str = "job"):
        """
        Args:
            redis_client: Redis async client
            ttl_seconds: Time-to-live for idempotency keys (default: 24 hours)
            namespace: Resource kind the keys belong to ('job' or 'plan')
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = f"idempotency:{namespace}:"

    async def check(self, idempotency_key: str) -> Optional[str]:
        """Return the resource id stored for a key, or None."""
        if not idempotency_key:
            return None

        try:
            existing = await self.redis.get(f"{self.key_prefix}{idempotency_key}")
        except Exception as e:
            logger.error(f"Error checking idempotency key {idempotency_key}: {e}")
            # Fail open: the database lookup is the second line of defence
            return None

        if existing:
            if isinstance(existing, bytes):
                existing = existing.decode('utf-8')
            logger.info(f"Idempotency key found: {idempotency_key} -> {existing}")
            return existing
        return None

    async def store(self, idempotency_key: str, resource_id: str) -> bool:
        """Store an idempotency key -> resource id mapping."""
        if not idempotency_key or not resource_id:
            return False

        try:
            await self.redis.setex(
                f"{self.key_prefix}{idempotency_key}",
                self.ttl_seconds,
                resource_id
            )
        except Exception as e:
            logger.error(f"Error storing idempotency key {idempotency_key}: {e}")
            return False

        logger.debug(
            f"Stored idempotency key: {idempotency_key} -> {resource_id} "
            f"(TTL: {self.ttl_seconds}s)"
        )
        return True
