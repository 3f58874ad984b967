"""
Redis caching utilities for the Order Capture service.

The cache is advisory: it remembers which order a checkout idempotency key
resolved to, so a client retry finds the same order without scanning the
ledger. Every helper treats cache errors as misses.
"""
import json
import logging
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

CHECKOUT_KEY_PREFIX = "checkout"


def get_cache(client: Optional[redis.Redis], key: str) -> Optional[Any]:
    """
    Get a value from the cache.

    Args:
        client: Redis client (None when the cache is disabled)
        key: Cache key

    Returns:
        Cached value or None if not found or the cache is unavailable
    """
    if client is None:
        return None
    try:
        value = client.get(key)
        if value:
            return json.loads(value)
        return None
    except (redis.RedisError, ValueError) as e:
        logger.warning(f"Cache get error for {key}: {e}")
        return None


def set_cache(client: Optional[redis.Redis], key: str, value: Any, ttl: int = 300) -> bool:
    """
    Set a value in the cache with a TTL.

    Args:
        client: Redis client (None when the cache is disabled)
        key: Cache key
        value: Value to cache (will be JSON serialized)
        ttl: Time to live in seconds

    Returns:
        True if successful, False otherwise
    """
    if client is None:
        return False
    try:
        client.setex(key, ttl, json.dumps(value))
        return True
    except redis.RedisError as e:
        logger.warning(f"Cache set error for {key}: {e}")
        return False


def checkout_key(idempotency_key: str) -> str:
    return f"{CHECKOUT_KEY_PREFIX}:{idempotency_key}"


def lookup_checkout(client: Optional[redis.Redis], idempotency_key: str) -> Optional[str]:
    """Return the order id a checkout idempotency key resolved to, if cached."""
    return get_cache(client, checkout_key(idempotency_key))


def remember_checkout(
    client: Optional[redis.Redis], idempotency_key: str, order_id: str, ttl: int
) -> bool:
    return set_cache(client, checkout_key(idempotency_key), order_id, ttl)
