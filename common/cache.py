# common/cache.py
import json
import logging
import os
from datetime import date
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None

ROOM_CALENDAR_PREFIX = "rooms:calendar:"
ROOM_OCCUPANCY_PREFIX = "rooms:occupancy:"


def get_redis_client() -> Optional[redis.Redis]:
    """
    Return a Redis client if REDIS_URL is configured, otherwise None.
    Caching is disabled (not an error) if Redis is not reachable or the
    URL cannot be parsed.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None

    try:
        client = redis.from_url(redis_url, decode_responses=True)
        client.ping()
    except Exception as exc:
        logger.warning("Redis unavailable at %s, caching disabled: %s", redis_url, exc)
        return None

    _redis_client = client
    return _redis_client


def room_calendar_key(room_id: int, on_date: Optional[date] = None) -> str:
    suffix = on_date.isoformat() if on_date is not None else "all"
    return f"{ROOM_CALENDAR_PREFIX}{room_id}:{suffix}"


def room_occupancy_key(room_id: int) -> str:
    return f"{ROOM_OCCUPANCY_PREFIX}{room_id}"


def get_cached_json(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None

    try:
        raw = client.get(key)
    except redis.RedisError as exc:
        logger.warning("Cache read of %s failed: %s", key, exc)
        return None
    if raw is None:
        return None
    return json.loads(raw)


def set_cached_json(key: str, value: Any, ttl_seconds: int = 60) -> None:
    client = get_redis_client()
    if client is None:
        return

    try:
        client.setex(key, ttl_seconds, json.dumps(value, default=str))
    except redis.RedisError as exc:
        logger.warning("Cache write of %s failed: %s", key, exc)


def delete_key(key: str) -> None:
    client = get_redis_client()
    if client is None:
        return

    try:
        client.delete(key)
    except redis.RedisError as exc:
        logger.warning("Cache delete of %s failed: %s", key, exc)


def delete_prefix(prefix: str) -> None:
    """
    Delete all keys starting with prefix.
    Example: prefix='rooms:calendar:7:' drops every cached day of room 7.
    """
    client = get_redis_client()
    if client is None:
        return

    try:
        for k in client.scan_iter(prefix + "*"):
            client.delete(k)
    except redis.RedisError as exc:
        logger.warning("Cache invalidation of %s* failed: %s", prefix, exc)


def invalidate_room_calendar(room_id: int) -> None:
    # trailing ':' keeps room 1 from matching rooms 10-19
    delete_prefix(f"{ROOM_CALENDAR_PREFIX}{room_id}:")


def invalidate_room_occupancy(room_id: int) -> None:
    delete_key(room_occupancy_key(room_id))
