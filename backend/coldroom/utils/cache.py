"""Redis caching utilities.

Two uses:
  - `cached` decorator for expensive read-only queries (cold-room stats)
  - the balance-ledger mirror: a read-through copy of ledger entries keyed
    by size-group `unique_key`.  The database stays the only write path;
    the mirror is filled on read misses and invalidated after every commit.

Every Redis failure falls back to the uncached path.
"""

import functools
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Optional

import redis.asyncio as redis

from coldroom.config import settings

logger = logging.getLogger(__name__)

BALANCE_PREFIX = "balance"

# Global Redis connection pool
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get or create Redis client connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
            socket_connect_timeout=1,
            socket_timeout=1,
        )
    return _redis_client


async def close_redis():
    """Close Redis connection (call on app shutdown)."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def cache_key(*args, **kwargs) -> str:
    """Generate a cache key from function arguments.

    Creates a deterministic hash from function name and arguments.
    """
    if not args and not kwargs:
        return "default"

    key_data = json.dumps({"args": args, "kwargs": kwargs}, sort_keys=True)
    key_hash = hashlib.md5(key_data.encode()).hexdigest()
    return key_hash


def _serialize(result: Any) -> Any:
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json")
    if isinstance(result, list) and len(result) > 0 and hasattr(result[0], "model_dump"):
        return [item.model_dump(mode="json") for item in result]
    return result


def cached(
    ttl: int = 300,
    prefix: str = "cache",
    key_builder: Optional[Callable] = None,
):
    """Decorator to cache function results in Redis.

    Args:
        ttl: Time-to-live in seconds (default: 300 = 5 minutes)
        prefix: Cache key prefix for namespacing
        key_builder: Custom function to build cache key from args/kwargs

    Example:
        @cached(ttl=60, prefix="stats")
        async def get_stats(db: AsyncSession, cold_room_id: str | None = None):
            ...

    Cache keys: {prefix}:{function_name}:{args_hash}
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if not settings.cache_enabled:
                return await func(*args, **kwargs)

            if key_builder:
                key = key_builder(*args, **kwargs)
            else:
                # Only simple kwargs take part in the key; sessions and
                # other injected objects are skipped
                cache_kwargs = {}
                for k, v in kwargs.items():
                    if k.startswith("_"):
                        continue
                    if isinstance(v, (int, str, bool, float, type(None))):
                        cache_kwargs[k] = v
                    elif isinstance(v, (date, datetime)):
                        cache_kwargs[k] = v.isoformat()
                key = f"{prefix}:{func.__name__}:{cache_key(**cache_kwargs)}"

            try:
                redis_client = await get_redis()
                cached_value = await redis_client.get(key)
            except redis.RedisError as e:
                logger.warning(f"Redis error (falling back to uncached): {e}")
                return await func(*args, **kwargs)

            if cached_value:
                logger.debug(f"Cache HIT: {key}")
                return json.loads(cached_value)

            logger.debug(f"Cache MISS: {key}")
            result = await func(*args, **kwargs)

            try:
                await redis_client.setex(key, ttl, json.dumps(_serialize(result)))
            except redis.RedisError as e:
                logger.warning(f"Redis error while storing {key}: {e}")

            return result

        return wrapper

    return decorator


async def invalidate_cache(pattern: str):
    """Invalidate cache keys matching a pattern.

    Example:
        await invalidate_cache("stats:*")
    """
    if not settings.cache_enabled:
        return
    try:
        redis_client = await get_redis()
        keys = []
        async for key in redis_client.scan_iter(match=pattern):
            keys.append(key)

        if keys:
            await redis_client.delete(*keys)
            logger.info(f"Invalidated {len(keys)} cache keys matching {pattern}")
    except redis.RedisError as e:
        logger.warning(f"Failed to invalidate cache: {e}")


# ── Balance-ledger mirror ───────────────────────────────────────
#
# Every invalidation bumps a generation counter (per key, or the mirror-wide
# epoch for a full clear).  Readers snapshot the counters before going to the
# database and fill only if they are still unchanged, so a fill that raced a
# commit can never put the pre-commit row back.

BALANCE_GENERATION_PREFIX = "balance_gen"
BALANCE_EPOCH_KEY = "balance_epoch"

# KEYS: epoch, generation, entry   ARGV: epoch, generation, ttl, payload
FILL_IF_CURRENT = """
if (redis.call('GET', KEYS[1]) or '0') ~= ARGV[1] then return 0 end
if (redis.call('GET', KEYS[2]) or '0') ~= ARGV[2] then return 0 end
redis.call('SETEX', KEYS[3], ARGV[3], ARGV[4])
return 1
"""


@dataclass
class MirrorRead:
    """Mirror hits plus the generations seen before the database read.

    `epoch is None` means the snapshot could not be taken and the caller
    must not fill.
    """
    hits: dict[str, dict] = field(default_factory=dict)
    epoch: Optional[str] = None
    generations: dict[str, str] = field(default_factory=dict)


def _balance_key(unique_key: str) -> str:
    return f"{BALANCE_PREFIX}:{unique_key}"


def _generation_key(unique_key: str) -> str:
    return f"{BALANCE_GENERATION_PREFIX}:{unique_key}"


async def mirror_get_many(unique_keys: list[str]) -> MirrorRead:
    """Read mirrored ledger payloads and snapshot their generations."""
    if not settings.cache_enabled or not unique_keys:
        return MirrorRead()
    try:
        redis_client = await get_redis()
        values = await redis_client.mget(
            [BALANCE_EPOCH_KEY]
            + [_generation_key(k) for k in unique_keys]
            + [_balance_key(k) for k in unique_keys]
        )
    except redis.RedisError as e:
        logger.warning(f"Balance mirror read failed (using database): {e}")
        return MirrorRead()

    count = len(unique_keys)
    generations = values[1:count + 1]
    payloads = values[count + 1:]
    return MirrorRead(
        hits={key: json.loads(value) for key, value in zip(unique_keys, payloads) if value},
        epoch=values[0] or "0",
        generations={key: gen or "0" for key, gen in zip(unique_keys, generations)},
    )


async def mirror_fill(payloads: dict[str, dict], read: MirrorRead) -> None:
    """Populate the mirror after a database read miss.

    Keys invalidated since `read` was taken are left empty.
    """
    if not settings.cache_enabled or not payloads or read.epoch is None:
        return
    try:
        redis_client = await get_redis()
        async with redis_client.pipeline(transaction=False) as pipe:
            for key, payload in payloads.items():
                pipe.eval(
                    FILL_IF_CURRENT, 3,
                    BALANCE_EPOCH_KEY, _generation_key(key), _balance_key(key),
                    read.epoch, read.generations.get(key, "0"),
                    settings.balance_cache_ttl, json.dumps(payload),
                )
            filled = await pipe.execute()
    except redis.RedisError as e:
        logger.warning(f"Balance mirror fill failed: {e}")
        return

    stale = len(filled) - sum(int(f) for f in filled)
    if stale:
        logger.debug(f"Skipped {stale} balance mirror fill(s) invalidated mid-read")


async def mirror_invalidate(unique_keys: list[str] | None = None) -> None:
    """Drop mirrored entries; `None` drops the whole mirror."""
    if not settings.cache_enabled:
        return
    if unique_keys is not None and not unique_keys:
        return
    try:
        redis_client = await get_redis()
        async with redis_client.pipeline(transaction=True) as pipe:
            if unique_keys is None:
                pipe.incr(BALANCE_EPOCH_KEY)
            else:
                for key in unique_keys:
                    pipe.incr(_generation_key(key))
                    pipe.expire(_generation_key(key), settings.balance_cache_ttl * 2)
                pipe.delete(*[_balance_key(k) for k in unique_keys])
            await pipe.execute()
    except redis.RedisError as e:
        logger.warning(f"Balance mirror invalidation failed: {e}")
        return

    if unique_keys is None:
        await invalidate_cache(f"{BALANCE_PREFIX}:*")
