"""
Outbound API rate limiter using the token bucket algorithm.

One bucket per credential (the migration id), with a quota per platform,
so two merchants migrating from Shopify at once never share a budget but
every worker talking for the same merchant does.

Backends:
- RedisBucketBackend: atomic Lua script, shared by all workers
- InMemoryBucketBackend: lock-protected dict, single process (tests, local dev)

Both backends also provide fixed-window counters used by the inbound API
limiter in core.middleware.

Usage:
    from migration_hub.utils.rate_limiter import get_platform_rate_limiter

    limiter = get_platform_rate_limiter("shopify")
    await limiter.wait_for_token(migration_id)
    # now safe to call Shopify for this credential
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import redis

from migration_hub.core.config import settings

logger = logging.getLogger("rate_limiter")

REDIS_KEY_PREFIX = "migration:rate_limiter"

# Lua script for atomic token acquisition.
# Returns strings: Redis truncates Lua numbers to integers.
ACQUIRE_TOKEN_SCRIPT = """
local tokens_key = KEYS[1]
local last_refill_key = KEYS[2]
local blocked_key = KEYS[3]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local refill_interval = tonumber(ARGV[3])
local now = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local blocked_until = tonumber(redis.call('GET', blocked_key) or 0)
if blocked_until > now then
    return {'0', tostring(blocked_until - now), '0'}
end

local tokens = tonumber(redis.call('GET', tokens_key) or capacity)
local last_refill = tonumber(redis.call('GET', last_refill_key) or now)

local elapsed = math.max(0, now - last_refill)
local tokens_per_second = refill_rate / refill_interval
tokens = math.min(capacity, tokens + elapsed * tokens_per_second)

redis.call('SET', last_refill_key, now, 'EX', ttl)

if tokens >= 1 then
    tokens = tokens - 1
    redis.call('SET', tokens_key, tokens, 'EX', ttl)
    return {'1', '0', tostring(tokens)}
else
    local wait_time = (1 - tokens) / tokens_per_second
    redis.call('SET', tokens_key, tokens, 'EX', ttl)
    return {'0', tostring(wait_time), tostring(tokens)}
end
"""

# Idle buckets expire so finished migrations don't leave keys behind
BUCKET_TTL_SECONDS = 3600


@dataclass(frozen=True)
class BucketConfig:
    capacity: int
    refill_rate: float
    refill_interval: float = 1.0

    @property
    def tokens_per_second(self) -> float:
        return self.refill_rate / self.refill_interval


class RedisBucketBackend:
    """Token buckets and window counters stored in Redis."""

    def __init__(self, redis_client: redis.Redis, key_prefix: str = REDIS_KEY_PREFIX) -> None:
        self._redis = redis_client
        self._prefix = key_prefix
        self._acquire_script = self._redis.register_script(ACQUIRE_TOKEN_SCRIPT)

    def _keys(self, key: str) -> Tuple[str, str, str]:
        base = f"{self._prefix}:{key}"
        return f"{base}:tokens", f"{base}:last_refill", f"{base}:blocked_until"

    def acquire(self, key: str, config: BucketConfig, now: float) -> Tuple[bool, float, float]:
        try:
            result = self._acquire_script(
                keys=list(self._keys(key)),
                args=[config.capacity, config.refill_rate, config.refill_interval, now, BUCKET_TTL_SECONDS],
            )
            return result[0] in (b"1", "1"), float(result[1]), float(result[2])
        except redis.RedisError as e:
            logger.error(f"Redis error in acquire key={key}: {e}")
            # Fail open so a Redis outage does not stall every migration
            return True, 0.0, 0.0

    def block_until(self, key: str, until: float) -> None:
        tokens_key, last_refill_key, blocked_key = self._keys(key)
        try:
            ttl = max(1, int(until - time.time()) + 1)
            pipe = self._redis.pipeline()
            pipe.set(blocked_key, until, ex=ttl)
            # One token is available the moment the block lifts
            pipe.set(tokens_key, 1, ex=BUCKET_TTL_SECONDS)
            pipe.set(last_refill_key, until, ex=BUCKET_TTL_SECONDS)
            pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Redis error in block_until key={key}: {e}")

    def snapshot(self, key: str, config: BucketConfig) -> Dict[str, Optional[float]]:
        tokens_key, last_refill_key, blocked_key = self._keys(key)
        try:
            tokens, last_refill, blocked = self._redis.mget(tokens_key, last_refill_key, blocked_key)
        except redis.RedisError as e:
            logger.error(f"Redis error in snapshot key={key}: {e}")
            return {"error": str(e)}
        return {
            "available_tokens": float(tokens) if tokens is not None else float(config.capacity),
            "last_refill_timestamp": float(last_refill) if last_refill else None,
            "blocked_until": float(blocked) if blocked else None,
        }

    def reset(self, key: str) -> None:
        try:
            self._redis.delete(*self._keys(key))
        except redis.RedisError as e:
            logger.error(f"Redis error in reset key={key}: {e}")

    def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Increment a fixed-window counter; returns (count, seconds_left)."""
        window_key = f"{self._prefix}:window:{key}:{int(time.time()) // window_seconds}"
        try:
            pipe = self._redis.pipeline()
            pipe.incr(window_key)
            pipe.expire(window_key, window_seconds)
            count, _ = pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Redis error in incr_window key={key}: {e}")
            return 0, window_seconds
        return int(count), window_seconds - int(time.time()) % window_seconds


class InMemoryBucketBackend:
    """Token buckets and window counters held in process memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # key -> [tokens, last_refill, blocked_until]
        self._buckets: Dict[str, list] = {}
        # key -> (window index, window seconds, count)
        self._windows: Dict[str, Tuple[int, int, int]] = {}

    def acquire(self, key: str, config: BucketConfig, now: float) -> Tuple[bool, float, float]:
        with self._lock:
            tokens, last_refill, blocked_until = self._buckets.get(key, [float(config.capacity), now, 0.0])
            if blocked_until > now:
                return False, blocked_until - now, 0.0

            elapsed = max(0.0, now - last_refill)
            tokens = min(float(config.capacity), tokens + elapsed * config.tokens_per_second)

            if tokens >= 1:
                tokens -= 1
                self._buckets[key] = [tokens, now, blocked_until]
                return True, 0.0, tokens

            self._buckets[key] = [tokens, now, blocked_until]
            return False, (1 - tokens) / config.tokens_per_second, tokens

    def block_until(self, key: str, until: float) -> None:
        with self._lock:
            # One token is available the moment the block lifts
            self._buckets[key] = [1.0, until, until]

    def snapshot(self, key: str, config: BucketConfig) -> Dict[str, Optional[float]]:
        with self._lock:
            state = self._buckets.get(key)
        if state is None:
            return {"available_tokens": float(config.capacity), "last_refill_timestamp": None, "blocked_until": None}
        tokens, last_refill, blocked_until = state
        return {
            "available_tokens": tokens,
            "last_refill_timestamp": last_refill,
            "blocked_until": blocked_until or None,
        }

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = int(time.time())
        window = now // window_seconds
        with self._lock:
            # Counters from finished windows are dropped so idle keys do not accumulate
            stale = [k for k, (w, size, _) in self._windows.items() if w < now // size]
            for k in stale:
                del self._windows[k]
            _, _, count = self._windows.get(key, (window, window_seconds, 0))
            count += 1
            self._windows[key] = (window, window_seconds, count)
        return count, window_seconds - now % window_seconds


class TokenBucketRateLimiter:
    """
    Per-credential rate limiter for one source platform.

    Callers acquire a token before every provider request. When the
    provider still answers 429, ``penalize`` empties the bucket until
    the provider's Retry-After has elapsed, so every worker using the
    same credential backs off together.
    """

    def __init__(self, backend, config: BucketConfig, name: str = "default") -> None:
        self._backend = backend
        self._config = config
        self._name = name
        logger.info(
            f"TokenBucketRateLimiter initialized: name={name}, capacity={config.capacity}, "
            f"refill_rate={config.refill_rate}/{config.refill_interval}s"
        )

    def _key(self, credential_id: str) -> str:
        return f"{self._name}:{credential_id}"

    def acquire_token(self, credential_id: str) -> Tuple[bool, float, float]:
        """
        Try to take a token for a credential.

        Returns:
            Tuple of (success, wait_time_seconds, remaining_tokens)
        """
        success, wait_time, remaining = self._backend.acquire(
            self._key(credential_id), self._config, time.time()
        )
        if success:
            logger.debug(f"Token acquired key={self._key(credential_id)} remaining={remaining:.2f}")
        else:
            logger.debug(f"No token key={self._key(credential_id)} wait={wait_time:.2f}s")
        return success, wait_time, remaining

    async def wait_for_token(self, credential_id: str, timeout: float = 120.0) -> bool:
        """
        Wait cooperatively until a token is acquired or timeout is reached.

        Returns:
            True if token was acquired, False if timeout reached
        """
        start_time = time.monotonic()

        while True:
            success, wait_time, _ = self.acquire_token(credential_id)
            if success:
                return True

            elapsed = time.monotonic() - start_time
            if elapsed + wait_time > timeout:
                logger.warning(
                    f"Token acquisition timeout key={self._key(credential_id)} after {elapsed:.2f}s, "
                    f"would need {wait_time:.2f}s more"
                )
                return False

            await asyncio.sleep(min(wait_time + 0.05, timeout - elapsed))

    def penalize(self, credential_id: str, retry_after: float) -> None:
        """Block a credential's bucket for ``retry_after`` seconds."""
        if retry_after <= 0:
            return
        self._backend.block_until(self._key(credential_id), time.time() + retry_after)
        logger.info(f"Rate limiter penalized key={self._key(credential_id)} retry_after={retry_after}s")

    def reset(self, credential_id: str) -> None:
        """Reset a credential's bucket to full capacity."""
        self._backend.reset(self._key(credential_id))

    def get_status(self, credential_id: str) -> dict:
        """Current bucket state for monitoring."""
        status = self._backend.snapshot(self._key(credential_id), self._config)
        status.update({
            "capacity": self._config.capacity,
            "refill_rate": self._config.refill_rate,
            "refill_interval": self._config.refill_interval,
            "key": self._key(credential_id),
        })
        return status


def platform_bucket_config(platform: str) -> BucketConfig:
    """Quota for a source platform from settings."""
    if platform == "shopify":
        return BucketConfig(settings.shopify_rate_limit_capacity, settings.shopify_rate_limit_refill)
    if platform == "etsy":
        return BucketConfig(settings.etsy_rate_limit_capacity, settings.etsy_rate_limit_refill)
    raise ValueError(f"No rate limit quota configured for platform {platform!r}")


# Singletons
_backend = None
_limiters: Dict[str, TokenBucketRateLimiter] = {}
_singleton_lock = threading.Lock()


def get_rate_limit_backend():
    """Backend selected by RATE_LIMITER_BACKEND ("redis" or "memory")."""
    global _backend
    with _singleton_lock:
        if _backend is None:
            if settings.rate_limiter_backend == "memory":
                _backend = InMemoryBucketBackend()
            else:
                _backend = RedisBucketBackend(redis.from_url(settings.redis_url))
        return _backend


def get_platform_rate_limiter(platform: str) -> TokenBucketRateLimiter:
    """Get or create the limiter for a source platform."""
    limiter = _limiters.get(platform)
    if limiter is None:
        limiter = TokenBucketRateLimiter(
            backend=get_rate_limit_backend(),
            config=platform_bucket_config(platform),
            name=platform,
        )
        _limiters[platform] = limiter
    return limiter


def reset_rate_limiter() -> None:
    """Reset the singleton instances (for testing)."""
    global _backend
    with _singleton_lock:
        _backend = None
    _limiters.clear()
