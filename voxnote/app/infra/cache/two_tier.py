# voxnote/app/infra/cache/two_tier.py
"""
Two-tier cache: a bounded in-process TTL cache in front of Redis.

Each data type gets a named strategy with its own key prefix and TTLs.
Large values are zlib-compressed before they reach Redis.

Billing figures (remaining quota) must never be read through this cache;
the pipeline reads those straight from the ledger.
"""
from __future__ import annotations

import json
import logging
import threading
import zlib
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from cachetools import TTLCache
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

COMPRESSION_THRESHOLD_BYTES = 1024
SCAN_BATCH_SIZE = 100

_PLAIN_MARKER = b"j:"
_ZLIB_MARKER = b"z:"
_GLOB_SPECIALS = "*?[]\\"
_MISSING = object()


@dataclass(frozen=True)
class CacheStrategy:
    name: str
    key_prefix: str
    local_ttl: int   # seconds
    remote_ttl: int  # seconds
    local_maxsize: int = 1024


STRATEGY_API_RESPONSE = "api_response"
STRATEGY_SESSION = "session"
STRATEGY_PAIRING = "pairing"
STRATEGY_PROFILE = "profile"

DEFAULT_STRATEGIES: dict[str, CacheStrategy] = {
    STRATEGY_API_RESPONSE: CacheStrategy(STRATEGY_API_RESPONSE, "api:", local_ttl=30, remote_ttl=300),
    STRATEGY_SESSION: CacheStrategy(STRATEGY_SESSION, "session:", local_ttl=60, remote_ttl=3600),
    STRATEGY_PAIRING: CacheStrategy(STRATEGY_PAIRING, "pairing:", local_ttl=30, remote_ttl=300),
    STRATEGY_PROFILE: CacheStrategy(STRATEGY_PROFILE, "profile:", local_ttl=300, remote_ttl=1800),
}


def encode_value(value: Any, threshold: int = COMPRESSION_THRESHOLD_BYTES) -> bytes:
    body = json.dumps(value, ensure_ascii=False, default=str).encode("utf-8")
    if len(body) > threshold:
        return _ZLIB_MARKER + zlib.compress(body)
    return _PLAIN_MARKER + body


def decode_value(raw: bytes | str) -> Any:
    if isinstance(raw, str):
        raw = raw.encode("utf-8")

    marker, body = raw[:2], raw[2:]
    if marker == _ZLIB_MARKER:
        body = zlib.decompress(body)
    elif marker != _PLAIN_MARKER:
        # written by something else; treat the whole payload as JSON
        body = raw
    return json.loads(body.decode("utf-8"))


def _escape_glob(value: str) -> str:
    return "".join(f"\\{char}" if char in _GLOB_SPECIALS else char for char in value)


def create_redis_client(url: str) -> Optional[Redis]:
    if not url:
        logger.info("REDIS_URL not set, cache runs local-only")
        return None
    return Redis.from_url(url, decode_responses=False)


class TwoTierCache:
    def __init__(
        self,
        redis: Optional[Redis] = None,
        strategies: Optional[dict[str, CacheStrategy]] = None,
        compression_threshold: int = COMPRESSION_THRESHOLD_BYTES,
    ):
        self._redis = redis
        self._strategies = dict(strategies or DEFAULT_STRATEGIES)
        self._compression_threshold = compression_threshold
        self._lock = threading.RLock()
        self._local: dict[str, TTLCache] = {
            name: TTLCache(maxsize=strategy.local_maxsize, ttl=strategy.local_ttl)
            for name, strategy in self._strategies.items()
        }

    @property
    def has_remote(self) -> bool:
        return self._redis is not None

    def strategy(self, name: str) -> CacheStrategy:
        try:
            return self._strategies[name]
        except KeyError:
            raise ValueError(f"Unknown cache strategy: {name}") from None

    def _full_key(self, strategy: CacheStrategy, key: str) -> str:
        return f"{strategy.key_prefix}{key}"

    async def get(self, strategy_name: str, key: str) -> Any:
        strategy = self.strategy(strategy_name)
        full_key = self._full_key(strategy, key)

        with self._lock:
            value = self._local[strategy.name].get(full_key, _MISSING)
        if value is not _MISSING:
            return value

        if self._redis is None:
            return None

        try:
            raw = await self._redis.get(full_key)
        except RedisError as error:
            logger.warning("cache.remote_get_failed key=%s error=%s", full_key, error)
            return None

        if raw is None:
            return None

        try:
            value = decode_value(raw)
        except (ValueError, zlib.error) as error:
            logger.warning("cache.decode_failed key=%s error=%s", full_key, error)
            return None

        with self._lock:
            self._local[strategy.name][full_key] = value
        return value

    async def set(self, strategy_name: str, key: str, value: Any) -> bool:
        strategy = self.strategy(strategy_name)
        full_key = self._full_key(strategy, key)

        with self._lock:
            self._local[strategy.name][full_key] = value

        if self._redis is None:
            return True

        payload = encode_value(value, self._compression_threshold)
        try:
            await self._redis.set(full_key, payload, ex=strategy.remote_ttl)
            return True
        except RedisError as error:
            logger.warning("cache.remote_set_failed key=%s error=%s", full_key, error)
            return False

    async def get_or_load(
        self,
        strategy_name: str,
        key: str,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        value = await self.get(strategy_name, key)
        if value is not None:
            return value

        value = await loader()
        if value is not None:
            await self.set(strategy_name, key, value)
        return value

    async def delete(self, strategy_name: str, key: str) -> bool:
        strategy = self.strategy(strategy_name)
        full_key = self._full_key(strategy, key)

        with self._lock:
            self._local[strategy.name].pop(full_key, None)

        if self._redis is None:
            return True

        try:
            await self._redis.delete(full_key)
            return True
        except RedisError as error:
            logger.warning("cache.remote_delete_failed key=%s error=%s", full_key, error)
            return False

    async def invalidate_prefix(self, strategy_name: str, prefix: str = "") -> int:
        """Drop every key of a strategy starting with ``prefix`` from both tiers."""
        strategy = self.strategy(strategy_name)
        full_prefix = self._full_key(strategy, prefix)

        with self._lock:
            local = self._local[strategy.name]
            local_keys = [key for key in list(local.keys()) if key.startswith(full_prefix)]
            for key in local_keys:
                local.pop(key, None)

        removed = len(local_keys)
        if self._redis is None:
            return removed

        pattern = f"{_escape_glob(full_prefix)}*"
        try:
            batch: list[Any] = []
            async for remote_key in self._redis.scan_iter(match=pattern, count=SCAN_BATCH_SIZE):
                batch.append(remote_key)
                if len(batch) >= SCAN_BATCH_SIZE:
                    removed += await self._redis.delete(*batch)
                    batch = []
            if batch:
                removed += await self._redis.delete(*batch)
        except RedisError as error:
            logger.warning("cache.remote_invalidate_failed prefix=%s error=%s", full_prefix, error)

        return removed

    def clear_local(self) -> None:
        with self._lock:
            for local in self._local.values():
                local.clear()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
