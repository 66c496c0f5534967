"""
Best-effort Redis cache client.

Every read path consults the cache and every write path invalidates it, so
the client must never let a cache failure reach business logic: reads
degrade to ``None`` and writes to a silent no-op.

Connection lifecycle:
- the Redis client is built lazily on the first operation;
- concurrent operations share one pending connect attempt;
- failed attempts back off ``min(attempt * 50ms, 1000ms)`` and stop after
  ``max_reconnect_attempts``, after which the client stays ``FAILED`` for the
  rest of the process and every operation returns immediately.
"""
from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from cms.utils.settings import Settings, get_settings

logger = logging.getLogger("cms.cache")

DEFAULT_TTL_SECONDS = 3600
RECONNECT_STEP_MS = 50
RECONNECT_CAP_MS = 1000


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


class CacheErrorKind(str, Enum):
    CONNECTIVITY = "connectivity"
    SERIALIZATION = "serialization"
    COMMAND = "command"


def classify_cache_error(exc: BaseException) -> CacheErrorKind:
    if isinstance(exc, (RedisConnectionError, RedisTimeoutError, OSError, asyncio.TimeoutError)):
        return CacheErrorKind.CONNECTIVITY
    if isinstance(exc, (ValueError, TypeError)):
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
        return CacheErrorKind.SERIALIZATION
    return CacheErrorKind.COMMAND


def reconnect_delay(attempt: int) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
    return min(max(attempt, 0) * RECONNECT_STEP_MS, RECONNECT_CAP_MS) / 1000.0


def build_redis_client(settings: Settings) -> redis.Redis:
    conn = settings.redis_connection()
    return redis.Redis(
        host=conn.host,
        port=conn.port,
        db=conn.db,
        password=conn.password,
        ssl=conn.tls,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        health_check_interval=30,
    )


class CacheClient:
    """Lazily connected key/value cache with neutral degradation."""

    def __init__(
        self,
        client_factory: Optional[Callable[[], Any]] = None,
        *,
        enabled: bool = True,
        max_reconnect_attempts: int = 10,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client_factory = client_factory
        self.enabled = enabled and client_factory is not None
        self.max_reconnect_attempts = max_reconnect_attempts
        self._sleep = sleep
        self._client = None
        self._state = ConnectionState.DISCONNECTED
        self._connecting: Optional[asyncio.Future] = None
        self.reconnect_attempts = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheClient":
        return cls(
            lambda: build_redis_client(settings),
            enabled=settings.cache_enabled,
            max_reconnect_attempts=settings.cache_reconnect_max_attempts,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    def snapshot(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "state": self._state.value,
            "reconnect_attempts": self.reconnect_attempts,
        }

    async def get(self, key: str) -> Any:
        client = await self._ensure_connected()
        if client is None:
            return None
        try:
            raw = await client.get(key)
        except Exception as exc:
            self._degrade("get", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (ValueError, TypeError) as exc:
            self._degrade("get", key, exc)
            return None

    async def set(self, key: str, value: Any, ttl: int = DEFAULT_TTL_SECONDS) -> None:
        client = await self._ensure_connected()
        if client is None:
            return
        try:
            payload = json.dumps(value, default=str)
        except (ValueError, TypeError) as exc:
            self._degrade("set", key, exc)
            return
        try:
            await client.set(key, payload, ex=max(1, int(ttl)))
        except Exception as exc:
            self._degrade("set", key, exc)

    async def delete(self, key: str) -> None:
        client = await self._ensure_connected()
        if client is None:
            return
        try:
            await client.delete(key)
        except Exception as exc:
            self._degrade("delete", key, exc)

    async def delete_pattern(self, pattern: str) -> None:
        """Delete every key matching a glob (``posts:*``) in one batch."""
        client = await self._ensure_connected()
        if client is None:
            return
        try:
            keys = [k async for k in client.scan_iter(match=pattern, count=500)]
            if keys:
                await client.delete(*keys)
                logger.debug("cache: invalidated %d key(s) for %s", len(keys), pattern)
        except Exception as exc:
            self._degrade("delete_pattern", pattern, exc)

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except (RedisError, OSError) as exc:
            logger.debug("cache: error while closing client: %s", exc)
        if self._state is not ConnectionState.FAILED:
            self._state = ConnectionState.DISCONNECTED

    def _degrade(self, operation: str, key: str, exc: BaseException) -> None:
        kind = classify_cache_error(exc)
        if kind is CacheErrorKind.CONNECTIVITY and self._state is ConnectionState.READY:
            # the next operation reconnects with a fresh attempt budget
            self._state = ConnectionState.DISCONNECTED
        logger.warning("cache: %s %s degraded (%s): %s", operation, key, kind.value, exc)

    async def _ensure_connected(self):
        if not self.enabled or self._state is ConnectionState.FAILED:
            return None
        if self._state is ConnectionState.READY:
            return self._client
        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._connect())
        await asyncio.shield(self._connecting)
        if self._state is ConnectionState.READY:
            return self._client
        return None

    async def _connect(self) -> None:
        self._state = ConnectionState.CONNECTING
        try:
            if self._client is None:
                self._client = self._client_factory()
            while self.reconnect_attempts < self.max_reconnect_attempts:
                try:
                    await self._client.ping()
                except Exception as exc:
                    self.reconnect_attempts += 1
                    logger.warning(
                        "cache: connect attempt %d/%d failed (%s): %s",
                        self.reconnect_attempts,
                        self.max_reconnect_attempts,
                        classify_cache_error(exc).value,
                        exc,
                    )
                    if self.reconnect_attempts >= self.max_reconnect_attempts:
                        break
                    await self._sleep(reconnect_delay(self.reconnect_attempts))
                    continue
                self.reconnect_attempts = 0
                self._state = ConnectionState.READY
                logger.info("cache: connected")
                return
            self._state = ConnectionState.FAILED
            logger.error("cache: too many reconnection attempts; caching disabled for this process")
        except Exception as exc:
            # a client that cannot even be built will not start working on retry
            self._state = ConnectionState.FAILED
            logger.error("cache: unable to create client, caching disabled: %s", exc)
        finally:
            self._connecting = None


_cache_client: Optional[CacheClient] = None


def get_cache_client() -> CacheClient:
    global _cache_client
    if _cache_client is None:
        _cache_client = CacheClient.from_settings(get_settings())
    return _cache_client


def reset_cache_client_for_tests(client: Optional[CacheClient] = None) -> None:
    global _cache_client
    _cache_client = client
