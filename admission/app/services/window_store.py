"""Window stores holding per-identifier rate limit counters.

Two interchangeable backends implement the same increment contract:

- LocalWindowStore: fixed window counters in process memory.
- RedisWindowStore: sliding window shared by every instance through Redis.

The algorithms differ on purpose. A fixed window permits up to twice the
quota in a burst that straddles a window boundary; the Redis sliding window
does not. Deployments without Redis are therefore slightly more permissive.
"""

import asyncio
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import redis
import redis.asyncio as aioredis

from admission.app.core.config import Settings, settings
from admission.app.core.logging import get_log_context, get_logger
from admission.app.exceptions import BackendUnavailableError
from admission.app.models import RateLimitConfig, WindowEntry, WindowSnapshot
from admission.app.services.redis_lua import SLIDING_WINDOW_SCRIPT

logger = get_logger(__name__)

Clock = Callable[[], float]


class WindowStore(ABC):
    """Abstract base class for window stores."""

    backend_name: str = "abstract"

    @abstractmethod
    async def increment(self, identifier: str, config: RateLimitConfig) -> WindowSnapshot:
        """Count one request against the identifier's current window.

        Must be atomic per identifier: N concurrent calls observe the
        post-increment counts 1..N exactly once each.

        Args:
            identifier: Rate limit key (opaque)
            config: Tier configuration supplying the window length

        Returns:
            Snapshot of the window after this request was counted
        """

    @abstractmethod
    async def reset(self, identifier: str) -> None:
        """Drop all state for an identifier."""

    @abstractmethod
    async def peek(self, identifier: str, config: RateLimitConfig) -> Optional[WindowSnapshot]:
        """Return the live window for an identifier without counting a request."""

    async def close(self) -> None:
        """Release backend resources."""


class LocalWindowStore(WindowStore):
    """In-memory fixed window store.

    Entries are spread over shards, each guarded by its own lock, so
    unrelated identifiers rarely contend. Critical sections never await or
    perform I/O, which keeps them safe to call from the event loop and from
    worker threads alike.
    """

    backend_name = "memory"

    def __init__(self, shards: Optional[int] = None, clock: Clock = time.time):
        """Initialize the store.

        Args:
            shards: Number of lock shards (defaults to settings)
            clock: Source of the current epoch time in seconds
        """
        shard_count = shards if shards is not None else settings.rate_limit_local_shards
        if shard_count < 1:
            raise ValueError("shards must be at least 1")
        self._clock = clock
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(shard_count)]
        self._entries: List[Dict[str, WindowEntry]] = [{} for _ in range(shard_count)]
        self._smallest_window: Optional[float] = None
        self._window_lock = threading.Lock()

    @property
    def smallest_window(self) -> Optional[float]:
        """Shortest window length counted so far, or None before any request."""
        return self._smallest_window

    def _note_window(self, window_seconds: float) -> None:
        smallest = self._smallest_window
        if smallest is not None and window_seconds >= smallest:
            return
        with self._window_lock:
            if self._smallest_window is None or window_seconds < self._smallest_window:
                self._smallest_window = window_seconds

    def _shard(self, identifier: str) -> Tuple[threading.Lock, Dict[str, WindowEntry]]:
        index = hash(identifier) % len(self._locks)
        return self._locks[index], self._entries[index]

    def increment_sync(self, identifier: str, window_seconds: float) -> WindowSnapshot:
        """Synchronous increment, usable from threads outside the event loop."""
        self._note_window(window_seconds)
        lock, entries = self._shard(identifier)
        with lock:
            now = self._clock()
            entry = entries.get(identifier)
            if entry is None or entry.is_expired(now):
                entry = WindowEntry(count=0, window_reset_at=now + window_seconds)
                entries[identifier] = entry
            entry.count += 1
            return WindowSnapshot(count=entry.count, window_reset_at=entry.window_reset_at)

    async def increment(self, identifier: str, config: RateLimitConfig) -> WindowSnapshot:
        return self.increment_sync(identifier, config.window_seconds)

    async def reset(self, identifier: str) -> None:
        self.reset_sync(identifier)

    def reset_sync(self, identifier: str) -> bool:
        """Remove an identifier's entry. Returns True if one existed."""
        lock, entries = self._shard(identifier)
        with lock:
            return entries.pop(identifier, None) is not None

    async def peek(self, identifier: str, config: RateLimitConfig) -> Optional[WindowSnapshot]:
        lock, entries = self._shard(identifier)
        with lock:
            entry = entries.get(identifier)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return WindowSnapshot(count=entry.count, window_reset_at=entry.window_reset_at)

    def sweep(self, now: Optional[float] = None) -> int:
        """Evict expired entries.

        Each shard is swept under its own lock so an eviction cannot race an
        increment that is reviving the same identifier.

        Returns:
            Number of entries removed
        """
        removed = 0
        for lock, entries in zip(self._locks, self._entries):
            with lock:
                current = self._clock() if now is None else now
                expired = [key for key, entry in entries.items() if entry.is_expired(current)]
                for key in expired:
                    del entries[key]
                removed += len(expired)
        return removed

    def clear(self) -> None:
        """Drop every entry."""
        for lock, entries in zip(self._locks, self._entries):
            with lock:
                entries.clear()

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries)


@dataclass(frozen=True)
class DistributedStoreConfig:
    """Connection settings for the Redis window store."""
    url: str
    token: str = ""
    key_prefix: str = "ratelimit"
    timeout: float = 0.5

    @classmethod
    def from_settings(cls, source: Settings = settings) -> Optional["DistributedStoreConfig"]:
        """Build from settings, or None when no Redis URL is configured."""
        if not source.distributed_enabled:
            return None
        return cls(
            url=source.redis_url,
            token=source.redis_token,
            key_prefix=source.rate_limit_key_prefix,
            timeout=source.rate_limit_backend_timeout,
        )


class RedisWindowStore(WindowStore):
    """Redis-based sliding window store.

    Every call is bounded by a timeout. When Redis fails or times out, that
    single call is answered by an embedded LocalWindowStore instead; the
    failure is logged and never reaches the caller.
    """

    backend_name = "redis"

    def __init__(
        self,
        config: DistributedStoreConfig,
        redis_client: Optional[Any] = None,
        fallback: Optional[LocalWindowStore] = None,
        clock: Clock = time.time,
    ):
        """Initialize Redis window store.

        Args:
            config: Connection settings
            redis_client: Optional redis.asyncio client instance
            fallback: Local store used when Redis is unavailable
            clock: Source of the current epoch time in seconds
        """
        self.config = config
        self._redis = redis_client
        self._clock = clock
        self.fallback = fallback if fallback is not None else LocalWindowStore(clock=clock)

    def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self.config.url,
                password=self.config.token or None,
                socket_timeout=self.config.timeout,
                socket_connect_timeout=self.config.timeout,
            )
        return self._redis

    def _key(self, identifier: str) -> str:
        return f"{self.config.key_prefix}:{identifier}"

    async def _call(self, operation: str, factory: Callable[[Any], Any]) -> Any:
        """Run one Redis operation under the configured timeout.

        Raises:
            BackendUnavailableError: On timeout, connection or Redis errors
        """
        try:
            client = self._get_redis()
            return await asyncio.wait_for(factory(client), timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            raise BackendUnavailableError(f"{operation} timed out", e) from e
        except redis.RedisError as e:
            raise BackendUnavailableError(f"{operation} failed: {e}", e) from e
        except OSError as e:
            raise BackendUnavailableError(f"{operation} connection error: {e}", e) from e

    def _log_fallback(self, identifier: str, reason: str) -> None:
        logger.warning(
            f"Redis rate limit backend unavailable ({reason}); using local fallback",
            extra=get_log_context(identifier=identifier, backend=self.backend_name),
        )

    async def increment(self, identifier: str, config: RateLimitConfig) -> WindowSnapshot:
        now_ms = int(self._clock() * 1000)
        window_ms = config.window_ms
        member = f"{now_ms}:{uuid.uuid4().hex}"
        try:
            result = await self._call(
                "increment",
                lambda client: client.eval(
                    SLIDING_WINDOW_SCRIPT,
                    1,  # Number of keys
                    self._key(identifier),  # KEYS[1]
                    now_ms,  # ARGV[1]
                    window_ms,  # ARGV[2]
                    config.max_requests,  # ARGV[3]
                    member,  # ARGV[4]
                ),
            )
            return WindowSnapshot(count=int(result[0]), window_reset_at=int(result[1]) / 1000)
        except BackendUnavailableError as e:
            self._log_fallback(identifier, e.reason)
        except Exception as e:
            logger.exception(
                f"Unexpected rate limit backend error: {e}",
                extra=get_log_context(identifier=identifier, backend=self.backend_name),
            )
        return await self.fallback.increment(identifier, config)

    async def reset(self, identifier: str) -> None:
        try:
            await self._call("reset", lambda client: client.delete(self._key(identifier)))
        except BackendUnavailableError as e:
            self._log_fallback(identifier, e.reason)
        except Exception as e:
            logger.exception(f"Unexpected error resetting rate limit state: {e}")
        await self.fallback.reset(identifier)

    async def peek(self, identifier: str, config: RateLimitConfig) -> Optional[WindowSnapshot]:
        now_ms = int(self._clock() * 1000)
        window_ms = config.window_ms
        window_start = f"({now_ms - window_ms}"
        key = self._key(identifier)
        try:
            oldest = await self._call(
                "peek",
                lambda client: client.zrangebyscore(
                    key, window_start, "+inf", start=0, num=1, withscores=True
                ),
            )
            if not oldest:
                return None
            count = await self._call(
                "peek", lambda client: client.zcount(key, window_start, "+inf")
            )
            return WindowSnapshot(
                count=int(count),
                window_reset_at=(int(oldest[0][1]) + window_ms) / 1000,
            )
        except BackendUnavailableError as e:
            self._log_fallback(identifier, e.reason)
        except Exception as e:
            logger.exception(f"Unexpected error reading rate limit state: {e}")
        return await self.fallback.peek(identifier, config)

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None


def build_window_store(
    backend: Union[LocalWindowStore, DistributedStoreConfig, None] = None,
    redis_client: Optional[Any] = None,
    clock: Clock = time.time,
) -> WindowStore:
    """Resolve the configured backend into a store, once, at startup.

    Args:
        backend: An existing local store, Redis connection settings, or None
            for a fresh local store
        redis_client: Optional client for the Redis store (tests)
        clock: Source of the current epoch time in seconds

    Returns:
        The window store to hand to the limiter
    """
    if isinstance(backend, LocalWindowStore):
        return backend
    if isinstance(backend, DistributedStoreConfig):
        logger.info("Using Redis rate limit backend", extra=get_log_context(backend="redis"))
        return RedisWindowStore(backend, redis_client=redis_client, clock=clock)
    logger.info("Using in-memory rate limit backend", extra=get_log_context(backend="memory"))
    return LocalWindowStore(clock=clock)
