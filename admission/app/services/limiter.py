"""Rate limit decisions on top of a window store."""

import math
import time
from typing import Optional

from admission.app.core.logging import get_log_context, get_logger
from admission.app.models import RateLimitConfig, RateLimitResult, WindowSnapshot
from admission.app.services.window_store import (
    Clock,
    LocalWindowStore,
    RedisWindowStore,
    WindowStore,
)

logger = get_logger(__name__)


class RateLimiter:
    """Turns window counts into allow/deny decisions.

    The limiter holds no counters itself; the store passed in is the only
    shared state, so tests can build isolated limiters freely.
    """

    def __init__(self, store: WindowStore, clock: Clock = time.time):
        self.store = store
        self._clock = clock

    @property
    def is_distributed(self) -> bool:
        """Whether decisions are backed by the shared Redis store."""
        return isinstance(self.store, RedisWindowStore)

    @property
    def local_store(self) -> Optional[LocalWindowStore]:
        """The in-process store the sweeper should maintain, if any."""
        if isinstance(self.store, LocalWindowStore):
            return self.store
        if isinstance(self.store, RedisWindowStore):
            return self.store.fallback
        return None

    @staticmethod
    def _result(snapshot: WindowSnapshot, config: RateLimitConfig) -> RateLimitResult:
        return RateLimitResult(
            allowed=snapshot.count <= config.max_requests,
            limit=config.max_requests,
            remaining=max(0, config.max_requests - snapshot.count),
            reset_at=math.ceil(snapshot.window_reset_at),
            window_reset_at=snapshot.window_reset_at,
        )

    def _unusable_config(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        logger.error(
            f"Invalid rate limit config {config!r}; denying request",
            extra=get_log_context(identifier=identifier, tier=config.name),
        )
        return RateLimitResult(
            allowed=False,
            limit=max(0, config.max_requests) if isinstance(config.max_requests, int) else 0,
            remaining=0,
            reset_at=math.ceil(self._clock()),
        )

    async def check(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        """Count a request and decide whether it is admitted.

        Args:
            identifier: Rate limit key
            config: Tier configuration

        Returns:
            RateLimitResult for this request
        """
        if not config.is_usable:
            return self._unusable_config(identifier, config)

        snapshot = await self.store.increment(identifier, config)
        result = self._result(snapshot, config)
        if not result.allowed:
            logger.debug(
                f"Rate limit exceeded ({snapshot.count}/{config.max_requests})",
                extra=get_log_context(
                    identifier=identifier, tier=config.name, backend=self.store.backend_name
                ),
            )
        return result

    async def status(self, identifier: str, config: RateLimitConfig) -> Optional[RateLimitResult]:
        """Current quota state without counting a request.

        ``allowed`` reports whether the next request would be admitted.
        Returns None when the identifier has no live window.
        """
        snapshot = await self.store.peek(identifier, config)
        if snapshot is None:
            return None
        return RateLimitResult(
            allowed=snapshot.count < config.max_requests,
            limit=config.max_requests,
            remaining=max(0, config.max_requests - snapshot.count),
            reset_at=math.ceil(snapshot.window_reset_at),
            window_reset_at=snapshot.window_reset_at,
        )

    async def reset(self, identifier: str) -> None:
        """Administrative reset; the next check behaves like a first request."""
        await self.store.reset(identifier)
        logger.info(
            "Rate limit state reset",
            extra=get_log_context(identifier=identifier, backend=self.store.backend_name),
        )

    async def close(self) -> None:
        await self.store.close()
