"""Background eviction of expired in-memory windows.

Sweeping only bounds memory. Decisions never depend on it, because the
local store already treats an expired entry as absent.
"""

import asyncio
from typing import Iterable, Optional

from admission.app.core.config import settings
from admission.app.core.logging import get_logger
from admission.app.models import RateLimitConfig
from admission.app.services.tiers import smallest_window
from admission.app.services.window_store import LocalWindowStore

logger = get_logger(__name__)

MIN_INTERVAL_SECONDS = 1.0


def sweeper_interval(
    configs: Iterable[RateLimitConfig],
    max_interval: Optional[float] = None,
) -> float:
    """Sweep interval: the smallest configured window, capped and floored.

    Args:
        configs: Configurations whose windows the store holds
        max_interval: Upper bound (defaults to settings)
    """
    cap = float(max_interval if max_interval is not None else settings.rate_limit_sweep_max_interval)
    window = smallest_window(configs)
    if window is None:
        return cap
    return max(MIN_INTERVAL_SECONDS, min(float(window), cap))


class WindowSweeper:
    """Periodically evicts expired entries from a LocalWindowStore."""

    def __init__(self, store: LocalWindowStore, interval: float):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.store = store
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def current_interval(self) -> float:
        """Configured interval, shortened to the smallest window the store has counted."""
        observed = self.store.smallest_window
        if observed is None:
            return self.interval
        return min(self.interval, max(MIN_INTERVAL_SECONDS, float(observed)))

    def run_once(self) -> int:
        """Sweep immediately. Returns the number of evicted entries."""
        removed = self.store.sweep()
        if removed:
            logger.debug(f"Evicted {removed} expired rate limit entries")
        return removed

    async def start(self) -> None:
        """Start the periodic sweep task."""
        if self._task is not None:
            return
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Started rate limit sweeper (interval={self.interval}s)")

    async def stop(self) -> None:
        """Stop the periodic sweep task."""
        if self._task is None:
            return
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Stopped rate limit sweeper")

    async def _sweep_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.current_interval)
            except asyncio.TimeoutError:
                pass
            if self._shutdown_event.is_set():
                break
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error during rate limit sweep: {e}")
