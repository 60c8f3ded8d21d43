"""Rate limiting data models.

This module contains the dataclasses shared by the stores, the limiter and
the admission layer: tier configuration, per-identifier window state, and the
decision objects handed back to callers.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from starlette.responses import JSONResponse

from admission.app.exceptions import InvalidRateLimitConfigError

IdentifierFn = Callable[[Any], Union[str, Awaitable[str]]]

HEADER_LIMIT = "X-RateLimit-Limit"
HEADER_REMAINING = "X-RateLimit-Remaining"
HEADER_RESET = "X-RateLimit-Reset"
HEADER_RETRY_AFTER = "Retry-After"

DEFAULT_DENIAL_MESSAGE = "Too many requests"

# Keeps millisecond scores exact as Lua doubles (2**53 ms is ~285,000 years).
MAX_WINDOW_SECONDS = (2 ** 53 - 1) // 1000


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota policy for one tier.

    Attributes:
        max_requests: Requests allowed per window (0 denies everything)
        window_seconds: Window length in seconds
        denial_message: Message returned to callers that exceed the quota
        identifier_fn: Optional callable deriving the rate limit key from a
            request; may return a string or an awaitable of one
        name: Tier name, used for logging
    """
    max_requests: int
    window_seconds: float
    denial_message: str = DEFAULT_DENIAL_MESSAGE
    identifier_fn: Optional[IdentifierFn] = field(default=None, compare=False)
    name: Optional[str] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise InvalidRateLimitConfigError if the values are unusable."""
        if isinstance(self.max_requests, bool) or not isinstance(self.max_requests, int):
            raise InvalidRateLimitConfigError("max_requests must be an integer")
        if self.max_requests < 0:
            raise InvalidRateLimitConfigError("max_requests must be >= 0")
        if isinstance(self.window_seconds, bool) or not isinstance(self.window_seconds, (int, float)):
            raise InvalidRateLimitConfigError("window_seconds must be a number")
        if not math.isfinite(self.window_seconds) or self.window_seconds <= 0:
            raise InvalidRateLimitConfigError("window_seconds must be a positive finite number")
        if self.window_seconds > MAX_WINDOW_SECONDS:
            raise InvalidRateLimitConfigError(
                f"window_seconds must not exceed {MAX_WINDOW_SECONDS}"
            )

    @property
    def window_ms(self) -> int:
        """Window length in whole milliseconds, at least one."""
        return max(1, math.ceil(self.window_seconds * 1000))

    @property
    def is_usable(self) -> bool:
        """False for a config whose values were altered after validation."""
        try:
            self.validate()
        except InvalidRateLimitConfigError:
            return False
        return True


@dataclass
class WindowEntry:
    """Mutable per-identifier counter owned by the local store."""
    count: int = 0
    window_reset_at: float = field(default_factory=time.time)

    def is_expired(self, now: float) -> bool:
        return self.window_reset_at <= now


@dataclass(frozen=True)
class WindowSnapshot:
    """Post-increment view of a window returned by a store."""
    count: int
    window_reset_at: float


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    ``reset_at`` is the rounded-up epoch second sent in headers;
    ``window_reset_at`` keeps the exact expiry for Retry-After.
    """
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    window_reset_at: Optional[float] = field(default=None, compare=False)

    def headers(self) -> Dict[str, str]:
        """Quota headers for both allowed and denied responses."""
        return {
            HEADER_LIMIT: str(self.limit),
            HEADER_REMAINING: str(self.remaining),
            HEADER_RESET: str(self.reset_at),
        }

    def retry_after(self, now: Optional[float] = None) -> int:
        """Seconds until the window resets, never less than one.

        Rounded once, from the exact expiry, so it never exceeds the window.
        """
        if now is None:
            now = time.time()
        reset = self.window_reset_at if self.window_reset_at is not None else self.reset_at
        return max(1, math.ceil(reset - now))


@dataclass(frozen=True)
class Rejection:
    """Structured rejection returned instead of invoking the handler."""
    status_code: int
    message: str
    headers: Dict[str, str]
    body: Dict[str, Any]

    def to_response(self) -> JSONResponse:
        """Render the rejection as a JSON response."""
        return JSONResponse(
            status_code=self.status_code,
            content=self.body,
            headers=self.headers,
        )


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of an admission check.

    ``result`` is None when the check could not run and the call site
    failed open.
    """
    allowed: bool
    result: Optional[RateLimitResult] = None
    rejection: Optional[Rejection] = None

    def headers(self) -> Dict[str, str]:
        if self.rejection is not None:
            return dict(self.rejection.headers)
        if self.result is not None:
            return self.result.headers()
        return {}
