"""Admission middleware enforcing tier quotas on requests.

Three entry points share one AdmissionController:

- ``AdmissionController.admit`` for framework-agnostic callers.
- ``RateLimitMiddleware`` applying a tier to every request of an app.
- ``RateLimitDependency`` applying a tier to a single route.

Failure policy: when the tier or the identifier cannot be determined, a call
site either fails open (the request proceeds unlimited, with a warning logged)
or fails closed (503). Fail open is the default, matching the window store's
policy for an unavailable Redis backend. Each call site may override it.
"""

import inspect
import time
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from admission.app.core.config import settings
from admission.app.core.logging import get_log_context, get_logger
from admission.app.exceptions import AdmissionUnavailableError, RateLimitExceededError
from admission.app.middleware.identifier import resolve_identifier
from admission.app.models import (
    HEADER_RETRY_AFTER,
    AdmissionDecision,
    RateLimitConfig,
    RateLimitResult,
    Rejection,
)
from admission.app.services.limiter import RateLimiter
from admission.app.services.tiers import Tier, get_tier_config
from admission.app.services.window_store import Clock

logger = get_logger(__name__)

TierSpec = Union[str, Tier, RateLimitConfig]
TierResolver = Callable[[Request], Union[TierSpec, Awaitable[TierSpec]]]

UNAVAILABLE_MESSAGE = "Rate limiting is temporarily unavailable. Please retry shortly."


def _tier_label(tier_or_config: TierSpec) -> Optional[str]:
    if isinstance(tier_or_config, RateLimitConfig):
        return tier_or_config.name
    if isinstance(tier_or_config, Tier):
        return tier_or_config.value
    return str(tier_or_config)


def lookup_config(tier_or_config: TierSpec) -> RateLimitConfig:
    """Resolve a tier name or pass a config through.

    Raises:
        UnknownTierError: If a tier name is not registered
    """
    if isinstance(tier_or_config, RateLimitConfig):
        return tier_or_config
    return get_tier_config(tier_or_config)


class AdmissionController:
    """Runs the admission state machine for one request.

    lookup config -> resolve identifier -> check -> allow | deny
    """

    def __init__(
        self,
        limiter: RateLimiter,
        fail_closed: Optional[bool] = None,
        clock: Clock = time.time,
    ):
        """Initialize the controller.

        Args:
            limiter: Limiter used for every check
            fail_closed: Default failure policy (None reads settings)
            clock: Source of the current epoch time, for Retry-After
        """
        self.limiter = limiter
        self.fail_closed = settings.rate_limit_fail_closed if fail_closed is None else fail_closed
        self._clock = clock

    def build_rejection(self, result: RateLimitResult, config: RateLimitConfig) -> Rejection:
        """Structured 429 for a denied result."""
        headers = result.headers()
        headers[HEADER_RETRY_AFTER] = str(result.retry_after(self._clock()))
        return Rejection(
            status_code=429,
            message=config.denial_message,
            headers=headers,
            body={
                "error": config.denial_message,
                "limit": result.limit,
                "remaining": result.remaining,
                "reset": result.reset_at,
            },
        )

    def failure_decision(
        self,
        error: Exception,
        fail_closed: Optional[bool] = None,
        tier: Optional[str] = None,
    ) -> AdmissionDecision:
        """Decision for a request whose rate limit could not be evaluated."""
        closed = self.fail_closed if fail_closed is None else fail_closed
        context = get_log_context(tier=tier, error_type=type(error).__name__)
        if closed:
            logger.warning(
                f"Rate limit evaluation failed, failing closed: {error}",
                extra=context,
                exc_info=error,
            )
            return AdmissionDecision(
                allowed=False,
                rejection=Rejection(
                    status_code=503,
                    message=UNAVAILABLE_MESSAGE,
                    headers={HEADER_RETRY_AFTER: "1"},
                    body={"error": UNAVAILABLE_MESSAGE},
                ),
            )
        logger.warning(
            f"Rate limit evaluation failed, failing open without a limit: {error}",
            extra=context,
            exc_info=error,
        )
        return AdmissionDecision(allowed=True)

    async def admit(
        self,
        request: Any,
        tier_or_config: TierSpec,
        *,
        fail_closed: Optional[bool] = None,
        scope: Optional[str] = None,
    ) -> AdmissionDecision:
        """Decide whether a request may proceed.

        Args:
            request: Request exposing headers and client address
            tier_or_config: Tier name or explicit configuration
            fail_closed: Per-call-site failure policy override
            scope: Optional namespace so separate call sites keep separate
                counters for the same client

        Returns:
            AdmissionDecision; on denial it carries the rejection to send
        """
        tier_name = _tier_label(tier_or_config)
        try:
            config = lookup_config(tier_or_config)
            identifier = await resolve_identifier(request, config)
            if scope:
                identifier = f"{scope}:{identifier}"
            result = await self.limiter.check(identifier, config)
        except Exception as e:
            return self.failure_decision(e, fail_closed, tier=tier_name)

        if result.allowed:
            return AdmissionDecision(allowed=True, result=result)

        return AdmissionDecision(
            allowed=False,
            result=result,
            rejection=self.build_rejection(result, config),
        )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce tier quotas on every request.

    The tier comes from ``tier_resolver(request)`` when given (this is where
    a plan lookup plugs in), otherwise from ``tier``, otherwise from the
    configured default tier.
    """

    def __init__(
        self,
        app,
        limiter: RateLimiter,
        tier: Optional[TierSpec] = None,
        tier_resolver: Optional[TierResolver] = None,
        exempt_paths: Iterable[str] = ("/health",),
        fail_closed: Optional[bool] = None,
    ):
        super().__init__(app)
        self.controller = AdmissionController(limiter, fail_closed=fail_closed)
        self.tier = tier if tier is not None else settings.rate_limit_default_tier
        # Validate eagerly so an unknown tier fails at startup.
        lookup_config(self.tier)
        self.tier_resolver = tier_resolver
        self.exempt_paths = frozenset(exempt_paths)

    async def _resolve_tier(self, request: Request) -> TierSpec:
        if self.tier_resolver is None:
            return self.tier
        tier = self.tier_resolver(request)
        if inspect.isawaitable(tier):
            tier = await tier
        return tier

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        try:
            tier = await self._resolve_tier(request)
        except Exception as e:
            decision = self.controller.failure_decision(e)
        else:
            decision = await self.controller.admit(request, tier)

        if not decision.allowed:
            return decision.rejection.to_response()

        request.state.rate_limit = decision.result
        response = await call_next(request)

        # Headers set by a route-level limit take precedence
        for name, value in decision.headers().items():
            response.headers.setdefault(name, value)

        return response


class RateLimitDependency:
    """Per-route rate limit as a FastAPI dependency.

    Example:
        >>> @app.post("/login", dependencies=[Depends(RateLimitDependency("restricted", fail_closed=True, scope="login"))])
        ... async def login(): ...

    Counters are always scoped so a route limit never shares a key with the
    app-wide middleware. Without an explicit ``scope`` the tier name is used,
    or the request path for an unnamed config.

    Success headers are set on the injected Response, so they are not
    applied when the endpoint returns a Response object itself.
    """

    def __init__(
        self,
        tier: TierSpec,
        fail_closed: Optional[bool] = None,
        scope: Optional[str] = None,
        controller: Optional[AdmissionController] = None,
    ):
        # Unknown tiers fail when the route is declared, not per request.
        self.config = lookup_config(tier)
        self.fail_closed = fail_closed
        self.scope = scope or self.config.name
        self.controller = controller

    def _controller(self, request: Request) -> AdmissionController:
        if self.controller is not None:
            return self.controller
        return request.app.state.admission

    async def __call__(self, request: Request, response: Response) -> Optional[RateLimitResult]:
        decision = await self._controller(request).admit(
            request,
            self.config,
            fail_closed=self.fail_closed,
            scope=self.scope or request.url.path,
        )
        if not decision.allowed:
            if decision.rejection.status_code == 429:
                raise RateLimitExceededError(decision.rejection)
            raise AdmissionUnavailableError(decision.rejection)

        for name, value in decision.headers().items():
            response.headers[name] = value
        return decision.result
