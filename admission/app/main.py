from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from admission.app.api.admin import router as admin_router
from admission.app.core.config import settings
from admission.app.core.logging import get_logger, setup_logging
from admission.app.exceptions import (
    AdmissionUnavailableError,
    ConfigurationError,
    RateLimitExceededError,
)
from admission.app.middleware.rate_limit import (
    AdmissionController,
    RateLimitMiddleware,
    TierResolver,
)
from admission.app.services.limiter import RateLimiter
from admission.app.services.sweeper import WindowSweeper, sweeper_interval
from admission.app.services.tiers import TIER_CONFIGS
from admission.app.services.window_store import DistributedStoreConfig, build_window_store


def create_app(
    limiter: Optional[RateLimiter] = None,
    tier_resolver: Optional[TierResolver] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        limiter: Limiter to use; built from settings when omitted
        tier_resolver: Maps a request to its tier (plan lookup hook);
            the default tier applies when omitted

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    if limiter is None:
        store = build_window_store(DistributedStoreConfig.from_settings(settings))
        limiter = RateLimiter(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the sweeper for the in-memory store and close the backend on exit."""
        sweeper: Optional[WindowSweeper] = None
        local_store = limiter.local_store
        if local_store is not None:
            sweeper = WindowSweeper(local_store, sweeper_interval(TIER_CONFIGS.values()))
            await sweeper.start()
        app.state.sweeper = sweeper

        logger.info(
            "Application startup complete",
            extra={
                "backend": limiter.store.backend_name,
                "default_tier": settings.rate_limit_default_tier,
                "fail_closed": settings.rate_limit_fail_closed,
            },
        )

        yield

        if sweeper is not None:
            await sweeper.stop()
        await limiter.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Admission Control Service",
        description="Tiered rate limiting with in-memory and Redis backends",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.limiter = limiter
    app.state.admission = AdmissionController(limiter)

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        tier_resolver=tier_resolver,
    )

    # CORS middleware (outermost - handles preflight requests first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
        max_age=600,
    )

    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with rate limit backend status."""
        local_store = limiter.local_store
        return {
            "status": "ok",
            "components": {
                "rate_limit": {
                    "status": "ok",
                    "type": limiter.store.backend_name,
                    "local_entries": len(local_store) if local_store is not None else 0,
                }
            },
        }

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Render a per-route rate limit denial as HTTP 429."""
        return exc.rejection.to_response()

    @app.exception_handler(AdmissionUnavailableError)
    async def admission_unavailable_handler(request: Request, exc: AdmissionUnavailableError) -> JSONResponse:
        """Render a fail-closed admission failure as HTTP 503."""
        return exc.rejection.to_response()

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error(f"Rate limit configuration error: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "configuration_error", "message": "Internal server error"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message and type.
        """
        logger.exception(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
        )
        content: dict[str, Any] = {"error": "internal_error", "message": "Internal server error"}
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


app = create_app()
