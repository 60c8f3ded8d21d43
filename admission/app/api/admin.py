"""Administrative rate limit endpoints."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from admission.app.core.logging import get_logger
from admission.app.exceptions import UnknownTierError
from admission.app.middleware.auth import require_admin
from admission.app.services.limiter import RateLimiter
from admission.app.services.tiers import get_tier_config

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/rate-limits", tags=["admin"])


def get_limiter(request: Request) -> RateLimiter:
    return request.app.state.limiter


def _scoped(identifier: str, scope: Optional[str]) -> str:
    # Mirrors the key AdmissionController.admit builds for a scoped call site.
    return f"{scope}:{identifier}" if scope else identifier


@router.get("/{identifier}")
async def get_rate_limit_status(
    identifier: str,
    tier: str = "anonymous",
    scope: Optional[str] = None,
    admin: str = Depends(require_admin),
    limiter: RateLimiter = Depends(get_limiter),
) -> dict[str, Any]:
    """Current window state of an identifier under a tier.

    ``scope`` selects the counter of a scoped call site, e.g. a route
    dependency (``scope=restricted`` or ``scope=login``).
    """
    try:
        config = get_tier_config(tier)
    except UnknownTierError as e:
        raise HTTPException(status_code=400, detail=str(e))

    result = await limiter.status(_scoped(identifier, scope), config)
    if result is None:
        return {
            "identifier": identifier,
            "scope": scope,
            "tier": tier,
            "active": False,
            "limit": config.max_requests,
            "remaining": config.max_requests,
            "reset": None,
        }
    return {
        "identifier": identifier,
        "scope": scope,
        "tier": tier,
        "active": True,
        "allowed": result.allowed,
        "limit": result.limit,
        "remaining": result.remaining,
        "reset": result.reset_at,
    }


@router.delete("/{identifier}")
async def reset_rate_limit(
    identifier: str,
    scope: Optional[str] = None,
    admin: str = Depends(require_admin),
    limiter: RateLimiter = Depends(get_limiter),
) -> dict[str, Any]:
    """Forget an identifier's window so its next request starts fresh."""
    await limiter.reset(_scoped(identifier, scope))
    return {"identifier": identifier, "scope": scope, "reset": True}
