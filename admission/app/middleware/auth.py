"""Admin token authentication for the management endpoints."""

import hmac

from fastapi import HTTPException, Request

from admission.app.core.config import settings


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate admin token for protected endpoints.

    Args:
        request: The incoming request

    Returns:
        Admin identifier if valid

    Raises:
        HTTPException: 503 if no admin token is configured,
            401 if the token is missing or invalid
    """
    expected_token = settings.admin_token
    if not expected_token:
        raise HTTPException(status_code=503, detail="Admin API is disabled")

    # Always compare, in constant time, to avoid timing differences.
    token = get_bearer_token(request) or ""
    if not hmac.compare_digest(token.encode(), expected_token.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
