"""Rate limit key resolution for incoming requests.

Precedence:
    1. The config's identifier_fn, when one is supplied (sync or async)
    2. First entry of X-Forwarded-For, trimmed
    3. X-Real-IP
    4. The direct connection address
    5. "unknown"

Known limitation: X-Forwarded-For is taken at face value. Behind a proxy that
overwrites or strips inbound forwarding headers this is the original client;
exposed directly, a client can choose its own key by sending the header.
"""

import hashlib
import inspect
from typing import Any, Optional

from admission.app.core.logging import get_logger
from admission.app.models import RateLimitConfig

logger = get_logger(__name__)

UNKNOWN_IDENTIFIER = "unknown"
FORWARDED_FOR_HEADER = "X-Forwarded-For"
REAL_IP_HEADER = "X-Real-IP"
MAX_API_KEY_LENGTH = 512


def _header(request: Any, name: str) -> Optional[str]:
    try:
        value = request.headers.get(name)
    except Exception as e:
        logger.debug(f"Could not read {name} header: {e}")
        return None
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def client_address(request: Any) -> str:
    """Resolve the client address from proxy headers or the connection."""
    forwarded = _header(request, FORWARDED_FOR_HEADER)
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = _header(request, REAL_IP_HEADER)
    if real_ip:
        return real_ip

    try:
        client = getattr(request, "client", None)
        host = getattr(client, "host", None) if client is not None else None
    except Exception as e:
        logger.debug(f"Could not read connection address: {e}")
        host = None
    if host:
        return str(host)

    return UNKNOWN_IDENTIFIER


async def resolve_identifier(request: Any, config: RateLimitConfig) -> str:
    """Derive the rate limit key for a request.

    Args:
        request: Starlette request, or any object exposing ``headers`` and
            ``client.host``
        config: Tier configuration, possibly carrying an identifier_fn

    Returns:
        The identifier string; never empty when derived from the request

    Raises:
        Exception: Whatever a caller-supplied identifier_fn raises
    """
    if config.identifier_fn is not None:
        identifier = config.identifier_fn(request)
        if inspect.isawaitable(identifier):
            identifier = await identifier
        return str(identifier)
    return client_address(request)


def api_key_identifier(request: Any) -> str:
    """Identifier function keying on the caller's API key.

    The Bearer token is hashed so raw keys are never stored as counters.
    Requests without a token, or with one longer than MAX_API_KEY_LENGTH,
    are keyed on the client address instead.
    """
    auth = _header(request, "Authorization") or ""
    if auth.startswith("Bearer "):
        api_key = auth[7:].strip()
        if len(api_key) > MAX_API_KEY_LENGTH:
            logger.warning(
                f"API key too long (max {MAX_API_KEY_LENGTH} characters); keying on client address"
            )
        elif api_key:
            # 32 hex chars (128 bits) for collision resistance
            key_hash = hashlib.sha256(api_key.encode()).hexdigest()[:32]
            return f"apikey:{key_hash}"
    return f"ip:{client_address(request)}"
