"""Tier configuration registry.

A fixed table mapping plan tiers to their quota policy. The values are
product policy; the table is built once at import time and is read-only
afterwards, so lookups need no synchronization.
"""

from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Union

from admission.app.exceptions import UnknownTierError
from admission.app.models import RateLimitConfig


class Tier(str, Enum):
    """Named quota tiers exposed to configuration."""
    ANONYMOUS = "anonymous"
    STANDARD = "standard"
    ELEVATED = "elevated"
    PROFESSIONAL = "professional"
    RESTRICTED = "restricted"


def _tier(tier: Tier, max_requests: int, window_seconds: float, message: str) -> RateLimitConfig:
    return RateLimitConfig(
        max_requests=max_requests,
        window_seconds=window_seconds,
        denial_message=message,
        name=tier.value,
    )


TIER_CONFIGS: Mapping[str, RateLimitConfig] = MappingProxyType({
    # Unauthenticated callers
    Tier.ANONYMOUS.value: _tier(
        Tier.ANONYMOUS, 30, 60, "Rate limit exceeded. Please sign in for higher limits."
    ),
    Tier.STANDARD.value: _tier(
        Tier.STANDARD, 60, 60, "Rate limit exceeded. Upgrade your plan for higher limits."
    ),
    Tier.ELEVATED.value: _tier(
        Tier.ELEVATED, 120, 60, "Rate limit exceeded. Please try again in a moment."
    ),
    Tier.PROFESSIONAL.value: _tier(
        Tier.PROFESSIONAL, 300, 60, "Rate limit exceeded. Please try again in a moment."
    ),
    # Sensitive operations such as login or password reset
    Tier.RESTRICTED.value: _tier(
        Tier.RESTRICTED, 5, 60, "Too many attempts. Please try again later."
    ),
})


def get_tier_config(tier: Union[str, Tier]) -> RateLimitConfig:
    """Look up the configuration for a tier.

    Args:
        tier: Tier name or Tier member

    Returns:
        The immutable RateLimitConfig for the tier

    Raises:
        UnknownTierError: If the tier is not registered
    """
    key = tier.value if isinstance(tier, Tier) else tier
    try:
        return TIER_CONFIGS[key]
    except (KeyError, TypeError):
        raise UnknownTierError(str(key)) from None


def smallest_window(configs: Iterable[RateLimitConfig]) -> float | None:
    """Shortest window among configs, or None when there are none."""
    windows = [config.window_seconds for config in configs]
    return min(windows) if windows else None
