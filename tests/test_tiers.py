"""Tests for the tier registry and config validation."""

import math

import pytest

from admission.app.exceptions import (
    ConfigurationError,
    InvalidRateLimitConfigError,
    UnknownTierError,
)
from admission.app.models import (
    DEFAULT_DENIAL_MESSAGE,
    MAX_WINDOW_SECONDS,
    RateLimitConfig,
    RateLimitResult,
)
from admission.app.services.tiers import TIER_CONFIGS, Tier, get_tier_config, smallest_window


class TestTierRegistry:
    """Tests for the fixed tier table."""

    def test_every_tier_is_registered(self):
        assert set(TIER_CONFIGS) == {tier.value for tier in Tier}

    @pytest.mark.parametrize(
        "tier,max_requests",
        [
            ("anonymous", 30),
            ("standard", 60),
            ("elevated", 120),
            ("professional", 300),
            ("restricted", 5),
        ],
    )
    def test_tier_quotas(self, tier, max_requests):
        config = get_tier_config(tier)
        assert config.max_requests == max_requests
        assert config.window_seconds == 60
        assert config.name == tier
        assert config.denial_message

    def test_lookup_by_enum(self):
        assert get_tier_config(Tier.RESTRICTED) is TIER_CONFIGS["restricted"]

    def test_unknown_tier(self):
        with pytest.raises(UnknownTierError) as exc_info:
            get_tier_config("platinum")
        assert exc_info.value.tier == "platinum"
        assert str(exc_info.value) == "Unknown rate limit tier: 'platinum'"
        assert isinstance(exc_info.value, KeyError)
        assert isinstance(exc_info.value, ConfigurationError)

    def test_unhashable_tier(self):
        with pytest.raises(UnknownTierError):
            get_tier_config(["standard"])

    def test_registry_is_read_only(self):
        with pytest.raises(TypeError):
            TIER_CONFIGS["custom"] = RateLimitConfig(1, 1)

    def test_configs_are_frozen(self):
        with pytest.raises(AttributeError):
            TIER_CONFIGS["standard"].max_requests = 1_000_000

    def test_smallest_window(self):
        configs = [RateLimitConfig(1, 30), RateLimitConfig(1, 5.5), RateLimitConfig(1, 60)]
        assert smallest_window(configs) == 5.5
        assert smallest_window([]) is None


class TestRateLimitConfig:
    """Tests for RateLimitConfig validation."""

    def test_defaults(self):
        config = RateLimitConfig(max_requests=10, window_seconds=60)
        assert config.denial_message == DEFAULT_DENIAL_MESSAGE
        assert config.identifier_fn is None
        assert config.is_usable is True

    @pytest.mark.parametrize(
        "max_requests,window_seconds",
        [
            (-1, 60),
            (1.5, 60),
            (True, 60),
            ("10", 60),
            (10, 0),
            (10, -5),
            (10, math.inf),
            (10, math.nan),
            (10, 1e306),
            (10, MAX_WINDOW_SECONDS + 1),
        ],
    )
    def test_rejects_invalid_values(self, max_requests, window_seconds):
        with pytest.raises(InvalidRateLimitConfigError):
            RateLimitConfig(max_requests=max_requests, window_seconds=window_seconds)

    def test_invalid_values_are_value_errors(self):
        with pytest.raises(ValueError):
            RateLimitConfig(max_requests=-1, window_seconds=60)

    def test_window_ms(self):
        assert RateLimitConfig(1, 60).window_ms == 60_000
        assert RateLimitConfig(1, 0.0001).window_ms == 1
        assert RateLimitConfig(1, MAX_WINDOW_SECONDS).window_ms == MAX_WINDOW_SECONDS * 1000

    def test_zero_quota_is_valid(self):
        assert RateLimitConfig(max_requests=0, window_seconds=60).is_usable

    def test_identifier_fn_ignored_in_equality(self):
        a = RateLimitConfig(5, 60, identifier_fn=lambda request: "a")
        b = RateLimitConfig(5, 60, identifier_fn=lambda request: "b")
        assert a == b


class TestRateLimitResult:
    """Tests for header rendering and Retry-After."""

    def test_headers(self):
        result = RateLimitResult(allowed=True, limit=10, remaining=4, reset_at=1_700_000_060)
        assert result.headers() == {
            "X-RateLimit-Limit": "10",
            "X-RateLimit-Remaining": "4",
            "X-RateLimit-Reset": "1700000060",
        }

    @pytest.mark.parametrize(
        "now,expected",
        [
            (1_700_000_000.0, 60),
            (1_700_000_059.5, 1),
            (1_700_000_060.0, 1),
            (1_700_000_100.0, 1),
        ],
    )
    def test_retry_after(self, now, expected):
        result = RateLimitResult(allowed=False, limit=1, remaining=0, reset_at=1_700_000_060)
        assert result.retry_after(now) == expected

    def test_retry_after_uses_exact_expiry(self):
        """The header reset is rounded up; Retry-After is rounded from the exact expiry."""
        result = RateLimitResult(
            allowed=False,
            limit=2,
            remaining=0,
            reset_at=1_700_000_061,
            window_reset_at=1_700_000_060.5,
        )
        assert result.retry_after(1_700_000_000.5) == 60
        assert result.retry_after(1_700_000_060.0) == 1
