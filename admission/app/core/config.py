import json
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from admission.app.services.tiers import TIER_CONFIGS


def _parse_cors_origins(raw: Any) -> list[str]:
    """Accept a JSON list or a comma separated string of origins."""
    if isinstance(raw, str):
        raw = raw.strip()
        raw = json.loads(raw) if raw.startswith("[") else raw.split(",")
    return [str(origin).strip() for origin in raw or [] if str(origin).strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Leaving ``REDIS_URL`` empty runs the service with the in-process store only.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Distributed backend (optional)
    redis_url: str = ""
    redis_token: str = ""  # Sent as the Redis password when set
    rate_limit_key_prefix: str = "ratelimit"
    rate_limit_backend_timeout: float = 0.5  # Seconds per Redis call

    # Admission policy
    rate_limit_fail_closed: bool = False  # Default when resolution/lookup fails
    rate_limit_default_tier: str = "anonymous"
    rate_limit_sweep_max_interval: int = 60
    rate_limit_local_shards: int = 64

    # Admin API; empty disables the admin routes
    admin_token: str = ""

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @property
    def distributed_enabled(self) -> bool:
        """Whether credentials for the distributed store are present."""
        return bool(self.redis_url.strip())

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("admin_token", "redis_url", "redis_token")
    @classmethod
    def strip_secret(cls, v: str) -> str:
        # Secret stores often leave a trailing newline.
        return v.strip()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is one of the supported formatters."""
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    @field_validator("rate_limit_backend_timeout")
    @classmethod
    def validate_backend_timeout(cls, v: float) -> float:
        """Validate backend timeout is positive."""
        if v <= 0:
            raise ValueError("rate_limit_backend_timeout must be positive")
        return v

    @field_validator("rate_limit_sweep_max_interval")
    @classmethod
    def validate_sweep_interval(cls, v: int) -> int:
        """Validate sweep interval is reasonable."""
        if v < 1:
            raise ValueError("rate_limit_sweep_max_interval must be at least 1 second")
        if v > 3600:
            raise ValueError("rate_limit_sweep_max_interval should not exceed 1 hour")
        return v

    @field_validator("rate_limit_local_shards")
    @classmethod
    def validate_shards(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rate_limit_local_shards must be at least 1")
        return v

    @field_validator("rate_limit_default_tier")
    @classmethod
    def validate_default_tier(cls, v: str) -> str:
        """Validate the default tier names a registered tier."""
        v = v.strip().lower()
        if v not in TIER_CONFIGS:
            raise ValueError(
                f"rate_limit_default_tier must be one of: {', '.join(sorted(TIER_CONFIGS))}"
            )
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
