"""Custom exceptions for the admission service."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from admission.app.models import Rejection


class AdmissionException(Exception):
    """Base class for admission exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Admission error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(AdmissionException):
    """Raised for rate limit misconfiguration.

    These are programming errors and are expected to surface at startup,
    never as a per-request failure.
    """
    status_code = 500


class UnknownTierError(ConfigurationError, KeyError):
    """Raised when a tier name is not present in the registry."""

    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"Unknown rate limit tier: {tier!r}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message.
        return self.message


class InvalidRateLimitConfigError(ConfigurationError, ValueError):
    """Raised when a RateLimitConfig is built with out-of-range values."""


class BackendUnavailableError(AdmissionException):
    """Raised when the distributed store cannot answer in time.

    Always handled inside the store, which falls back to local counting.
    """
    status_code = 503

    def __init__(self, reason: str, cause: Exception | None = None):
        self.reason = reason
        self.cause = cause
        super().__init__(f"Distributed rate limit backend unavailable: {reason}")


class RateLimitExceededError(AdmissionException):
    """Raised when a caller has exhausted the quota of its tier.

    Carries the structured rejection so handlers can render it unchanged.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, rejection: "Rejection"):
        self.rejection = rejection
        super().__init__(rejection.message)


class AdmissionUnavailableError(AdmissionException):
    """Raised when a fail-closed call site cannot evaluate its rate limit.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, rejection: "Rejection"):
        self.rejection = rejection
        super().__init__(rejection.message)
