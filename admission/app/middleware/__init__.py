"""Middleware package for the admission service."""

from admission.app.middleware.auth import require_admin
from admission.app.middleware.identifier import (
    api_key_identifier,
    client_address,
    resolve_identifier,
)
from admission.app.middleware.rate_limit import (
    AdmissionController,
    RateLimitDependency,
    RateLimitMiddleware,
    lookup_config,
)

__all__ = [
    "require_admin",
    "api_key_identifier",
    "client_address",
    "resolve_identifier",
    "AdmissionController",
    "RateLimitDependency",
    "RateLimitMiddleware",
    "lookup_config",
]
