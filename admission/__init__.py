"""Admission control service: rate limiting for API requests."""
