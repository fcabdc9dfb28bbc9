"""Rate limiting layer - Fixed-window action quotas per identity."""

from fingerprint_risk.limiter.rate_limiter import (
    DEFAULT_POLICIES,
    DEFAULT_WINDOW_MINUTES,
    DatabaseBackend,
    RateLimitBackend,
    RateLimiter,
    RateLimitPolicy,
    RedisBackend,
)

__all__ = [
    "DEFAULT_POLICIES",
    "DEFAULT_WINDOW_MINUTES",
    "DatabaseBackend",
    "RateLimitBackend",
    "RateLimitPolicy",
    "RateLimiter",
    "RedisBackend",
]
