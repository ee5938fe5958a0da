"""
Resilience Module

Token-bucket admission control and reconnect backoff.
"""

from .rate_limiter import PerClientRateLimiter, RateLimiter, RateLimiterConfig
from .retry_strategy import (
    PRESETS,
    RetryConfig,
    RetryStrategy,
    create_aggressive_strategy,
    create_conservative_strategy,
    create_default_strategy,
    create_strategy,
)

__all__ = [
    "PRESETS",
    "PerClientRateLimiter",
    "RateLimiter",
    "RateLimiterConfig",
    "RetryConfig",
    "RetryStrategy",
    "create_aggressive_strategy",
    "create_conservative_strategy",
    "create_default_strategy",
    "create_strategy",
]
