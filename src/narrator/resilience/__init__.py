"""Timeouts, circuit breakers and rate limiting shared by every request."""

from .circuit_breaker import (
    AUDIO_BREAKER,
    EXTERNAL_BREAKER,
    TEXT_BREAKER,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from .rate_limiter import (
    RateLimitDecision,
    RateLimiter,
    RateLimitPolicy,
    RateLimitResult,
    RateLimitService,
    get_client_ip,
    get_user_id,
)
from .timeouts import (
    AUDIO_GENERATION,
    EXTERNAL_API,
    TEXT_GENERATION,
    TimeoutConfig,
    with_timeout,
)

__all__ = [
    "AUDIO_BREAKER",
    "AUDIO_GENERATION",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "EXTERNAL_API",
    "EXTERNAL_BREAKER",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimitService",
    "RateLimiter",
    "TEXT_BREAKER",
    "TEXT_GENERATION",
    "TimeoutConfig",
    "get_client_ip",
    "get_user_id",
    "with_timeout",
]
