"""Safety module - circuit breaker and execution rate limits."""

from .circuit_breaker import CircuitBreaker, CircuitState
from .rate_limit import ExecutionRateLimiter, RateLimitStatus

__all__ = ["CircuitBreaker", "CircuitState", "ExecutionRateLimiter", "RateLimitStatus"]
