"""
Outbound call protection: token bucket throttling, retry with backoff and the
datastore circuit breaker guarding webhook writes.
"""

from .circuit import CircuitBreaker, CircuitState, DatastoreHealthProbe, get_datastore_breaker
from .rate_limit import RateLimiterRegistry, TokenBucket, get_rate_limiter, reset_rate_limiters
from .retry import RetryAttempt, RetryExhaustedError, RetryPolicy, call_with_retry

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "DatastoreHealthProbe",
    "RateLimiterRegistry",
    "RetryAttempt",
    "RetryExhaustedError",
    "RetryPolicy",
    "TokenBucket",
    "call_with_retry",
    "get_datastore_breaker",
    "get_rate_limiter",
    "reset_rate_limiters",
]
