# Shared utilities: retry, circuit breaker, validators
from trendscope.utils.circuit_breaker import CircuitBreaker, CircuitOpenError, get_breaker
from trendscope.utils.retry import with_retry
from trendscope.utils.validators import validate_symbol, validate_timeframe

__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "get_breaker",
    "validate_symbol",
    "validate_timeframe",
    "with_retry",
]
