from keeper.risk.circuit_breaker import CircuitBreaker, CircuitBreakerConfig

__all__ = ["CircuitBreaker", "CircuitBreakerConfig"]
