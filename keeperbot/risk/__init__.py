"""
Risk package.

This package contains the connectivity circuit breaker.
"""

from keeperbot.risk.circuit_breaker import CircuitBreaker, CircuitBreakerConfig

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
]
