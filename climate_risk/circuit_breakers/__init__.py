"""
Per-source circuit breakers for the climate risk engine.
"""

from .circuit_breaker import CircuitBreakerPolicy, CircuitBreakerState, CircuitState, InMemoryCircuitBreaker

__all__ = ['CircuitBreakerPolicy', 'CircuitBreakerState', 'CircuitState', 'InMemoryCircuitBreaker']
