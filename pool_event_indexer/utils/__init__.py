"""
Utility modules for the pool event indexer.
"""

from .error_handling import ErrorHandler, CircuitBreaker, CircuitBreakerOpenError, RetryConfig, is_transient
from .structured_logging import LogContext, ContextualLogger, run_scope, setup_logging

__all__ = [
    "ErrorHandler",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "RetryConfig",
    "is_transient",
    "LogContext",
    "ContextualLogger",
    "run_scope",
    "setup_logging",
]
