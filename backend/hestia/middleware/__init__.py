"""
Hestia API middleware
=====================
Request logging (correlation id), rate limiting (Redis sliding window)
"""
from .logging_middleware import LoggingMiddleware
from .rate_limit_middleware import RateLimitMiddleware

__all__ = ["LoggingMiddleware", "RateLimitMiddleware"]
