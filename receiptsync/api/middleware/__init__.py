"""API middleware modules."""

from .auth import api_key_middleware
from .logging import request_logging_middleware
from .rate_limit import RATE_LIMITS, limiter, rate_limit_error_handler

__all__ = [
    "api_key_middleware",
    "request_logging_middleware",
    "limiter",
    "rate_limit_error_handler",
    "RATE_LIMITS",
]
