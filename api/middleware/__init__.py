"""
Middleware package for the API.
"""
from middleware.logging_middleware import (
    ContextualLogger,
    RequestLoggingMiddleware,
    get_job_id,
    get_logger,
    get_request_id,
)

__all__ = [
    "RequestLoggingMiddleware",
    "ContextualLogger",
    "get_logger",
    "get_request_id",
    "get_job_id",
]
