"""
Middleware components for request processing.

This package contains middleware for:
- Request context (request ID echoed back as X-Request-ID)
"""

from mailsync.middleware.request_context import RequestContextMiddleware

__all__ = [
    "RequestContextMiddleware",
]
