"""Middleware package for the abuse-prevention pipeline."""

from shield.app.middleware.request_id import RequestIdMiddleware, get_request_id
from shield.app.middleware.request_size import RequestSizeLimitMiddleware
from shield.app.middleware.security import SecurityMiddleware, get_client_ip

__all__ = [
    "RequestIdMiddleware",
    "RequestSizeLimitMiddleware",
    "SecurityMiddleware",
    "get_client_ip",
    "get_request_id",
]
