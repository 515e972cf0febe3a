"""
Middleware modules for the Computed Properties API.

- Request, correlation and workspace ids for log records
"""

from .correlation import CorrelationIdMiddleware, bind_workspace, correlation_id_ctx, request_id_ctx

__all__ = [
    "CorrelationIdMiddleware",
    "bind_workspace",
    "correlation_id_ctx",
    "request_id_ctx",
]
