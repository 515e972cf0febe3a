"""
Request and workspace correlation for log records.

Headers:
- X-Correlation-ID: client session id, echoed back
- X-Request-ID: per-request id, generated when absent

The workspace a request (or a scheduled compute run) acts on is tracked
alongside, so every log line from the assignment engine can be tied back to a
workspace without threading it through each logger call.
"""

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
workspace_id_ctx: ContextVar[str] = ContextVar("workspace_id", default="")


def generate_id() -> str:
    return str(uuid.uuid4())[:12]


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Sets request, correlation and workspace context for the request.

    The workspace comes from the `workspace_id` query parameter when present;
    body-only endpoints bind it themselves via `bind_workspace`.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or generate_id()
        request_id = request.headers.get("X-Request-ID") or generate_id()

        tokens = [
            (correlation_id_ctx, correlation_id_ctx.set(correlation_id)),
            (request_id_ctx, request_id_ctx.set(request_id)),
            (workspace_id_ctx, workspace_id_ctx.set(request.query_params.get("workspace_id", ""))),
        ]
        request.state.correlation_id = correlation_id
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        finally:
            for var, token in reversed(tokens):
                var.reset(token)

        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Request-ID"] = request_id
        return response


def get_correlation_id() -> str:
    return correlation_id_ctx.get() or "unknown"


def get_request_id() -> str:
    """Current request id, or "unknown" outside a request."""
    return request_id_ctx.get() or "unknown"


def get_workspace_id() -> str:
    return workspace_id_ctx.get() or "-"


@contextmanager
def bind_workspace(workspace_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with a workspace id."""
    token = workspace_id_ctx.set(workspace_id)
    try:
        yield
    finally:
        workspace_id_ctx.reset(token)


class CorrelationLogFilter(logging.Filter):
    """Injects request_id, correlation_id and workspace_id into every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        record.request_id = get_request_id()
        record.workspace_id = get_workspace_id()
        return True
