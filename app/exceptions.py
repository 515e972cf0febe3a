"""
RFC 7807 Problem Details for the computed properties API.

Services return validation problems as values (UpsertValidationError); the
API layer turns them into APIException subclasses, and the handlers
registered by `register_exception_handlers` render every error, expected or
not, as `application/problem+json`.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.schemas.computed_properties import UpsertValidationError, UpsertValidationErrorType

logger = logging.getLogger(__name__)

PROBLEM_TYPE_BASE = "/problems"
PROBLEM_MEDIA_TYPE = "application/problem+json"

STATUS_TITLES = {
    400: "Bad Request",
    404: "Not Found",
    409: "Conflict",
    422: "Validation Error",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


class ErrorCode(str, Enum):
    """Machine-readable codes clients branch on."""

    VALIDATION_ERROR = "VAL_001"
    INVALID_DEFINITION = "VAL_002"

    NOT_FOUND = "RES_001"
    UNIQUE_CONSTRAINT_VIOLATION = "RES_002"
    CONFLICT = "RES_003"

    INTERNAL_ERROR = "SRV_001"
    SERVICE_UNAVAILABLE = "SRV_002"

    @property
    def problem_type(self) -> str:
        return f"{PROBLEM_TYPE_BASE}/{self.value.lower().replace('_', '-')}"


STATUS_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
    500: ErrorCode.INTERNAL_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


def _trace_id() -> str:
    from app.middleware.correlation import get_request_id

    request_id = get_request_id()
    if request_id != "unknown":
        return request_id
    return str(uuid.uuid4())[:12]


def _now() -> str:
    return datetime.utcnow().isoformat() + "Z"


class ProblemDetail(BaseModel):
    """Problem Details body, plus `code`, `timestamp`, `trace_id` and field `errors`."""

    type: str = "about:blank"
    title: str
    status: int
    detail: str
    instance: Optional[str] = None
    code: str
    timestamp: str = Field(default_factory=_now)
    trace_id: str = Field(default_factory=_trace_id)
    errors: Optional[List[Dict[str, Any]]] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "type": "/problems/res-002",
                "title": "Conflict",
                "status": 409,
                "detail": "Segment name 'vip' is already used in this workspace",
                "instance": "/api/v2/segments",
                "code": "RES_002",
                "timestamp": "2026-01-29T10:30:00Z",
                "trace_id": "abc123def456",
            }
        }
    }

    @classmethod
    def build(
        cls,
        status_code: int,
        code: ErrorCode,
        detail: str,
        instance: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        title: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> "ProblemDetail":
        problem = cls(
            type=code.problem_type,
            title=title or STATUS_TITLES.get(status_code, "Error"),
            status=status_code,
            detail=detail,
            instance=instance,
            code=code.value,
            errors=errors,
        )
        if trace_id:
            problem.trace_id = trace_id
        return problem


class APIException(HTTPException):
    """Base exception rendered as a problem response.

    Usage:
        raise APIException(404, ErrorCode.NOT_FOUND, "Segment not found")
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        title: Optional[str] = None,
        instance: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.code = code
        self.problem = ProblemDetail.build(
            status_code, code, detail, instance=instance, errors=errors, title=title
        )

    @property
    def trace_id(self) -> str:
        return self.problem.trace_id


class NotFoundError(APIException):
    def __init__(self, resource: str, resource_id: str, instance: Optional[str] = None):
        super().__init__(
            404,
            ErrorCode.NOT_FOUND,
            f"{resource} with ID {resource_id} was not found",
            instance=instance,
        )


class ValidationError(APIException):
    def __init__(
        self,
        detail: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(422, code, detail, errors=errors)


class ConflictError(APIException):
    def __init__(self, detail: str, code: ErrorCode = ErrorCode.CONFLICT):
        super().__init__(409, code, detail)


def upsert_error_to_exception(error: UpsertValidationError) -> APIException:
    """Uniqueness -> 409, unknown resource -> 404, bad definition -> 422."""
    if error.type == UpsertValidationErrorType.UNIQUE_CONSTRAINT_VIOLATION:
        return ConflictError(error.message, code=ErrorCode.UNIQUE_CONSTRAINT_VIOLATION)
    if error.type == UpsertValidationErrorType.NOT_FOUND:
        return APIException(404, ErrorCode.NOT_FOUND, error.message)
    return ValidationError(error.message, errors=error.details, code=ErrorCode.INVALID_DEFINITION)


def problem_response(
    request: Request,
    problem: ProblemDetail,
    allowed_origins: Optional[List[str]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render a problem, echoing CORS headers so browsers can read error bodies."""
    if problem.instance is None:
        problem.instance = str(request.url.path)
    response = JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(exclude_none=True),
        media_type=PROBLEM_MEDIA_TYPE,
        headers=headers,
    )
    origin = request.headers.get("origin", "")
    if allowed_origins and origin in allowed_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
    return response


def register_exception_handlers(app: FastAPI, allowed_origins: List[str]) -> None:
    """Install problem handlers for app, HTTP, request validation and unexpected errors."""

    async def handle_api_exception(request: Request, exc: APIException) -> JSONResponse:
        logger.warning(
            "APIException %s on %s: %s", exc.code.value, request.url.path, exc.detail,
            extra={"trace_id": exc.trace_id, "status_code": exc.status_code},
        )
        return problem_response(request, exc.problem, allowed_origins, headers=exc.headers)

    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
        problem = ProblemDetail.build(exc.status_code, code, str(exc.detail))
        return problem_response(request, problem, allowed_origins)

    async def handle_validation_exception(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        problem = ProblemDetail.build(422, ErrorCode.VALIDATION_ERROR, "Request validation failed", errors=errors)
        return problem_response(request, problem, allowed_origins)

    async def handle_generic_exception(request: Request, exc: Exception) -> JSONResponse:
        from app.config import settings

        trace_id = _trace_id()
        logger.exception(
            "Unhandled exception on %s: %s", request.url.path, exc,
            extra={"trace_id": trace_id},
        )
        # Internal details only leave the process in debug mode
        detail = str(exc) if settings.DEBUG else "An unexpected error occurred"
        problem = ProblemDetail.build(500, ErrorCode.INTERNAL_ERROR, detail, trace_id=trace_id)
        return problem_response(request, problem, allowed_origins)

    app.add_exception_handler(APIException, handle_api_exception)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_exception)
    app.add_exception_handler(Exception, handle_generic_exception)
