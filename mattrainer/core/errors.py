"""
Application errors and the JSON error envelope.

Every error response has the shape
    {"error": {"code", "message", "request_id"}, "detail": message}
and carries the request id in the x-request-id header.
"""

from typing import Optional
from uuid import uuid4

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from mattrainer.core.logging import get_request_id, log_event


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class ForbiddenError(AppError):
    code = "forbidden"
    status_code = 403


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    """State changed underneath the request; the caller may retry."""
    code = "conflict"
    status_code = 409


class GatewayUnavailableError(AppError):
    """The payment gateway rejected or did not answer a synchronous call."""
    code = "gateway_unavailable"
    status_code = 502


class StorageUnavailableError(AppError):
    """Billing storage could not be read or written."""
    code = "storage_unavailable"
    status_code = 503


# Framework-raised statuses (routing, method, auth dependencies)
_HTTP_STATUS_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    422: "invalid_request",
}


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def error_response(request_id: str, status_code: int, code: str, message: str) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": request_id},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    log_event(
        "error" if exc.status_code >= 500 else "warning",
        "http.app_error",
        request_id=rid,
        error_code=exc.code,
        extra={"status": exc.status_code, "error_message": exc.message, "path": request.url.path},
    )
    return error_response(rid, exc.status_code, exc.code, exc.message)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    rid = _request_id_for(request)
    code = _HTTP_STATUS_CODES.get(exc.status_code, "http_error")
    message = str(exc.detail) if exc.detail else "HTTP error"
    log_event("warning", "http.error", request_id=rid, error_code=code, extra={"status": exc.status_code, "path": request.url.path})
    return error_response(rid, exc.status_code, code, message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    log_event(
        "error",
        "http.unhandled_exception",
        request_id=rid,
        error_code="internal_error",
        extra={"path": request.url.path, "exc_type": type(exc).__name__, "error": str(exc)},
    )
    return error_response(rid, 500, "internal_error", "Unexpected error")
