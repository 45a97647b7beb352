"""
Error taxonomy and the FastAPI handlers that render it.

Every failure surfaced to a client is an ``AppError`` subclass carrying an
HTTP status and a stable machine-readable code. Handlers turn them into
``{"success": false, "error": ..., "status": ..., "code": ...}``.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class InvalidState(ValidationError):
    code = "INVALID_STATE"
    default_message = "Resource is not in a valid state for this operation"


class NoTranscript(ValidationError):
    code = "NO_TRANSCRIPT"
    default_message = "No transcript available for analysis"


class AuthError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTH_ERROR"
    default_message = "Authentication required"


class ZoomAuthRequired(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ZOOM_AUTH_REQUIRED"
    default_message = "Zoom account not connected"


class ReauthRequired(ZoomAuthRequired):
    code = "ZOOM_REAUTH_REQUIRED"
    default_message = "Zoom authorization expired, reconnect your account"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Resource not found"


class RangeNotSatisfiable(AppError):
    status_code = status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE
    code = "RANGE_NOT_SATISFIABLE"
    default_message = "Requested range not satisfiable"

    def __init__(self, file_size: int, message: Optional[str] = None):
        self.file_size = file_size
        super().__init__(message)


class UpstreamError(AppError):
    code = "UPSTREAM_ERROR"
    default_message = "An upstream service failed"


class RenderError(UpstreamError):
    code = "RENDER_ERROR"
    default_message = "Failed to render export"


class NotificationError(UpstreamError):
    code = "NOTIFICATION_ERROR"
    default_message = "Failed to deliver one or more notifications"


class StorageError(AppError):
    code = "STORAGE_ERROR"
    default_message = "File storage failed"


def error_payload(status_code: int, message: str, code: str, details: Any = None) -> Dict[str, Any]:
    payload = {"success": False, "error": message, "status": status_code, "code": code}
    if details is not None:
        payload["details"] = details
    return payload


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    headers = None
    if isinstance(exc, RangeNotSatisfiable):
        headers = {"Content-Range": f"bytes */{exc.file_size}"}
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc.status_code, exc.message, exc.code, exc.details),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc.status_code, str(exc.detail), "HTTP_ERROR"),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    logger.info(f"Validation failed on {request.url.path}: {errors}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_payload(status.HTTP_400_BAD_REQUEST, "Validation failed", ValidationError.code, errors),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_payload(status.HTTP_500_INTERNAL_SERVER_ERROR, AppError.default_message, AppError.code),
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
