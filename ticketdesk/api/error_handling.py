from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ticketdesk.api.schemas import ErrorBody
from ticketdesk.logging import get_correlation_id, get_logger
from ticketdesk.service.errors import USER_MESSAGES, ErrorCode, RateLimitExceededError, ServiceError
from ticketdesk.storage.errors import ConstraintTag, ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ErrorCode.VALIDATION_FAILED,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
    500: ErrorCode.INTERNAL_ERROR,
}

_CONSTRAINT_TO_ERROR = {
    ConstraintTag.DUPLICATE_EMAIL: (409, ErrorCode.EMAIL_ALREADY_EXISTS),
    ConstraintTag.MISSING_DEPARTMENT: (400, ErrorCode.MISSING_REQUIRED_FIELD),
}


def _error_code_for_status(status_code: int) -> ErrorCode:
    if status_code >= 500:
        return ErrorCode.INTERNAL_ERROR
    return _STATUS_TO_CODE.get(status_code, ErrorCode.VALIDATION_FAILED)


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[ErrorCode] = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    body = ErrorBody(
        code=error_code.value,
        message=message,
        user_message=USER_MESSAGES.get(error_code, message),
        details=details,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": body.model_dump(by_alias=True, exclude_none=True, mode="json")},
    )


def service_error_response(exc: ServiceError) -> JSONResponse:
    """Render a ``ServiceError`` as the standard error envelope."""
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {
            "Retry-After": str(exc.retry_after_seconds),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(exc.retry_after_seconds),
        }
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
        headers=headers,
    )


def log_service_error(request: Request, exc: ServiceError) -> None:
    fields = dict(
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        error_code=exc.error_code.value,
        message=exc.message,
    )
    if exc.is_operational:
        # Expected outcomes such as a bad password are not incidents
        logger.info("service_error", **fields)
    else:
        logger.error(
            "service_error_unexpected",
            exc_info=exc,
            request_id=get_correlation_id(),
            detail=exc.detail,
            **fields,
        )


def register_exception_handlers(app: FastAPI) -> None:
    """Route every failure through one translator producing the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_service_error(request, exc)
        return service_error_response(exc)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        status_code, code = _CONSTRAINT_TO_ERROR.get(exc.tag, (409, ErrorCode.CONFLICT))
        logger.info(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            tag=exc.tag.value,
            detail=exc.detail,
        )
        return _error_response(status_code, exc.message, exc.detail or None, code=code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg", "invalid value"),
            }
            for err in exc.errors()
        ]
        missing = any(err.get("type") == "missing" for err in exc.errors())
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(
            400,
            "Request validation failed",
            details,
            code=ErrorCode.MISSING_REQUIRED_FIELD if missing else ErrorCode.VALIDATION_FAILED,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            request_id=get_correlation_id(),
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code=ErrorCode.INTERNAL_ERROR)
