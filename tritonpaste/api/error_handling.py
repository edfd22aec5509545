from __future__ import annotations

from typing import Mapping, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tritonpaste.api.schemas import ErrorBody, ErrorEnvelope
from tritonpaste.logging import get_logger
from tritonpaste.service.errors import ServiceError
from tritonpaste.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_TYPE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    405: "method_not_allowed",
    500: "internal_server_error",
    503: "service_unavailable",
}


def _error_type_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_TYPE:
        return _STATUS_TO_TYPE[status_code]
    return "validation_error" if status_code < 500 else "internal_server_error"


def _error_response(
    status_code: int,
    message: str,
    error_type: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=status_code,
        type=error_type or _error_type_for_status(status_code),
        message=message,
    )
    return JSONResponse(
        status_code=status_code,
        content=ErrorEnvelope(error=body).model_dump(),
        headers=dict(headers) if headers else None,
    )


def _format_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "invalid request"


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as ``{"error": {"code", "type", "message"}}``."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_type=exc.error_type,
            message=exc.message,
        )
        return _error_response(
            exc.status_code, exc.message, exc.error_type, headers=exc.headers
        )

    # Services translate constraint violations; this catches one that escapes
    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(400, exc.message, "validation_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message = _format_validation_errors(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            message=message,
        )
        return _error_response(400, message, "validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error")
