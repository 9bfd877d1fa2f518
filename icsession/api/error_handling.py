from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from icsession.api.schemas import Envelope, ErrorBody
from icsession.logging import get_logger
from icsession.service.errors import ErrorCode, ErrorKind, RateLimitedError, ServiceError

logger = get_logger(__name__)

_STATUS_TO_ERROR = {
    400: (ErrorCode.VALIDATION_ERROR, ErrorKind.INPUT_VALIDATION),
    401: (ErrorCode.UNAUTHORIZED, ErrorKind.AUTHENTICATION),
    403: (ErrorCode.FORBIDDEN, ErrorKind.FORBIDDEN),
    404: (ErrorCode.NOT_FOUND, ErrorKind.NOT_FOUND),
    405: (ErrorCode.VALIDATION_ERROR, ErrorKind.INPUT_VALIDATION),
    409: (ErrorCode.CONFLICT, ErrorKind.CONFLICT),
    422: (ErrorCode.VALIDATION_ERROR, ErrorKind.INPUT_VALIDATION),
    429: (ErrorCode.RATE_LIMITED, ErrorKind.RATE_LIMITED),
}


def _error_for_status(status_code: int) -> tuple[ErrorCode, ErrorKind]:
    return _STATUS_TO_ERROR.get(status_code, (ErrorCode.SERVER_ERROR, ErrorKind.INTERNAL))


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    *,
    code: ErrorCode | None = None,
    kind: ErrorKind | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    default_code, default_kind = _error_for_status(status_code)
    error_body = ErrorBody(
        code=(code or default_code).value,
        kind=(kind or default_kind).value,
        message=message,
        details=details or None,
    )
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error envelope for service, validation, HTTP and unexpected errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code.value,
            kind=exc.kind.value,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        return _error_response(
            exc.status_code,
            exc.message,
            exc.detail,
            code=exc.error_code,
            kind=exc.kind,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "invalid request", {"errors": errors})

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
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error")
