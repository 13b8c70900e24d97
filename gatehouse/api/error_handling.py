from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gatehouse.api.schemas import Envelope, ErrorBody
from gatehouse.config import get_settings
from gatehouse.logging import get_correlation_id, get_logger, sanitize_error_message
from gatehouse.service.errors import RateLimitedError, ServiceError
from gatehouse.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    *,
    retry_after: Optional[int] = None,
) -> JSONResponse:
    """Build the error envelope; 429s also carry ``Retry-After``."""
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    envelope = Envelope(status="error", error=error_body)
    headers = None
    if retry_after is not None:
        headers = {"Retry-After": str(max(0, int(retry_after)))}
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage, validation and uncaught errors onto the envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.status_code >= 500 and not get_settings().dev_verbose_errors:
            # Configuration mistakes are for operators, not clients
            return error_response(
                exc.status_code,
                "internal server error",
                {"correlation_id": get_correlation_id()},
                code="server_error",
            )
        retry_after = exc.retry_after if isinstance(exc, RateLimitedError) else None
        return error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, retry_after=retry_after
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
        return error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = str(exc.detail) if exc.detail else "http error"
            code = None
            details = None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
        retry_after = None
        if exc.headers and "Retry-After" in exc.headers:
            retry_after = int(exc.headers["Retry-After"])
        return error_response(exc.status_code, message, details, code=code, retry_after=retry_after)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        details = {"correlation_id": get_correlation_id()}
        if get_settings().dev_verbose_errors:
            details.update(
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
        return error_response(500, "internal server error", details, code="server_error")
