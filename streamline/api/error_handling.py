from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from streamline.api.schemas import Envelope, ErrorBody
from streamline.logging import get_correlation_id, get_logger
from streamline.service.errors import RateLimitedError, ServiceError
from streamline.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "bad_request",
    409: "conflict",
    422: "bad_request",
    429: "too_many_requests",
    500: "internal_server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "internal_server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    envelope = Envelope(status="error", error=error_body)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope.model_dump()),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope with a stable code."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            constraint=exc.constraint,
        )
        return _error_response(409, "Resource already exists", code="conflict")

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
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
            limit = exc.detail.get("limit")
            if limit is not None:
                headers["X-RateLimit-Limit"] = str(limit)
                headers["X-RateLimit-Remaining"] = "0"
                headers["X-RateLimit-Reset"] = str(exc.detail.get("reset", exc.retry_after))
        return _error_response(
            exc.status_code,
            exc.message,
            exc.detail or None,
            code=exc.error_code,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg", "invalid value"),
            }
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            fields=[f["field"] for f in fields],
        )
        message = fields[0]["message"] if fields else "Invalid request"
        return _error_response(400, message, {"fields": fields}, code="bad_request")

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
        return _error_response(500, "Internal server error", code="internal_server_error")
