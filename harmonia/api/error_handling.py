from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from harmonia.api.schemas import Envelope, ErrorBody
from harmonia.logging import get_correlation_id, get_logger
from harmonia.service.errors import ServiceError
from harmonia.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    500: "server_error",
}


def error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "validation_error" if 400 <= status_code < 500 else "server_error"


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_body = ErrorBody(code=code or error_code_for_status(status_code), message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Render every domain, storage and HTTP error as an error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        if exc.status_code >= 500:
            # hashing and storage internals stay out of the response
            return error_response(exc.status_code, "internal server error", code=exc.error_code)
        return error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", path=request.url.path, message=exc.message)
        return error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error("store_unavailable", path=request.url.path, message=exc.message)
        return error_response(503, "service temporarily unavailable", code="server_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            code = None
            details = None
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            message=message,
        )
        return error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, "internal server error", code="server_error")
