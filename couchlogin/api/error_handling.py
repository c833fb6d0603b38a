from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from couchlogin.logging import get_logger, sanitize_error_message
from couchlogin.service.errors import ServiceError
from couchlogin.storage.errors import StorageError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_body(
    status_code: int,
    error: str,
    message: Optional[str] = None,
    validation_errors: Optional[Dict[str, Any]] = None,
    code: Optional[str] = None,
) -> Dict[str, Any]:
    """Error document sent to clients.

    ``error`` is the short reason, ``message`` the optional explanation and
    ``validationErrors`` the per-field messages of a rejected form.
    """
    body: Dict[str, Any] = {
        "error": error,
        "status": status_code,
        "code": code or _error_code_for_status(status_code),
    }
    if message:
        body["message"] = message
    if validation_errors:
        body["validationErrors"] = validation_errors
    return body


def _error_response(
    status_code: int,
    error: str,
    message: Optional[str] = None,
    validation_errors: Optional[Dict[str, Any]] = None,
    code: Optional[str] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_body(status_code, error, message, validation_errors, code),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for service and storage errors."""

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
        # Upstream context (documents, causes) stays in the logs
        message = exc.detail.get("message") if exc.status_code < 500 else None
        return _error_response(
            exc.status_code,
            sanitize_error_message(exc.message),
            message,
            exc.detail.get("validationErrors") if exc.status_code < 500 else None,
            code=exc.error_code,
        )

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        logger.error(
            "storage_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(500, "upstream store failure", code="upstream_failure")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields: Dict[str, list] = {}
        for err in exc.errors():
            loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
            fields.setdefault(".".join(loc) or "body", []).append(err.get("msg", "invalid"))
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            fields=list(fields),
        )
        return _error_response(400, "Validation failed", validation_errors=fields)

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
        return _error_response(exc.status_code, message)

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
        return _error_response(500, "internal server error", code="server_error")
