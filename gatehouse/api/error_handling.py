from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from gatehouse.api.schemas import ErrorBody
from gatehouse.logging import get_logger
from gatehouse.service.errors import ServiceError
from gatehouse.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    details: Any = None,
    *,
    code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build the JSON error body ``{error, code, details?}``."""
    body = ErrorBody(error=message, code=code or _error_code_for_status(status_code), details=details)
    content = body.model_dump()
    if details is None:
        content.pop("details")
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _log(request: Request, status_code: int, event: str, **fields: Any) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers mapping storage, service and HTTP errors to JSON bodies."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log(request, 409, "constraint_violation", message=exc.message, constraint=exc.constraint)
        return error_response(409, "Conflict", exc.detail or None, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log(request, exc.status_code, "service_error", error_code=exc.error_code, message=exc.message)
        headers = exc.headers()
        if exc.status_code >= 500:
            # Integration failures keep their detail in the log only
            return error_response(exc.status_code, exc.message, code=exc.error_code, headers=headers)
        return error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details: Dict[str, str] = {}
        for error in exc.errors():
            loc = [str(part) for part in error.get("loc", ()) if part != "body"]
            details[".".join(loc) or "body"] = error.get("msg", "invalid")
        _log(request, 400, "request_validation_failed", fields=list(details))
        return error_response(400, "Invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            message = str(exc.detail["error"])
            details = exc.detail.get("details")
        else:
            message = str(exc.detail) if exc.detail else "http error"
            details = None
        if exc.status_code >= 400:
            _log(request, exc.status_code, "http_error", message=message)
        return error_response(
            exc.status_code,
            message,
            details,
            code=_error_code_for_status(exc.status_code),
            headers=getattr(exc, "headers", None),
        )

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
        return error_response(500, "Internal server error", code="server_error")
