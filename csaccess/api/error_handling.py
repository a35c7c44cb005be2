from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from csaccess.api.schemas import Envelope, ErrorBody
from csaccess.config import get_settings
from csaccess.logging import get_logger, sanitize_error_message
from csaccess.service.errors import ServiceError
from csaccess.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}

# Storage constraint kinds -> (status, code, client message)
_CONSTRAINT_RESPONSES = {
    "unique": (400, "conflict", "Duplicate entry - record already exists"),
    "foreign_key": (400, "validation_error", "Invalid reference - related record not found"),
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build an error envelope response."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _validation_details(exc: RequestValidationError) -> dict:
    fields: dict[str, str] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields[".".join(loc) or "body"] = error.get("msg", "invalid value")
    return {"fields": fields}


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        status_code, code, message = _CONSTRAINT_RESPONSES.get(
            exc.kind, _CONSTRAINT_RESPONSES["unique"]
        )
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            kind=exc.kind,
            message=exc.message,
        )
        return _error_response(status_code, message, code=code)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=error_code
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=sorted(details["fields"]),
        )
        return _error_response(400, "Validation failed", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            error_obj = exc.detail["error"]
            if isinstance(error_obj, dict):
                message = error_obj.get("message", "http error")
                code = error_obj.get("code")
                details = error_obj.get("details")
                log_fn = logger.error if exc.status_code >= 500 else logger.warning
                log_fn(
                    "http_error",
                    path=request.url.path,
                    method=request.method,
                    status_code=exc.status_code,
                    error_code=code,
                    message=message,
                )
                return _error_response(exc.status_code, message, details, code=code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details)

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
        if get_settings().is_production:
            message = "Internal server error"
        else:
            message = sanitize_error_message(str(exc)) or "Internal server error"
        return _error_response(500, message, code="server_error")
