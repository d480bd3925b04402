from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from learnhub.api.schemas import Envelope, ErrorBody
from learnhub.logging import get_logger, sanitize_error_message
from learnhub.service import messages
from learnhub.service.errors import ServiceError
from learnhub.storage.errors import (
    ConstraintViolation,
    DuplicateEmail,
    DuplicateEnrollment,
    MissingUser,
)

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}

_VALUE_ERROR_PREFIX = "Value error, "


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(success=False, error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _validation_message(error: dict) -> str:
    msg = str(error.get("msg", "Invalid request"))
    if msg.startswith(_VALUE_ERROR_PREFIX):
        return msg[len(_VALUE_ERROR_PREFIX):]
    if error.get("type") == "missing":
        field = next(
            (str(part) for part in reversed(error.get("loc", ())) if isinstance(part, str)),
            "field",
        )
        return f"{field} is required"
    return msg


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        if isinstance(exc, DuplicateEmail):
            return _error_response(400, messages.EMAIL_EXISTS, exc.detail, code="duplicate_key")
        if isinstance(exc, MissingUser):
            return _error_response(404, messages.USER_NOT_FOUND, exc.detail, code="not_found")
        if isinstance(exc, DuplicateEnrollment):
            return _error_response(400, exc.message, exc.detail, code="duplicate_key")
        return _error_response(400, exc.message, exc.detail, code="validation_error")

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
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        details = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": _validation_message(err),
                "type": err.get("type"),
            }
            for err in errors
        ]
        message = details[0]["msg"] if details else "Invalid request"
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(details),
        )
        return _error_response(400, message, details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        response = _error_response(exc.status_code, message, details)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, messages.INTERNAL_ERROR, code="server_error")
