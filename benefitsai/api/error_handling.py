from __future__ import annotations

from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from benefitsai.api.schemas import ErrorResponse
from benefitsai.logging import get_logger
from benefitsai.service.errors import RateLimitExceeded, ServiceError
from benefitsai.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_MESSAGES = {
    400: "bad request",
    401: "unauthorized",
    403: "forbidden",
    404: "not found",
    405: "method not allowed",
    409: "conflict",
    429: "too many requests",
}


def _error_response(
    status_code: int,
    message: str,
    *,
    retry_after: Optional[int] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = ErrorResponse(error=message, retry_after=retry_after)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


def _wants_html(request: Request) -> bool:
    """Browser page navigation rather than an API call."""
    if request.method != "GET":
        return False
    return "text/html" in request.headers.get("accept", "")


def _log(request: Request, event: str, status_code: int, **fields) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def register_exception_handlers(app: FastAPI, *, sign_in_path: str = "/login") -> None:
    """Map every error to a ``{"error": message}`` body.

    Page navigations that hit a 401 are redirected to ``sign_in_path``
    instead of receiving JSON.
    """

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.status_code == 401 and _wants_html(request):
            return RedirectResponse(sign_in_path, status_code=303)
        if isinstance(exc, RateLimitExceeded):
            headers = dict(exc.headers)
            headers["Retry-After"] = str(exc.retry_after)
            return _error_response(
                429, exc.message, retry_after=exc.retry_after, headers=headers
            )
        message = exc.message if exc.status_code < 500 else "internal server error"
        return _error_response(exc.status_code, message)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
        return _error_response(409, "conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        _log(
            request,
            "request_validation_error",
            400,
            fields=[".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()],
        )
        return _error_response(400, "invalid request")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        _log(request, "http_error", exc.status_code, detail=str(exc.detail))
        if exc.status_code == 401 and _wants_html(request):
            return RedirectResponse(sign_in_path, status_code=303)
        message = _STATUS_MESSAGES.get(exc.status_code, "internal server error")
        return _error_response(exc.status_code, message, headers=exc.headers)

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
