from __future__ import annotations

import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from taskverse.api.schemas import ErrorBody
from taskverse.config import get_settings
from taskverse.logging import get_logger
from taskverse.service.errors import ServiceError
from taskverse.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TITLES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    422: "Unprocessable Entity",
    429: "Too Many Requests",
    500: "Internal Server Error",
}


def error_title(status_code: int) -> str:
    return _STATUS_TITLES.get(status_code, "Error")


def _stack_for(exc: Optional[BaseException]) -> Optional[str]:
    """Stack traces are only exposed to clients in development."""
    if exc is None or not get_settings().development_mode:
        return None
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def error_response(
    status_code: int,
    message: str,
    details: Any = None,
    *,
    title: Optional[str] = None,
    exc: Optional[BaseException] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    body = ErrorBody(
        error=title or error_title(status_code),
        message=message,
        details=details,
        stack=_stack_for(exc),
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        # Drop the leading "body"/"query" location segment
        loc = [str(part) for part in err.get("loc", ())]
        if loc and loc[0] in {"body", "query", "path", "header"}:
            loc = loc[1:]
        message = str(err.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"field": ".".join(loc), "message": message})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent error envelopes for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        field = exc.detail.get("field")
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            field=field,
        )
        details = [f"{field} already exists"] if field else None
        return error_response(409, "Duplicate Entry", details)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.exception(
                "service_error",
                exc_info=exc,
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=exc.message,
            )
        else:
            logger.warning(
                "service_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=exc.message,
            )
        return error_response(
            exc.status_code,
            exc.message,
            exc.details,
            title=exc.title,
            exc=exc,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return error_response(400, "Validation Error", details)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            message = f"Route {request.url.path} not found"
        elif isinstance(exc.detail, str):
            message = exc.detail
        else:
            message = error_title(exc.status_code)
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(
            exc.status_code, message, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, "Internal Server Error", exc=exc)
