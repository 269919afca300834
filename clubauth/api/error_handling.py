from __future__ import annotations

import traceback
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from clubauth.logging import get_logger
from clubauth.service.errors import ServiceError
from clubauth.storage.errors import ConstraintViolation, StorageUnavailable

logger = get_logger(__name__)

_HTTP_MESSAGES = {
    404: "Not found",
    405: "Method not allowed",
}


def _error_response(status_code: int, body: Dict[str, Any], headers: Dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def validation_details(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten pydantic errors into ``[{path, message}]`` with the ``body`` prefix dropped."""

    details = []
    for err in errors:
        loc = list(err.get("loc") or ())
        if loc and loc[0] in ("body", "query", "path"):
            loc = loc[1:]
        message = str(err.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"path": loc, "message": message})
    return details


def register_exception_handlers(app: FastAPI, *, development: bool = False) -> None:
    """Install the JSON error shape ``{error, details?}`` for every failure path."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = validation_details(exc.errors())
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[".".join(str(p) for p in d["path"]) for d in details],
        )
        return _error_response(400, {"error": "Validation error", "details": details})

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
        return _error_response(exc.status_code, exc.to_body())

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, {"error": exc.message})

    @app.exception_handler(StorageUnavailable)
    async def handle_storage_unavailable(request: Request, exc: StorageUnavailable):
        logger.error("storage_unavailable", path=request.url.path, error=str(exc))
        return _error_response(503, {"error": "Service unavailable"})

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, str) and exc.detail not in ("Not Found", "Method Not Allowed"):
            message = exc.detail
        else:
            message = _HTTP_MESSAGES.get(exc.status_code, "Request failed")
        if exc.status_code >= 500:
            logger.error("http_error", path=request.url.path, status_code=exc.status_code)
        return _error_response(exc.status_code, {"error": message}, headers=getattr(exc, "headers", None))

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
        body: Dict[str, Any] = {"error": "Internal server error"}
        if development:
            body["message"] = str(exc)
            body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return _error_response(500, body)
